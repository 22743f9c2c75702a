"""Attachment settings using Pydantic Settings for configuration management."""

import json
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, SecretStr, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from attachery.application.config import AttacherConfig, BackupConfig, KeepFiles, MirrorSet
from attachery.domain.entities.variant_tree import VariantSchema


class Settings(BaseSettings):
    """Settings loaded from ``ATTACHERY_*`` environment variables (or ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="ATTACHERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Application
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # Attacher
    cache_storage: str = "cache"
    store_storage: str = "store"
    threads: int = Field(default=3, ge=1)
    keep_location: bool = False
    keep_destroyed: bool = False
    keep_replaced: bool = False
    keep_cached: bool = False

    # S3 storage
    s3_endpoint: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key: SecretStr | None = None
    s3_secret_key: SecretStr | None = None
    s3_bucket: str | None = None
    s3_prefix: str = ""
    s3_use_ssl: bool = True
    s3_force_path_style: bool = False

    # Mirroring, e.g. ATTACHERY_MIRRORS='{"store": ["mirror"]}'
    mirrors: dict[str, list[str]] = Field(default_factory=dict)
    mirror_upload: bool = True
    mirror_delete: bool = True
    mirror_background: bool = False
    mirror_best_effort: bool = False

    # Backup
    backup_storage: str | None = None
    backup_delete: bool = True
    backup_best_effort: bool = False

    # SQLite persistence
    sqlite_db_path: str = "./data/attachments.db"

    @field_validator("mirrors", mode="before")
    @classmethod
    def _parse_mirrors(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    @computed_field
    @property
    def s3_configured(self) -> bool:
        """Whether enough S3 settings are present to build an S3 storage."""
        return bool(self.s3_bucket and self.s3_access_key and self.s3_secret_key)

    def keep_files(self) -> KeepFiles:
        return KeepFiles(destroyed=self.keep_destroyed, replaced=self.keep_replaced, cached=self.keep_cached)

    def mirror_set(self) -> MirrorSet | None:
        if not self.mirrors:
            return None
        return MirrorSet(
            mirrors=self.mirrors,
            upload=self.mirror_upload,
            delete=self.mirror_delete,
            background=self.mirror_background,
            best_effort=self.mirror_best_effort,
        )

    def backup_config(self) -> BackupConfig | None:
        if not self.backup_storage:
            return None
        return BackupConfig(
            storage=self.backup_storage,
            delete=self.backup_delete,
            best_effort=self.backup_best_effort,
        )

    def attacher_config(self, variants: VariantSchema | None = None, **overrides: Any) -> AttacherConfig:
        """Build an immutable AttacherConfig from these settings."""
        values: dict[str, Any] = {
            "cache": self.cache_storage,
            "store": self.store_storage,
            "variants": variants or VariantSchema.single(),
            "threads": self.threads,
            "keep_files": self.keep_files(),
            "keep_location": self.keep_location,
            "mirroring": self.mirror_set(),
            "backup": self.backup_config(),
        }
        values.update(overrides)
        return AttacherConfig(**values)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
