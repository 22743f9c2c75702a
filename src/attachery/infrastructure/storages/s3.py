from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterable, Mapping

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from loguru import logger

from attachery.domain.errors import FileNotFound

# delete_objects accepts at most this many keys per request
_DELETE_BATCH = 1000


@dataclass(frozen=True)
class S3StorageConfig:
    bucket: str
    region: str = "us-east-1"
    endpoint: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    prefix: str = ""
    use_ssl: bool = True
    force_path_style: bool = False


def _not_found(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound")


class S3Storage:
    """Storage backed by an S3 (or S3-compatible) bucket, objects under ``prefix/id``."""

    def __init__(self, cfg: S3StorageConfig, client: Any = None) -> None:
        self.cfg = cfg
        if client is None:
            s3_cfg = Config(s3={"addressing_style": "path"} if cfg.force_path_style else {})
            client = boto3.client(
                "s3",
                endpoint_url=cfg.endpoint,
                aws_access_key_id=cfg.access_key,
                aws_secret_access_key=cfg.secret_key,
                region_name=cfg.region,
                use_ssl=cfg.use_ssl,
                config=s3_cfg,
            )
        self.client = client

    def __repr__(self) -> str:
        return f"<S3Storage s3://{self.cfg.bucket}/{self.cfg.prefix}>"

    def object_key(self, id: str) -> str:
        prefix = self.cfg.prefix.strip("/")
        return f"{prefix}/{id}" if prefix else id

    def upload(self, io: BinaryIO, id: str, metadata: Mapping[str, Any] | None = None) -> None:
        metadata = metadata or {}
        extra: dict[str, Any] = {}
        if metadata.get("mime_type"):
            extra["ContentType"] = metadata["mime_type"]
        if metadata.get("filename"):
            extra["Metadata"] = {"filename": str(metadata["filename"])}
        self.client.upload_fileobj(io, self.cfg.bucket, self.object_key(id), ExtraArgs=extra or None)
        logger.debug(f"Uploaded {id!r} to s3://{self.cfg.bucket}/{self.object_key(id)}")

    def open(self, id: str) -> BinaryIO:
        try:
            resp = self.client.get_object(Bucket=self.cfg.bucket, Key=self.object_key(id))
        except ClientError as e:
            if _not_found(e):
                raise FileNotFound(f"file {id!r} not found in bucket {self.cfg.bucket!r}") from e
            raise
        return resp["Body"]

    def exists(self, id: str) -> bool:
        try:
            self.client.head_object(Bucket=self.cfg.bucket, Key=self.object_key(id))
        except ClientError as e:
            if _not_found(e):
                return False
            raise
        return True

    def delete(self, id: str) -> None:
        self.client.delete_object(Bucket=self.cfg.bucket, Key=self.object_key(id))

    def multi_delete(self, ids: Iterable[str]) -> None:
        keys = [self.object_key(id) for id in ids]
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start : start + _DELETE_BATCH]
            resp = self.client.delete_objects(
                Bucket=self.cfg.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            errors = resp.get("Errors") or []
            if errors:
                raise RuntimeError(f"failed to delete {len(errors)} object(s) from {self.cfg.bucket!r}: {errors[0]}")

    def clear(self) -> None:
        """Delete every object under the prefix."""
        paginator = self.client.get_paginator("list_objects_v2")
        prefix = self.cfg.prefix.strip("/")
        for page in paginator.paginate(Bucket=self.cfg.bucket, Prefix=f"{prefix}/" if prefix else ""):
            ids = [obj["Key"] for obj in page.get("Contents", [])]
            if ids:
                self.client.delete_objects(
                    Bucket=self.cfg.bucket,
                    Delete={"Objects": [{"Key": key} for key in ids], "Quiet": True},
                )


def s3_storage_from_env() -> S3Storage:
    cfg = S3StorageConfig(
        endpoint=os.getenv("S3_ENDPOINT") or None,
        region=os.getenv("S3_REGION", "us-east-1"),
        access_key=os.environ["S3_ACCESS_KEY"],
        secret_key=os.environ["S3_SECRET_KEY"],
        bucket=os.environ["S3_BUCKET"],
        prefix=os.getenv("S3_PREFIX", ""),
        use_ssl=os.getenv("S3_USE_SSL", "true").lower() == "true",
        force_path_style=os.getenv("S3_FORCE_PATH_STYLE", "false").lower() == "true",
    )
    return S3Storage(cfg)


def s3_storage_from_settings(settings, prefix: str | None = None) -> S3Storage:
    """Build from ``Settings``; ``prefix`` separates e.g. cache and store in one bucket."""
    cfg = S3StorageConfig(
        endpoint=settings.s3_endpoint,
        region=settings.s3_region,
        access_key=settings.s3_access_key.get_secret_value() if settings.s3_access_key else None,
        secret_key=settings.s3_secret_key.get_secret_value() if settings.s3_secret_key else None,
        bucket=settings.s3_bucket,
        prefix=prefix if prefix is not None else settings.s3_prefix,
        use_ssl=settings.s3_use_ssl,
        force_path_style=settings.s3_force_path_style,
    )
    return S3Storage(cfg)
