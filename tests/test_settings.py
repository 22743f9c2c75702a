import io
import sys

import pytest
from loguru import logger

from attachery.domain.entities.variant_tree import VariantKind, VariantSchema
from attachery.infrastructure.logging import configure_from_settings, configure_logging
from attachery.infrastructure.settings import Settings, get_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("ATTACHERY_MIRRORS", "ATTACHERY_THREADS", "ATTACHERY_BACKUP_STORAGE", "ATTACHERY_KEEP_DESTROYED"):
        monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = Settings(_env_file=None)
    config = settings.attacher_config()

    assert (config.cache, config.store, config.threads) == ("cache", "store", 3)
    assert config.mirroring is None
    assert config.backup is None
    assert not settings.s3_configured


def test_reads_prefixed_environment(monkeypatch):
    monkeypatch.setenv("ATTACHERY_MIRRORS", '{"store": ["mirror_a", "mirror_b"]}')
    monkeypatch.setenv("ATTACHERY_THREADS", "5")
    monkeypatch.setenv("ATTACHERY_BACKUP_STORAGE", "backup")
    monkeypatch.setenv("ATTACHERY_KEEP_DESTROYED", "true")

    config = get_settings().attacher_config(VariantSchema.versions(["thumb"]))

    assert config.threads == 5
    assert config.mirroring.mirrors_for("store") == ("mirror_a", "mirror_b")
    assert config.backup.storage == "backup"
    assert config.keep_files.destroyed
    assert config.variants.kind is VariantKind.VERSIONS


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


def test_overrides_are_validated():
    with pytest.raises(ValueError):
        Settings(_env_file=None).attacher_config(store="cache")


def test_configure_logging_replaces_handlers():
    sink = io.StringIO()
    configure_logging("WARNING", sink=sink)
    logger.info("hidden")
    logger.warning("shown")
    assert "shown" in sink.getvalue()
    assert "hidden" not in sink.getvalue()

    sink = io.StringIO()
    configure_logging("INFO", json=True, sink=sink)
    logger.info("structured")
    assert '"message": "structured"' in sink.getvalue()

    configure_logging("DEBUG", sink=sys.__stderr__)


def test_configure_from_settings_uses_log_level(capsys):
    configure_from_settings(Settings(_env_file=None, log_level="warning"))
    logger.info("quiet")
    logger.warning("loud")
    err = capsys.readouterr().err
    assert "loud" in err
    assert "quiet" not in err

    configure_logging("DEBUG", sink=sys.__stderr__)
