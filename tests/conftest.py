import pytest
from loguru import logger

from attachery.application.attacher import Attacher
from attachery.application.config import AttacherConfig
from attachery.application.registry import StorageRegistry
from attachery.infrastructure.storages.memory import MemoryStorage
from tests.support import TEST_BUCKET_NAME, MemoryRecord


@pytest.fixture
def cache():
    return MemoryStorage("cache")


@pytest.fixture
def store():
    return MemoryStorage("store")


@pytest.fixture
def storages(cache, store):
    return StorageRegistry(
        cache=cache,
        store=store,
        mirror_a=MemoryStorage("mirror_a"),
        mirror_b=MemoryStorage("mirror_b"),
        backup=MemoryStorage("backup"),
    )


@pytest.fixture
def record():
    return MemoryRecord()


@pytest.fixture
def make_attacher(storages):
    def make(config=None, name="avatar", record_key="user:1", **kwargs):
        return Attacher(name, config or AttacherConfig(), storages, record_key=record_key, **kwargs)

    return make


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS Credentials for moto."""
    for key in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SECURITY_TOKEN", "AWS_SESSION_TOKEN"):
        monkeypatch.setenv(key, "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def mocked_aws(aws_credentials):
    """Mock all AWS interactions and create the test bucket."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket=TEST_BUCKET_NAME)
        yield
