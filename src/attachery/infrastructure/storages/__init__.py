from attachery.infrastructure.storages.memory import MemoryStorage
from attachery.infrastructure.storages.retry import RetryingStorage


# S3 pulls in boto3, import it only when asked for
def get_s3_storage(*args, **kwargs):
    """Build an S3Storage from settings (lazy import)."""
    from attachery.infrastructure.storages.s3 import s3_storage_from_settings

    return s3_storage_from_settings(*args, **kwargs)


__all__ = [
    "MemoryStorage",
    "RetryingStorage",
    "get_s3_storage",
]
