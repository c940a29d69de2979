"""Object storage backends for snapshot archives."""

from chat_sandbox.config.core import StorageSettings

from .base import MultipartUpload, ObjectBody, ObjectStore, StoredObject
from .filesystem import FilesystemObjectStore
from .memory import MemoryObjectStore
from .s3 import S3ObjectStore


def create_object_store(settings: StorageSettings) -> ObjectStore:
    """Build the backend selected by ``settings.backend``."""
    if settings.backend == "s3":
        return S3ObjectStore(settings)
    if settings.backend == "filesystem":
        return FilesystemObjectStore(settings.local_root)
    if settings.backend == "memory":
        return MemoryObjectStore()
    raise ValueError(f"Unknown storage backend: {settings.backend}")


__all__ = [
    "FilesystemObjectStore",
    "MemoryObjectStore",
    "MultipartUpload",
    "ObjectBody",
    "ObjectStore",
    "S3ObjectStore",
    "StoredObject",
    "create_object_store",
]
