"""Object store backends for snapshot content."""

from __future__ import annotations

from ..config import SnapshotSettings
from .base import ObjectInfo, ObjectStore, StoredObject
from .local import LocalObjectStore
from .memory import MemoryObjectStore


def build_object_store(settings: SnapshotSettings) -> ObjectStore:
    """Construct the backend selected by ``settings.storage_backend``."""

    backend = settings.storage_backend
    if backend == "memory":
        return MemoryObjectStore()
    if backend == "local":
        return LocalObjectStore(settings.storage_dir)
    if backend == "s3":
        from .s3 import S3ObjectStore

        return S3ObjectStore(
            settings.s3_bucket or "",
            prefix=settings.s3_prefix,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )
    raise ValueError(f"Unknown snapshot storage backend: {backend!r}")


__all__ = [
    "ObjectInfo",
    "ObjectStore",
    "StoredObject",
    "LocalObjectStore",
    "MemoryObjectStore",
    "build_object_store",
]
