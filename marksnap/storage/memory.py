from __future__ import annotations

from threading import RLock
from typing import Dict, List, Optional

from .base import ObjectInfo, StoredObject


class MemoryObjectStore:
    """Process-local object store for tests and throwaway dev servers."""

    def __init__(self) -> None:
        self._objects: Dict[str, StoredObject] = {}
        self._lock = RLock()

    def put(self, key, data, *, content_type, metadata=None) -> None:
        payload = bytes(data)
        with self._lock:
            self._objects[key] = StoredObject(
                key=key,
                size=len(payload),
                content_type=content_type,
                metadata=dict(metadata or {}),
                data=payload,
            )

    def get(self, key: str) -> Optional[StoredObject]:
        with self._lock:
            return self._objects.get(key)

    def head(self, key: str) -> Optional[ObjectInfo]:
        with self._lock:
            obj = self._objects.get(key)
        if obj is None:
            return None
        return ObjectInfo(key=key, size=obj.size, content_type=obj.content_type, metadata=dict(obj.metadata))

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def list(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    def __contains__(self, key: object) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)
