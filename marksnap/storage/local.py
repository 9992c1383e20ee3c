"""Filesystem object store.

Layout: ``{root}/{key}`` with a ``{key}.meta.json`` sidecar holding the
content type and custom metadata.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base import ObjectInfo, StoredObject

logger = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"
_TMP_SUFFIX = ".tmp"


class LocalObjectStore:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        root = self._root.resolve()
        candidate = (root / key).resolve()
        if root not in candidate.parents:
            raise ValueError(f"Object key escapes storage root: {key!r}")
        return candidate

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + _META_SUFFIX)

    def _read_meta(self, key: str, path: Path) -> Dict[str, Any]:
        meta_path = self._meta_path(path)
        if not meta_path.is_file():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Unreadable metadata sidecar for %s", key)
            return {}

    def put(self, key, data, *, content_type, metadata=None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + _TMP_SUFFIX)
        tmp.write_bytes(data)
        os.replace(tmp, path)
        meta = {"content_type": content_type, "metadata": dict(metadata or {})}
        self._meta_path(path).write_text(json.dumps(meta), encoding="utf-8")

    def head(self, key: str) -> Optional[ObjectInfo]:
        path = self._path(key)
        if not path.is_file():
            return None
        meta = self._read_meta(key, path)
        return ObjectInfo(
            key=key,
            size=path.stat().st_size,
            content_type=meta.get("content_type") or "application/octet-stream",
            metadata=meta.get("metadata") or {},
        )

    def get(self, key: str) -> Optional[StoredObject]:
        info = self.head(key)
        if info is None:
            return None
        return StoredObject(
            key=key,
            size=info.size,
            content_type=info.content_type,
            metadata=info.metadata,
            data=self._path(key).read_bytes(),
        )

    def delete(self, key: str) -> None:
        path = self._path(key)
        for candidate in (path, self._meta_path(path)):
            try:
                candidate.unlink()
            except FileNotFoundError:
                pass

    def list(self, prefix: str) -> List[str]:
        if not self._root.exists():
            return []
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.endswith((_META_SUFFIX, _TMP_SUFFIX)):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
