"""Object store interface shared by every snapshot storage backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol


@dataclass
class ObjectInfo:
    key: str
    size: int
    content_type: str = "application/octet-stream"
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def uploaded_at(self) -> Optional[float]:
        raw = self.metadata.get("uploaded_at")
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None


@dataclass
class StoredObject(ObjectInfo):
    data: bytes = b""

    def text(self, encoding: str = "utf-8") -> str:
        return self.data.decode(encoding, errors="replace")


class ObjectStore(Protocol):
    """Key-addressed blob storage used for snapshot HTML and images."""

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        """Store ``data`` under ``key``, replacing any previous object."""

    def get(self, key: str) -> Optional[StoredObject]:
        """Return the stored object or ``None`` when the key is absent."""

    def head(self, key: str) -> Optional[ObjectInfo]:
        """Existence check; returns object info without the body."""

    def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

    def list(self, prefix: str) -> List[str]:
        """Return the keys that start with ``prefix``."""
