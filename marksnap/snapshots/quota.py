"""Admission control against the global snapshot storage ceiling."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict

from sqlalchemy import func
from sqlmodel import Session, select

from ..config import SnapshotSettings
from ..errors import StorageQuotaExceeded
from ..models import Snapshot, SnapshotImage
from ..observability.metrics import SNAPSHOT_STORAGE_USED


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    used_bytes: int
    limit_bytes: float

    @property
    def unlimited(self) -> bool:
        return not math.isfinite(self.limit_bytes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "used_bytes": self.used_bytes,
            "limit_bytes": None if self.unlimited else int(self.limit_bytes),
            "unlimited": self.unlimited,
        }


def current_usage_bytes(session: Session) -> int:
    """Sum stored bytes over every snapshot and image ledger row.

    Always a fresh aggregate; no counter is cached between calls.
    """

    snapshots_total = session.exec(select(func.coalesce(func.sum(Snapshot.storage_size), 0))).one()
    images_total = session.exec(select(func.coalesce(func.sum(SnapshotImage.size), 0))).one()
    return int(snapshots_total or 0) + int(images_total or 0)


class QuotaEnforcer:
    def __init__(self, settings: SnapshotSettings) -> None:
        self.limit_bytes = settings.quota_limit_bytes

    def check(self, session: Session, additional_bytes: int) -> QuotaCheck:
        """Decide whether ``additional_bytes`` more may be stored.

        ``used_bytes`` is reported even when the ceiling is unlimited.
        """

        used = current_usage_bytes(session)
        SNAPSHOT_STORAGE_USED.set(used)
        if not math.isfinite(self.limit_bytes):
            return QuotaCheck(allowed=True, used_bytes=used, limit_bytes=self.limit_bytes)
        allowed = used + max(0, int(additional_bytes)) <= self.limit_bytes
        return QuotaCheck(allowed=allowed, used_bytes=used, limit_bytes=self.limit_bytes)

    def enforce(self, session: Session, additional_bytes: int) -> QuotaCheck:
        """Like :meth:`check` but raise :class:`StorageQuotaExceeded` on denial."""

        result = self.check(session, additional_bytes)
        if not result.allowed:
            raise StorageQuotaExceeded(result.used_bytes, result.limit_bytes)
        return result
