"""Snapshot storage pipeline: write, read, retention and quota."""

from __future__ import annotations

import logging
from typing import Optional

from ..config import SnapshotSettings, is_retention_inline
from ..security.signing import CapabilitySigner
from ..storage import ObjectStore, build_object_store
from .images import ImageDedupStore, IncomingImage
from .quota import QuotaCheck, QuotaEnforcer
from .reader import SnapshotReader
from .retention import CleanupResult, RetentionManager
from .writer import CapturePayload, SnapshotWriter, WriteResult

logger = logging.getLogger(__name__)


class SnapshotService:
    """Wires every snapshot component around one store and one settings object."""

    def __init__(
        self,
        settings: SnapshotSettings,
        store: Optional[ObjectStore] = None,
        *,
        retention_inline: Optional[bool] = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else build_object_store(settings)
        self.quota = QuotaEnforcer(settings)
        self.images = ImageDedupStore(self.store, settings, quota=self.quota)
        self.retention = RetentionManager(self.store, settings, images=self.images)
        self.signer: Optional[CapabilitySigner] = None
        if settings.signing_secret:
            self.signer = CapabilitySigner.from_settings(settings)
        else:
            logger.warning("SNAPSHOT_SIGNING_SECRET is not set; signed snapshot URLs are disabled")
        self.writer = SnapshotWriter(
            self.store,
            settings,
            quota=self.quota,
            images=self.images,
            retention=self.retention,
            retention_inline=is_retention_inline() if retention_inline is None else retention_inline,
        )
        self.reader = SnapshotReader(self.store, settings, signer=self.signer)

    @classmethod
    def from_env(cls) -> "SnapshotService":
        return cls(SnapshotSettings.from_env())


__all__ = [
    "CapturePayload",
    "CleanupResult",
    "ImageDedupStore",
    "IncomingImage",
    "QuotaCheck",
    "QuotaEnforcer",
    "RetentionManager",
    "SnapshotReader",
    "SnapshotService",
    "SnapshotWriter",
    "WriteResult",
]
