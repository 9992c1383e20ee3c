"""Ingest pipeline for captured pages.

hash -> dedup check -> image staging -> quota check -> HTML upload ->
one metadata transaction -> retention follow-up.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..config import SnapshotSettings
from ..db import transaction
from ..errors import SnapshotConflict, SnapshotTooLarge, StorageQuotaExceeded, StorageUnavailable
from ..models import Snapshot, utcnow
from ..observability.logging import bookmark_log_context
from ..observability.metrics import (
    SNAPSHOT_BYTES_WRITTEN,
    record_image_upload,
    record_snapshot_write,
)
from ..storage import ObjectStore
from ..storage.keys import html_key
from .hashing import content_hash, utf8_size
from .html import is_v2_html, rewrite_placeholders
from .images import ImageDedupStore, IncomingImage, StagedImage
from .ownership import require_bookmark
from .quota import QuotaEnforcer
from .retention import RetentionManager

logger = logging.getLogger(__name__)


@dataclass
class CapturePayload:
    html: str
    title: str
    source_url: str
    images: List[IncomingImage] = field(default_factory=list)
    force: bool = False


@dataclass
class WriteResult:
    snapshot: Optional[Snapshot] = None
    is_duplicate: bool = False
    images_stored: int = 0
    images_reused: int = 0
    images_skipped: List[str] = field(default_factory=list)


def latest_snapshot(session: Session, bookmark_id: str) -> Optional[Snapshot]:
    return session.exec(
        select(Snapshot)
        .where(Snapshot.bookmark_id == bookmark_id)
        .where(Snapshot.is_latest.is_(True))
        .order_by(Snapshot.version.desc())
    ).first()


def next_version(session: Session, bookmark_id: str) -> int:
    current = session.exec(
        select(func.max(Snapshot.version)).where(Snapshot.bookmark_id == bookmark_id)
    ).one()
    return int(current or 0) + 1


class SnapshotWriter:
    def __init__(
        self,
        store: ObjectStore,
        settings: SnapshotSettings,
        *,
        quota: Optional[QuotaEnforcer] = None,
        images: Optional[ImageDedupStore] = None,
        retention: Optional[RetentionManager] = None,
        retention_inline: bool = False,
    ) -> None:
        self.store = store
        self.settings = settings
        self.quota = quota or QuotaEnforcer(settings)
        self.images = images or ImageDedupStore(store, settings, quota=self.quota)
        self.retention = retention or RetentionManager(store, settings, images=self.images)
        self.retention_inline = retention_inline

    def create(self, session: Session, *, owner_id: str, bookmark_id: str, payload: CapturePayload) -> WriteResult:
        with bookmark_log_context(bookmark_id):
            return self._create(session, owner_id=owner_id, bookmark_id=bookmark_id, payload=payload)

    def _create(self, session: Session, *, owner_id: str, bookmark_id: str, payload: CapturePayload) -> WriteResult:
        bookmark = require_bookmark(session, bookmark_id, owner_id)

        html_size = utf8_size(payload.html)
        logger.info("Received snapshot: %d bytes, %d images", html_size, len(payload.images))
        if html_size > self.settings.max_snapshot_bytes:
            record_snapshot_write("too_large")
            raise SnapshotTooLarge(html_size, self.settings.max_snapshot_bytes)

        digest = content_hash(payload.html)
        if not payload.force:
            current = latest_snapshot(session, bookmark_id)
            if current is not None and current.content_hash == digest:
                record_snapshot_write("duplicate")
                logger.info("Snapshot unchanged from version %d", current.version)
                return WriteResult(snapshot=current, is_duplicate=True)

        version = next_version(session, bookmark_id)
        result = WriteResult()

        staged = self._stage_images(session, payload.images, owner_id, bookmark_id, version, result)
        html = payload.html
        if staged:
            hash_map: Dict[str, str] = {}
            for item in staged:
                hash_map[item.claimed_hash] = item.hash
                hash_map[item.hash] = item.hash
            html, replaced = rewrite_placeholders(
                html, hash_map, owner_id=owner_id, bookmark_id=bookmark_id, version=version
            )
            logger.debug("Rewrote %d image references", replaced)
        is_v2 = bool(payload.images) or is_v2_html(html)

        html_size = utf8_size(html)
        new_image_bytes = sum(item.size for item in staged if not item.reused)
        try:
            self.quota.enforce(session, html_size + new_image_bytes)
        except StorageQuotaExceeded:
            record_snapshot_write("quota_exceeded")
            logger.warning(
                "Storage quota exceeded for snapshot of %d bytes (+%d image bytes)", html_size, new_image_bytes
            )
            raise

        timestamp_ms = int(time.time() * 1000)
        key = html_key(owner_id, bookmark_id, version, timestamp_ms)
        try:
            self.store.put(
                key,
                html.encode("utf-8"),
                content_type="text/html; charset=utf-8",
                metadata={
                    "owner_id": owner_id,
                    "bookmark_id": bookmark_id,
                    "version": str(version),
                    "content_hash": digest,
                    "uploaded_at": str(timestamp_ms // 1000),
                },
            )
        except Exception as exc:  # noqa: BLE001
            record_snapshot_write("storage_error")
            logger.error("Failed to upload snapshot content to %s: %s", key, exc)
            raise StorageUnavailable("Failed to store snapshot content") from exc
        SNAPSHOT_BYTES_WRITTEN.inc(html_size)

        snapshot = Snapshot(
            bookmark_id=bookmark_id,
            owner_user_id=owner_id,
            version=version,
            is_latest=True,
            content_hash=digest,
            storage_key=key,
            storage_size=html_size,
            mime_type="text/html",
            format="v2" if is_v2 else "v1",
            title=payload.title,
            source_url=payload.source_url,
            status="completed",
            image_count=len({item.hash for item in staged}),
            created_at=utcnow(),
        )
        try:
            with transaction(session):
                session.exec(
                    update(Snapshot)
                    .where(Snapshot.bookmark_id == bookmark_id)
                    .where(Snapshot.is_latest.is_(True))
                    .values(is_latest=False)
                )
                session.add(snapshot)
                session.flush()
                self.images.link(session, snapshot.id, staged)
                bookmark.snapshot_count = (bookmark.snapshot_count or 0) + 1
                bookmark.has_snapshot = True
                bookmark.latest_snapshot_at = snapshot.created_at
                session.add(bookmark)
                if not self.retention_inline:
                    self.retention.schedule(session, bookmark_id=bookmark_id, owner_id=owner_id)
        except IntegrityError as exc:
            record_snapshot_write("conflict")
            logger.warning("Concurrent snapshot write claimed version %d", version)
            self.store.delete(key)
            raise SnapshotConflict(
                "Another snapshot was saved for this bookmark at the same time. Please retry.",
                details={"version": version},
            ) from exc

        session.refresh(snapshot)
        record_snapshot_write("created")
        logger.info(
            "Saved snapshot version %d (%d bytes, %d images stored, %d reused, %d skipped)",
            version,
            html_size,
            result.images_stored,
            result.images_reused,
            len(result.images_skipped),
        )
        result.snapshot = snapshot

        if self.retention_inline:
            self.retention.run_policies(session, bookmark_id=bookmark_id, owner_id=owner_id)
        return result

    def _stage_images(
        self,
        session: Session,
        incoming: List[IncomingImage],
        owner_id: str,
        bookmark_id: str,
        version: int,
        result: WriteResult,
    ) -> List[StagedImage]:
        staged: List[StagedImage] = []
        seen: set = set()
        for image in incoming:
            if image.claimed_hash in seen:
                continue
            seen.add(image.claimed_hash)
            try:
                item = self.images.stage(
                    session, image, owner_id=owner_id, bookmark_id=bookmark_id, version=version
                )
            except Exception as exc:  # noqa: BLE001
                record_image_upload("failed")
                logger.warning("Failed to store image %s: %s", image.claimed_hash, exc)
                result.images_skipped.append(image.claimed_hash)
                continue
            if item is None:
                result.images_skipped.append(image.claimed_hash)
                continue
            if item.reused:
                result.images_reused += 1
            else:
                result.images_stored += 1
            staged.append(item)
        return staged
