"""Retention policies, explicit deletes and orphan repair for snapshots.

Every path that removes snapshot rows goes through :meth:`RetentionManager._remove`:
blobs are deleted first, then one transaction drops the rows, drops image
ledger entries nothing else references, re-derives the latest pointer and the
bookmark counters, and writes the audit row. A failure between the two halves
leaves rows without blobs, which orphan repair removes on its next pass.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import update
from sqlmodel import Session, delete, select

from ..audit import record_audit_log, record_snapshot_audit_log
from ..config import SnapshotSettings
from ..db import transaction
from ..models import Bookmark, Job, Snapshot, SnapshotImage, SnapshotImageRef, User, utcnow
from ..observability.logging import bookmark_log_context
from ..observability.metrics import record_retention_deleted
from ..storage import ObjectStore
from ..storage.keys import IMAGE_KEY_PREFIX
from .images import ImageDedupStore

logger = logging.getLogger(__name__)

RETENTION_JOB_TYPE = "snapshot_retention"
ORPHAN_REPAIR_JOB_TYPE = "snapshot_orphan_repair"
UNLIMITED_RETENTION = -1


@dataclass
class CleanupResult:
    deleted_count: int = 0
    freed_space: int = 0
    message: str = ""
    images_deleted: int = 0
    blobs_deleted: int = 0

    def merge(self, other: "CleanupResult") -> "CleanupResult":
        self.deleted_count += other.deleted_count
        self.freed_space += other.freed_space
        self.images_deleted += other.images_deleted
        self.blobs_deleted += other.blobs_deleted
        return self

    def as_dict(self) -> Dict[str, object]:
        return {
            "deleted_count": self.deleted_count,
            "freed_space": self.freed_space,
            "message": self.message,
        }


class RetentionManager:
    def __init__(
        self,
        store: ObjectStore,
        settings: SnapshotSettings,
        *,
        images: Optional[ImageDedupStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.images = images or ImageDedupStore(store, settings)
        self._clock = clock

    # -- policy resolution -------------------------------------------------

    def resolve_keep_count(self, session: Session, bookmark: Bookmark) -> int:
        """Bookmark override, then owner default, then the system default."""

        if bookmark.snapshot_retention_count is not None:
            return bookmark.snapshot_retention_count
        owner = session.get(User, bookmark.owner_user_id)
        if owner is not None and owner.snapshot_retention_count is not None:
            return owner.snapshot_retention_count
        return self.settings.retention_default

    def schedule(self, session: Session, *, bookmark_id: str, owner_id: str) -> Job:
        """Queue a retention pass for ``bookmark_id`` in the caller's transaction."""

        # The jobs package imports this module for its job type constants.
        from ..jobs import enqueue_job

        return enqueue_job(
            session,
            RETENTION_JOB_TYPE,
            owner_user_id=owner_id,
            payload={"bookmark_id": bookmark_id},
            details={"source": "snapshot_write"},
        )

    # -- policies ----------------------------------------------------------

    def apply_keep_count(
        self,
        session: Session,
        *,
        bookmark_id: str,
        owner_id: str,
        keep_count: Optional[int] = None,
        actor_user_id: Optional[str] = None,
    ) -> CleanupResult:
        bookmark = self._bookmark(session, bookmark_id, owner_id)
        if bookmark is None:
            return CleanupResult(message="Bookmark not found")
        keep = keep_count if keep_count is not None else self.resolve_keep_count(session, bookmark)
        if keep == UNLIMITED_RETENTION:
            return CleanupResult(message="Retention is unlimited for this bookmark")
        keep = max(1, keep)

        rows = self._rows(session, bookmark_id)
        doomed = [row for row in rows[keep:] if not row.is_latest]
        with bookmark_log_context(bookmark_id):
            result = self._remove(
                session,
                bookmark_id,
                doomed,
                policy="keep_count",
                action="snapshot_retention",
                actor_user_id=actor_user_id,
                details={"keep_count": keep},
            )
        result.message = f"Deleted {result.deleted_count} old snapshots, kept the {keep} most recent"
        return result

    def apply_age(
        self,
        session: Session,
        *,
        bookmark_id: str,
        owner_id: str,
        older_than_days: int,
        actor_user_id: Optional[str] = None,
    ) -> CleanupResult:
        bookmark = self._bookmark(session, bookmark_id, owner_id)
        if bookmark is None:
            return CleanupResult(message="Bookmark not found")
        cutoff = utcnow() - timedelta(days=older_than_days)
        doomed = session.exec(
            select(Snapshot)
            .where(Snapshot.bookmark_id == bookmark_id)
            .where(Snapshot.is_latest.is_(False))
            .where(Snapshot.created_at < cutoff)
            .order_by(Snapshot.version)
        ).all()
        with bookmark_log_context(bookmark_id):
            result = self._remove(
                session,
                bookmark_id,
                list(doomed),
                policy="age",
                action="snapshot_retention",
                actor_user_id=actor_user_id,
                details={"older_than_days": older_than_days},
            )
        result.message = f"Deleted {result.deleted_count} snapshots older than {older_than_days} days"
        return result

    def run_policies(self, session: Session, *, bookmark_id: str, owner_id: str) -> CleanupResult:
        """Automatic follow-up after a write: keep-count, then the optional age limit."""

        result = self.apply_keep_count(session, bookmark_id=bookmark_id, owner_id=owner_id)
        if self.settings.retention_max_age_days:
            result.merge(
                self.apply_age(
                    session,
                    bookmark_id=bookmark_id,
                    owner_id=owner_id,
                    older_than_days=self.settings.retention_max_age_days,
                )
            )
        result.message = f"Retention removed {result.deleted_count} snapshots"
        return result

    # -- explicit deletes --------------------------------------------------

    def delete_snapshot(self, session: Session, snapshot: Snapshot, *, actor_user_id: Optional[str] = None) -> CleanupResult:
        with bookmark_log_context(snapshot.bookmark_id):
            result = self._remove(
                session,
                snapshot.bookmark_id,
                [snapshot],
                policy="manual",
                action="snapshot_delete",
                actor_user_id=actor_user_id,
                details={},
            )
        result.message = "Snapshot deleted"
        return result

    def purge_bookmark(
        self,
        session: Session,
        *,
        bookmark_id: str,
        actor_user_id: Optional[str] = None,
    ) -> CleanupResult:
        """Remove every snapshot of ``bookmark_id``, including the latest."""

        rows = self._rows(session, bookmark_id)
        with bookmark_log_context(bookmark_id):
            result = self._remove(
                session,
                bookmark_id,
                rows,
                policy="purge",
                action="snapshot_purge",
                actor_user_id=actor_user_id,
                details={},
            )
        result.message = f"Deleted all {result.deleted_count} snapshots"
        return result

    # -- orphan repair -----------------------------------------------------

    def verify_and_fix(
        self,
        session: Session,
        *,
        bookmark_id: str,
        owner_id: str,
        actor_user_id: Optional[str] = None,
    ) -> CleanupResult:
        """Drop rows of one bookmark whose HTML blob no longer exists."""

        if self._bookmark(session, bookmark_id, owner_id) is None:
            return CleanupResult(message="Bookmark not found")
        with bookmark_log_context(bookmark_id):
            result = self._repair_rows(session, bookmark_id, actor_user_id=actor_user_id)
        result.message = f"Removed {result.deleted_count} snapshots whose content was missing"
        return result

    def repair_orphans(self, session: Session, *, bookmark_id: Optional[str] = None) -> CleanupResult:
        """Reconcile metadata and object store in both directions.

        Rows whose blob is missing are deleted (promoting a new latest where
        needed). Ledger rows whose image blob is missing are forgotten. Blobs
        with no row, and ledger rows with no references, are deleted once they
        are older than the configured grace period so in-flight writes survive.
        """

        result = CleanupResult()
        stmt = select(Snapshot.bookmark_id).distinct()
        if bookmark_id:
            stmt = stmt.where(Snapshot.bookmark_id == bookmark_id)
        for target in session.exec(stmt).all():
            with bookmark_log_context(target):
                result.merge(self._repair_rows(session, target))
        if bookmark_id is None:
            result.images_deleted += self._repair_images(session)
            result.blobs_deleted += self._sweep_blobs(session)
        if result.deleted_count or result.images_deleted or result.blobs_deleted:
            with transaction(session):
                record_audit_log(
                    session,
                    entity_type="snapshot",
                    entity_id=bookmark_id or "*",
                    action="snapshot_orphan_repair",
                    owner_user_id=None,
                    details={
                        "deleted_rows": result.deleted_count,
                        "deleted_images": result.images_deleted,
                        "deleted_blobs": result.blobs_deleted,
                    },
                )
        result.message = (
            f"Removed {result.deleted_count} snapshots, {result.images_deleted} images "
            f"and {result.blobs_deleted} unreferenced blobs"
        )
        logger.info(result.message)
        return result

    def _repair_rows(self, session: Session, bookmark_id: str, *, actor_user_id: Optional[str] = None) -> CleanupResult:
        missing = [row for row in self._rows(session, bookmark_id) if self.store.head(row.storage_key) is None]
        if not missing:
            return CleanupResult()
        logger.warning("Found %d snapshots with missing content", len(missing))
        return self._remove(
            session,
            bookmark_id,
            missing,
            policy="orphan",
            action="snapshot_verify",
            actor_user_id=actor_user_id,
            details={},
            blobs_present=False,
        )

    def _repair_images(self, session: Session) -> int:
        rows = session.exec(select(SnapshotImage)).all()
        missing = [row for row in rows if self.store.head(row.storage_key) is None]
        stale = self.images.unreferenced(session, older_than=self._clock() - self.settings.orphan_grace_seconds)
        missing_hashes = {row.hash for row in missing}
        stale = [row for row in stale if row.hash not in missing_hashes]
        if not missing and not stale:
            return 0
        self.images.delete_blobs(stale)
        with transaction(session):
            self.images.forget(session, missing + stale)
        logger.warning("Dropped %d missing and %d unreferenced images from the ledger", len(missing), len(stale))
        return len(missing) + len(stale)

    def _sweep_blobs(self, session: Session) -> int:
        known: Set[str] = set(session.exec(select(Snapshot.storage_key)).all())
        known.update(session.exec(select(SnapshotImage.storage_key)).all())
        cutoff = self._clock() - self.settings.orphan_grace_seconds
        deleted = 0
        for key in self.store.list(""):
            if key in known or not _is_snapshot_blob(key):
                continue
            info = self.store.head(key)
            if info is None:
                continue
            uploaded_at = info.uploaded_at
            if uploaded_at is None or uploaded_at > cutoff:
                continue
            self.store.delete(key)
            deleted += 1
        if deleted:
            logger.info("Deleted %d unreferenced blobs", deleted)
        return deleted

    # -- shared machinery --------------------------------------------------

    def _bookmark(self, session: Session, bookmark_id: str, owner_id: str) -> Optional[Bookmark]:
        bookmark = session.get(Bookmark, bookmark_id)
        if bookmark is None or bookmark.owner_user_id != owner_id:
            return None
        return bookmark

    def _rows(self, session: Session, bookmark_id: str) -> List[Snapshot]:
        return list(
            session.exec(
                select(Snapshot).where(Snapshot.bookmark_id == bookmark_id).order_by(Snapshot.version.desc())
            ).all()
        )

    def _remove(
        self,
        session: Session,
        bookmark_id: str,
        rows: List[Snapshot],
        *,
        policy: str,
        action: str,
        actor_user_id: Optional[str],
        details: Dict[str, object],
        blobs_present: bool = True,
    ) -> CleanupResult:
        if not rows:
            return CleanupResult()
        ids = [row.id for row in rows]
        versions = sorted(row.version for row in rows)
        owner_id = rows[0].owner_user_id
        dropped_images = self.images.exclusively_referenced(session, ids)
        freed = sum(row.storage_size or 0 for row in rows) + sum(img.size or 0 for img in dropped_images)

        if blobs_present:
            for row in rows:
                self.store.delete(row.storage_key)
        self.images.delete_blobs(dropped_images)

        with transaction(session):
            session.exec(delete(SnapshotImageRef).where(SnapshotImageRef.snapshot_id.in_(ids)))
            self.images.forget(session, dropped_images)
            session.exec(delete(Snapshot).where(Snapshot.id.in_(ids)))
            self._refresh_bookmark(session, bookmark_id)
            record_snapshot_audit_log(
                session,
                bookmark_id=bookmark_id,
                action=action,
                owner_user_id=owner_id,
                actor_user_id=actor_user_id,
                snapshot_ids=ids,
                details={
                    **details,
                    "versions": versions,
                    "freed_space": freed,
                    "images_deleted": len(dropped_images),
                },
            )
        record_retention_deleted(policy, len(rows))
        logger.info("Deleted %d snapshots (%s), freed %d bytes", len(rows), policy, freed)
        return CleanupResult(deleted_count=len(rows), freed_space=freed, images_deleted=len(dropped_images))

    def _refresh_bookmark(self, session: Session, bookmark_id: str) -> None:
        """Make the highest remaining version latest and recompute counters."""

        remaining = self._rows(session, bookmark_id)
        newest = remaining[0] if remaining else None
        if newest is not None:
            session.exec(
                update(Snapshot)
                .where(Snapshot.bookmark_id == bookmark_id)
                .where(Snapshot.id != newest.id)
                .where(Snapshot.is_latest.is_(True))
                .values(is_latest=False)
            )
            if not newest.is_latest:
                logger.info("Promoted version %d to latest", newest.version)
                newest.is_latest = True
                session.add(newest)
        bookmark = session.get(Bookmark, bookmark_id)
        if bookmark is None:
            return
        bookmark.snapshot_count = len(remaining)
        bookmark.has_snapshot = bool(remaining)
        bookmark.latest_snapshot_at = newest.created_at if newest is not None else None
        session.add(bookmark)


def _is_snapshot_blob(key: str) -> bool:
    if key.startswith(IMAGE_KEY_PREFIX):
        return True
    name = key.rsplit("/", 1)[-1]
    return name.startswith("snapshot-") and name.endswith(".html")


def bookmarks_with_snapshots(session: Session, owner_id: Optional[str] = None) -> Iterable[str]:
    stmt = select(Snapshot.bookmark_id).distinct()
    if owner_id:
        stmt = stmt.where(Snapshot.owner_user_id == owner_id)
    return list(session.exec(stmt).all())
