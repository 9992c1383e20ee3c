"""Content-addressed image ledger shared by every V2 snapshot.

Identical image bytes are stored once, under a key derived from their digest,
and recorded in ``snapshot_image``. Each snapshot that embeds an image gets a
``snapshot_image_ref`` row; whether an image is still in use is always derived
by counting those rows, never read from a cached counter.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from datetime import timezone
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlmodel import Session, delete, select

from ..config import SnapshotSettings
from ..errors import SnapshotValidationError
from ..models import SnapshotImage, SnapshotImageRef
from ..observability.metrics import SNAPSHOT_BYTES_WRITTEN, record_image_upload
from ..storage import ObjectStore
from ..storage.keys import IMAGE_KEY_SCHEME, image_key, normalize_image_name
from .hashing import content_hash
from .quota import QuotaEnforcer

logger = logging.getLogger(__name__)


@dataclass
class IncomingImage:
    claimed_hash: str
    data: Optional[bytes]
    mime_type: str
    encoded: Optional[str] = None

    @classmethod
    def from_base64(cls, claimed_hash: str, encoded: str, mime_type: Optional[str]) -> "IncomingImage":
        """Wrap a base64 payload, accepting ``data:`` URLs as sent by browsers.

        Decoding is deferred to :meth:`decode` so a corrupt image only loses itself.
        """

        raw = encoded or ""
        if raw.startswith("data:") and "," in raw:
            header, raw = raw.split(",", 1)
            if not mime_type:
                mime_type = header[5:].split(";", 1)[0] or None
        return cls(claimed_hash=claimed_hash, data=None, mime_type=mime_type or "image/jpeg", encoded=raw)

    def decode(self) -> bytes:
        if self.data is None:
            try:
                self.data = base64.b64decode(self.encoded or "", validate=False)
            except (binascii.Error, ValueError) as exc:
                raise SnapshotValidationError(f"Image {self.claimed_hash} is not valid base64") from exc
        return self.data


@dataclass
class StagedImage:
    """An image resolved against the ledger, ready to be linked to a snapshot."""

    claimed_hash: str
    hash: str
    storage_key: str
    size: int
    mime_type: str
    reused: bool
    new_row: Optional[SnapshotImage] = None


class ImageDedupStore:
    def __init__(self, store: ObjectStore, settings: SnapshotSettings, *, quota: Optional[QuotaEnforcer] = None) -> None:
        self.store = store
        self.verify_hashes = settings.verify_image_hashes
        self.quota = quota or QuotaEnforcer(settings)

    def lookup(self, session: Session, image_hash: str) -> Optional[SnapshotImage]:
        return session.get(SnapshotImage, image_hash)

    def stage(
        self,
        session: Session,
        image: IncomingImage,
        *,
        owner_id: str,
        bookmark_id: str,
        version: int,
    ) -> Optional[StagedImage]:
        """Reuse or upload one image; ``None`` means it was skipped for quota.

        The ledger row for a fresh upload is returned unsaved; it is committed
        with the snapshot so an aborted write leaves only an unreferenced blob.
        """

        data = image.decode()
        image_hash = content_hash(data) if self.verify_hashes else image.claimed_hash
        if normalize_image_name(image_hash) != image_hash:
            raise SnapshotValidationError(f"Unusable image hash {image.claimed_hash!r}")
        if self.verify_hashes and image.claimed_hash != image_hash and not image_hash.startswith(image.claimed_hash):
            logger.debug("Client image hash %s does not prefix digest %s", image.claimed_hash, image_hash)

        existing = self.lookup(session, image_hash)
        if existing is not None:
            record_image_upload("reused")
            return StagedImage(
                claimed_hash=image.claimed_hash,
                hash=existing.hash,
                storage_key=existing.storage_key,
                size=existing.size,
                mime_type=existing.mime_type,
                reused=True,
            )

        size = len(data)
        check = self.quota.check(session, size)
        if not check.allowed:
            record_image_upload("skipped_quota")
            logger.warning(
                "Storage quota exceeded for image %s (%d bytes): used %d of %s",
                image.claimed_hash,
                size,
                check.used_bytes,
                int(check.limit_bytes),
            )
            return None

        key = image_key(image_hash)
        self.store.put(
            key,
            data,
            content_type=image.mime_type,
            metadata={
                "hash": image_hash,
                "owner_id": owner_id,
                "bookmark_id": bookmark_id,
                "version": str(version),
                "uploaded_at": str(int(time.time())),
            },
        )
        SNAPSHOT_BYTES_WRITTEN.inc(size)
        record_image_upload("stored")
        row = SnapshotImage(
            hash=image_hash,
            storage_key=key,
            key_scheme=IMAGE_KEY_SCHEME,
            size=size,
            mime_type=image.mime_type,
            owner_user_id=owner_id,
            bookmark_id=bookmark_id,
        )
        return StagedImage(
            claimed_hash=image.claimed_hash,
            hash=image_hash,
            storage_key=key,
            size=size,
            mime_type=image.mime_type,
            reused=False,
            new_row=row,
        )

    def link(self, session: Session, snapshot_id: str, staged: Sequence[StagedImage]) -> None:
        """Add ledger rows and reference rows for ``staged`` to the open transaction."""

        hashes: List[str] = []
        for item in staged:
            if item.hash in hashes:
                continue
            hashes.append(item.hash)
            if item.new_row is not None and session.get(SnapshotImage, item.hash) is None:
                session.add(item.new_row)
        # Ledger rows must exist before the references that point at them.
        session.flush()
        for image_hash in hashes:
            session.add(SnapshotImageRef(snapshot_id=snapshot_id, image_hash=image_hash))

    def hashes_for(self, session: Session, snapshot_ids: Iterable[str]) -> List[str]:
        ids = list(snapshot_ids)
        if not ids:
            return []
        stmt = select(SnapshotImageRef.image_hash).where(SnapshotImageRef.snapshot_id.in_(ids)).distinct()
        return list(session.exec(stmt).all())

    def reference_count(self, session: Session, image_hash: str, *, excluding: Iterable[str] = ()) -> int:
        stmt = select(func.count()).select_from(SnapshotImageRef).where(SnapshotImageRef.image_hash == image_hash)
        excluded = list(excluding)
        if excluded:
            stmt = stmt.where(SnapshotImageRef.snapshot_id.not_in(excluded))
        return int(session.exec(stmt).one() or 0)

    def exclusively_referenced(self, session: Session, snapshot_ids: Iterable[str]) -> List[SnapshotImage]:
        """Ledger rows that no snapshot outside ``snapshot_ids`` still uses."""

        ids = list(snapshot_ids)
        rows: List[SnapshotImage] = []
        for image_hash in self.hashes_for(session, ids):
            if self.reference_count(session, image_hash, excluding=ids) == 0:
                row = session.get(SnapshotImage, image_hash)
                if row is not None:
                    rows.append(row)
        return rows

    def delete_blobs(self, rows: Iterable[SnapshotImage]) -> int:
        deleted = 0
        for row in rows:
            self.store.delete(row.storage_key)
            deleted += 1
        return deleted

    def forget(self, session: Session, rows: Iterable[SnapshotImage]) -> None:
        """Stage removal of ledger rows and any references still pointing at them."""

        hashes = [row.hash for row in rows]
        if not hashes:
            return
        session.exec(delete(SnapshotImageRef).where(SnapshotImageRef.image_hash.in_(hashes)))
        session.exec(delete(SnapshotImage).where(SnapshotImage.hash.in_(hashes)))

    def unreferenced(self, session: Session, *, older_than: Optional[float] = None) -> List[SnapshotImage]:
        """Ledger rows with no references at all (left by aborted writes)."""

        referenced = select(SnapshotImageRef.image_hash).distinct()
        stmt = select(SnapshotImage).where(SnapshotImage.hash.not_in(referenced))
        rows = list(session.exec(stmt).all())
        if older_than is None:
            return rows
        return [row for row in rows if _epoch(row.created_at) <= older_than]


def _epoch(value) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()
