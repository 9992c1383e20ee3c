"""Read path: owner dashboard reads, signed views and the image proxy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlencode

from sqlmodel import Session, select

from ..config import SnapshotSettings
from ..errors import SigningNotConfigured, SnapshotNotFound, SnapshotValidationError
from ..models import Bookmark, Snapshot, SnapshotImage, SnapshotImageRef
from ..security.signing import ACTION_VIEW, Capability, CapabilitySigner
from ..storage import ObjectStore
from ..storage.keys import normalize_image_name
from .html import CONTENT_SECURITY_POLICY, inject_csp_meta, is_v2_html, qualify_image_references

logger = logging.getLogger(__name__)

VIEW_CACHE_CONTROL = "public, max-age=3600"
IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@dataclass
class RenderedPage:
    html: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ImagePayload:
    data: bytes
    mime_type: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ViewUrl:
    url: str
    capability: Capability


def view_headers() -> Dict[str, str]:
    return {
        "Cache-Control": VIEW_CACHE_CONTROL,
        "X-Content-Type-Options": "nosniff",
        "Content-Security-Policy": CONTENT_SECURITY_POLICY,
        **CORS_HEADERS,
    }


def image_headers() -> Dict[str, str]:
    return {
        "Cache-Control": IMAGE_CACHE_CONTROL,
        "X-Content-Type-Options": "nosniff",
        **CORS_HEADERS,
    }


class SnapshotReader:
    def __init__(
        self,
        store: ObjectStore,
        settings: SnapshotSettings,
        *,
        signer: Optional[CapabilitySigner] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer

    def _require_signer(self) -> CapabilitySigner:
        if self.signer is None:
            raise SigningNotConfigured()
        return self.signer

    def _base_url(self, fallback: Optional[str]) -> str:
        return (self.settings.public_base_url or fallback or "").rstrip("/")

    def render(self, snapshot: Snapshot, *, base_url: Optional[str] = None) -> RenderedPage:
        """Load the stored page and make it viewable on its own.

        V2 pages get every image reference qualified with the proxy triple;
        all pages get the permissive CSP as both header and meta tag.
        """

        stored = self.store.get(snapshot.storage_key)
        if stored is None:
            logger.warning("Snapshot %s has no content at %s", snapshot.id, snapshot.storage_key)
            raise SnapshotNotFound("Snapshot content not found")
        html = stored.text()
        if is_v2_html(html):
            html, replaced = qualify_image_references(
                html,
                owner_id=snapshot.owner_user_id,
                bookmark_id=snapshot.bookmark_id,
                version=snapshot.version,
                base_url=self._base_url(base_url),
            )
            logger.debug("Normalized %d image URLs for snapshot %s", replaced, snapshot.id)
        return RenderedPage(html=inject_csp_meta(html), headers=view_headers())

    def issue_view_url(self, snapshot: Snapshot, *, base_url: Optional[str] = None) -> ViewUrl:
        capability = self._require_signer().issue(
            snapshot.owner_user_id,
            snapshot.id,
            ttl_seconds=self.settings.view_url_ttl_seconds,
            action=ACTION_VIEW,
        )
        path = f"/v1/bookmarks/{snapshot.bookmark_id}/snapshots/{snapshot.id}/view"
        url = f"{self._base_url(base_url)}{path}?{urlencode(capability.as_query())}"
        return ViewUrl(url=url, capability=capability)

    def view(
        self,
        session: Session,
        *,
        bookmark_id: str,
        snapshot_id: str,
        signature: Optional[str],
        expires_at: Optional[int],
        owner_id: Optional[str],
        action: Optional[str],
        base_url: Optional[str] = None,
    ) -> RenderedPage:
        self._require_signer().require(signature, expires_at, owner_id, snapshot_id, action)
        snapshot = session.exec(
            select(Snapshot)
            .join(Bookmark, Bookmark.id == Snapshot.bookmark_id)
            .where(Snapshot.id == snapshot_id)
            .where(Snapshot.bookmark_id == bookmark_id)
            .where(Snapshot.owner_user_id == owner_id)
            .where(Bookmark.deleted_at.is_(None))
        ).first()
        if snapshot is None:
            raise SnapshotNotFound("Snapshot not found")
        return self.render(snapshot, base_url=base_url)

    def load_image(
        self,
        session: Session,
        *,
        name: str,
        owner_id: Optional[str],
        bookmark_id: Optional[str],
        version: Optional[int],
    ) -> ImagePayload:
        """Serve one image after re-deriving ownership from the query triple.

        The triple must name an existing snapshot of a live bookmark, and that
        snapshot must reference the requested hash.
        """

        if not owner_id or not bookmark_id or version is None:
            raise SnapshotValidationError("Missing image access parameters (u, b, v)")
        image_hash = normalize_image_name(name)
        if image_hash is None:
            raise SnapshotNotFound("Image not found")

        snapshot_id = session.exec(
            select(Snapshot.id)
            .join(Bookmark, Bookmark.id == Snapshot.bookmark_id)
            .where(Snapshot.bookmark_id == bookmark_id)
            .where(Snapshot.owner_user_id == owner_id)
            .where(Snapshot.version == version)
            .where(Bookmark.deleted_at.is_(None))
        ).first()
        if snapshot_id is None:
            raise SnapshotNotFound("Image not found")
        if session.get(SnapshotImageRef, (snapshot_id, image_hash)) is None:
            raise SnapshotNotFound("Image not found")
        ledger = session.get(SnapshotImage, image_hash)
        if ledger is None:
            raise SnapshotNotFound("Image not found")

        stored = self.store.get(ledger.storage_key)
        if stored is None:
            logger.warning("Image %s missing from storage at %s", image_hash, ledger.storage_key)
            raise SnapshotNotFound("Image not found")
        return ImagePayload(
            data=stored.data,
            mime_type=ledger.mime_type or stored.content_type,
            headers=image_headers(),
        )
