from __future__ import annotations

from sqlmodel import Session, select

from ..errors import SnapshotNotFound
from ..models import Bookmark, Snapshot


def require_bookmark(session: Session, bookmark_id: str, owner_id: str) -> Bookmark:
    """Return the live bookmark ``bookmark_id`` owned by ``owner_id``.

    Unknown, foreign and soft-deleted bookmarks are indistinguishable to the
    caller.
    """

    bookmark = session.exec(
        select(Bookmark)
        .where(Bookmark.id == bookmark_id)
        .where(Bookmark.owner_user_id == owner_id)
        .where(Bookmark.deleted_at.is_(None))
    ).first()
    if bookmark is None:
        raise SnapshotNotFound("Bookmark not found")
    return bookmark


def require_snapshot(session: Session, bookmark_id: str, snapshot_id: str, owner_id: str) -> Snapshot:
    require_bookmark(session, bookmark_id, owner_id)
    snapshot = session.exec(
        select(Snapshot)
        .where(Snapshot.id == snapshot_id)
        .where(Snapshot.bookmark_id == bookmark_id)
        .where(Snapshot.owner_user_id == owner_id)
    ).first()
    if snapshot is None:
        raise SnapshotNotFound("Snapshot not found")
    return snapshot
