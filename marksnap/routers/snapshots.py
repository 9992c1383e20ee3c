import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy import func
from sqlmodel import select

from ..auth import get_current_user, require_user_id
from ..db import get_session
from ..models import Snapshot
from ..schemas import (
    CleanupOut,
    SnapshotCleanupRequest,
    SnapshotCreate,
    SnapshotCreated,
    SnapshotDuplicate,
    SnapshotList,
    SnapshotOut,
    ViewUrlOut,
)
from ..snapshots import CapturePayload, IncomingImage, SnapshotService
from ..snapshots.ownership import require_bookmark, require_snapshot


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/bookmarks", tags=["v1", "snapshots"])


def get_snapshot_service(request: Request) -> SnapshotService:
    return request.app.state.snapshot_service


def serialize_snapshot(snapshot: Snapshot) -> SnapshotOut:
    return SnapshotOut(
        id=snapshot.id,
        bookmark_id=snapshot.bookmark_id,
        version=snapshot.version,
        is_latest=snapshot.is_latest,
        content_hash=snapshot.content_hash,
        file_size=snapshot.storage_size,
        mime_type=snapshot.mime_type,
        format=snapshot.format,
        title=snapshot.title,
        source_url=snapshot.source_url,
        status=snapshot.status,
        image_count=snapshot.image_count,
        created_at=snapshot.created_at,
    )


def _create_snapshot(bookmark_id: str, body: SnapshotCreate, request: Request, current_user, session, service):
    owner_id = require_user_id(current_user)
    payload = CapturePayload(
        html=body.html,
        title=body.title,
        source_url=body.source_url,
        images=[IncomingImage.from_base64(img.hash, img.data, img.mime_type) for img in body.images],
        force=body.force,
    )
    result = service.writer.create(session, owner_id=owner_id, bookmark_id=bookmark_id, payload=payload)
    if result.is_duplicate:
        body_out = SnapshotDuplicate(snapshot=serialize_snapshot(result.snapshot) if result.snapshot else None)
        return JSONResponse(body_out.model_dump(mode="json"), status_code=status.HTTP_200_OK)

    snapshot = result.snapshot
    view_url = None
    if service.signer is not None:
        view_url = service.reader.issue_view_url(snapshot, base_url=str(request.base_url)).url
    return SnapshotCreated(
        **serialize_snapshot(snapshot).model_dump(),
        view_url=view_url,
        images_stored=result.images_stored,
        images_reused=result.images_reused,
        images_skipped=result.images_skipped,
    )


@router.post(
    "/{bookmark_id}/snapshots",
    response_model=SnapshotCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_snapshot(
    bookmark_id: str,
    body: SnapshotCreate,
    request: Request,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    return _create_snapshot(bookmark_id, body, request, current_user, session, service)


@router.post(
    "/{bookmark_id}/snapshots-v2",
    response_model=SnapshotCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_snapshot_v2(
    bookmark_id: str,
    body: SnapshotCreate,
    request: Request,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    return _create_snapshot(bookmark_id, body, request, current_user, session, service)


@router.get("/{bookmark_id}/snapshots", response_model=SnapshotList)
def list_snapshots(bookmark_id: str, current_user=Depends(get_current_user), session=Depends(get_session)):
    owner_id = require_user_id(current_user)
    require_bookmark(session, bookmark_id, owner_id)
    rows = session.exec(
        select(Snapshot)
        .where(Snapshot.bookmark_id == bookmark_id)
        .where(Snapshot.owner_user_id == owner_id)
        .order_by(Snapshot.version.desc())
    ).all()
    total = session.exec(
        select(func.count()).select_from(Snapshot).where(Snapshot.bookmark_id == bookmark_id)
    ).one()
    return SnapshotList(items=[serialize_snapshot(row) for row in rows], total=int(total or 0))


@router.delete("/{bookmark_id}/snapshots", response_model=CleanupOut)
def purge_snapshots(
    bookmark_id: str,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    owner_id = require_user_id(current_user)
    require_bookmark(session, bookmark_id, owner_id)
    result = service.retention.purge_bookmark(session, bookmark_id=bookmark_id, actor_user_id=owner_id)
    return CleanupOut(**result.as_dict())


@router.post("/{bookmark_id}/snapshots/cleanup", response_model=CleanupOut)
def cleanup_snapshots(
    bookmark_id: str,
    body: SnapshotCleanupRequest,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    owner_id = require_user_id(current_user)
    require_bookmark(session, bookmark_id, owner_id)
    retention = service.retention
    if body.verify_and_fix:
        result = retention.verify_and_fix(session, bookmark_id=bookmark_id, owner_id=owner_id, actor_user_id=owner_id)
    elif body.keep_count is not None:
        result = retention.apply_keep_count(
            session,
            bookmark_id=bookmark_id,
            owner_id=owner_id,
            keep_count=body.keep_count,
            actor_user_id=owner_id,
        )
    else:
        result = retention.apply_age(
            session,
            bookmark_id=bookmark_id,
            owner_id=owner_id,
            older_than_days=body.older_than_days,
            actor_user_id=owner_id,
        )
    return CleanupOut(**result.as_dict())


@router.get("/{bookmark_id}/snapshots/{snapshot_id}", response_model=SnapshotOut)
def get_snapshot(
    bookmark_id: str,
    snapshot_id: str,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
):
    snapshot = require_snapshot(session, bookmark_id, snapshot_id, require_user_id(current_user))
    return serialize_snapshot(snapshot)


@router.get("/{bookmark_id}/snapshots/{snapshot_id}/content", response_class=HTMLResponse)
def get_snapshot_content(
    bookmark_id: str,
    snapshot_id: str,
    request: Request,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    snapshot = require_snapshot(session, bookmark_id, snapshot_id, require_user_id(current_user))
    page = service.reader.render(snapshot, base_url=str(request.base_url))
    return HTMLResponse(page.html, headers=page.headers)


@router.post("/{bookmark_id}/snapshots/{snapshot_id}/view-url", response_model=ViewUrlOut)
def create_view_url(
    bookmark_id: str,
    snapshot_id: str,
    request: Request,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    snapshot = require_snapshot(session, bookmark_id, snapshot_id, require_user_id(current_user))
    issued = service.reader.issue_view_url(snapshot, base_url=str(request.base_url))
    capability = issued.capability
    return ViewUrlOut(
        url=issued.url,
        signature=capability.signature,
        expires_at=capability.expires_at,
        owner_id=capability.owner_id,
        action=capability.action,
    )


@router.delete("/{bookmark_id}/snapshots/{snapshot_id}", response_model=CleanupOut)
def delete_snapshot(
    bookmark_id: str,
    snapshot_id: str,
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    owner_id = require_user_id(current_user)
    snapshot = require_snapshot(session, bookmark_id, snapshot_id, owner_id)
    result = service.retention.delete_snapshot(session, snapshot, actor_user_id=owner_id)
    return CleanupOut(**result.as_dict())
