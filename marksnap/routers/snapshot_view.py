"""Capability-authorized read endpoints: signed page views and the image proxy."""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import HTMLResponse

from ..db import get_session
from ..errors import SnapshotValidationError
from ..snapshots import SnapshotService
from ..snapshots.reader import CORS_HEADERS
from .snapshots import get_snapshot_service


router = APIRouter(tags=["snapshots"])


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _as_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@router.get("/v1/bookmarks/{bookmark_id}/snapshots/{snapshot_id}/view", response_class=HTMLResponse)
def view_snapshot(
    bookmark_id: str,
    snapshot_id: str,
    request: Request,
    signature: Optional[str] = None,
    sig: Optional[str] = None,
    expires_at: Optional[str] = None,
    exp: Optional[str] = None,
    owner_id: Optional[str] = None,
    u: Optional[str] = None,
    action: Optional[str] = None,
    a: Optional[str] = None,
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    page = service.reader.view(
        session,
        bookmark_id=bookmark_id,
        snapshot_id=snapshot_id,
        signature=_first(signature, sig),
        expires_at=_as_int(_first(expires_at, exp)),
        owner_id=_first(owner_id, u),
        action=_first(action, a),
        base_url=str(request.base_url),
    )
    return HTMLResponse(page.html, headers=page.headers)


@router.options("/api/snapshot-images/{name}")
def snapshot_image_preflight(name: str):
    return Response(
        status_code=status.HTTP_204_NO_CONTENT,
        headers={**CORS_HEADERS, "Access-Control-Max-Age": "86400"},
    )


@router.get("/api/snapshot-images/{name}")
def get_snapshot_image(
    name: str,
    u: Optional[str] = None,
    b: Optional[str] = None,
    v: Optional[str] = None,
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    version = _as_int(v)
    if v is not None and version is None:
        raise SnapshotValidationError("Image version must be an integer")
    image = service.reader.load_image(session, name=name, owner_id=u, bookmark_id=b, version=version)
    return Response(content=image.data, media_type=image.mime_type, headers=image.headers)
