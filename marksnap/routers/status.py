from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, text
from sqlmodel import select

from ..db import backend_name, get_session
from ..models import Snapshot
from ..schemas import StatusResponse


router = APIRouter(tags=["status"])


@router.get("/status", response_model=StatusResponse)
def get_status():
    return StatusResponse()


@router.get("/status/db", response_model=dict)
def db_status(request: Request, session=Depends(get_session)):
    details = {"backend": backend_name()}
    settings = getattr(request.app.state, "snapshot_settings", None)
    if settings is not None:
        details["storage_backend"] = settings.storage_backend
    try:
        session.exec(text("SELECT 1"))
        details["snapshots"] = session.exec(select(func.count()).select_from(Snapshot)).one()
    except Exception as e:  # noqa: BLE001
        details["error"] = str(e)
        return {"ok": False, "details": details}
    return {"ok": True, "details": details}
