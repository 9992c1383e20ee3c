from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..db import get_session
from ..schemas import StorageQuotaOut
from ..snapshots import SnapshotService
from .snapshots import get_snapshot_service


router = APIRouter(prefix="/v1/settings", tags=["v1", "settings"])


@router.get("/storage", response_model=StorageQuotaOut)
def storage_usage(
    current_user=Depends(get_current_user),
    session=Depends(get_session),
    service: SnapshotService = Depends(get_snapshot_service),
):
    check = service.quota.check(session, 0)
    report = check.as_dict()
    return StorageQuotaOut(
        used_bytes=report["used_bytes"],
        limit_bytes=report["limit_bytes"],
        unlimited=report["unlimited"],
    )
