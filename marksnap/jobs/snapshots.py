"""Job handlers for snapshot retention and orphan repair."""

import logging
from typing import TYPE_CHECKING, Any, Dict

from ..db import get_session_ctx
from ..snapshots.retention import ORPHAN_REPAIR_JOB_TYPE, RETENTION_JOB_TYPE
from .registry import register_handler

if TYPE_CHECKING:
    from ..snapshots import SnapshotService

logger = logging.getLogger(__name__)


def handle_snapshot_retention(
    service: "SnapshotService", *, job_id: str, owner_user_id: str | None, payload: dict
) -> Dict[str, Any]:
    # Expected payload: {"bookmark_id": str, "keep_count": int | None, "older_than_days": int | None}
    bookmark_id = payload.get("bookmark_id")
    if not bookmark_id:
        raise ValueError("bookmark_id is required")
    if not owner_user_id:
        raise ValueError("owner_user_id is required")
    retention = service.retention
    keep_count = payload.get("keep_count")
    older_than_days = payload.get("older_than_days")
    with get_session_ctx() as session:
        if keep_count is not None:
            result = retention.apply_keep_count(
                session, bookmark_id=bookmark_id, owner_id=owner_user_id, keep_count=int(keep_count)
            )
        elif older_than_days is not None:
            result = retention.apply_age(
                session, bookmark_id=bookmark_id, owner_id=owner_user_id, older_than_days=int(older_than_days)
            )
        else:
            result = retention.run_policies(session, bookmark_id=bookmark_id, owner_id=owner_user_id)
    logger.info("[job:%s] Snapshot retention for %s deleted %d", job_id, bookmark_id, result.deleted_count)
    return result.as_dict()


def handle_snapshot_orphan_repair(
    service: "SnapshotService", *, job_id: str, owner_user_id: str | None, payload: dict
) -> Dict[str, Any]:
    # Expected payload: {"bookmark_id": str | None}
    with get_session_ctx() as session:
        result = service.retention.repair_orphans(session, bookmark_id=payload.get("bookmark_id"))
    logger.info("[job:%s] Orphan repair: %s", job_id, result.message)
    details = result.as_dict()
    details["images_deleted"] = result.images_deleted
    details["blobs_deleted"] = result.blobs_deleted
    return details


register_handler(RETENTION_JOB_TYPE, handle_snapshot_retention)
register_handler(ORPHAN_REPAIR_JOB_TYPE, handle_snapshot_orphan_repair)
