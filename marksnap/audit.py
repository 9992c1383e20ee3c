"""Audit log helper utilities."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlmodel import Session

from .models import AuditLog


def record_audit_log(
    session: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    owner_user_id: Optional[str],
    actor_user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Persist an :class:`AuditLog` row in the current transaction."""

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        owner_user_id=owner_user_id,
        actor_user_id=actor_user_id,
        details=details or {},
    )
    session.add(log)
    return log


def record_snapshot_audit_log(
    session: Session,
    *,
    bookmark_id: str,
    action: str,
    owner_user_id: Optional[str],
    actor_user_id: Optional[str] = None,
    snapshot_ids: Optional[List[str]] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Record a snapshot-level entry for one row, or a bookmark-level entry for many."""

    ids = list(snapshot_ids or [])
    payload: Dict[str, Any] = {"bookmark_id": bookmark_id, "snapshot_ids": ids}
    if details:
        payload.update(details)
    single = len(ids) == 1
    return record_audit_log(
        session,
        entity_type="snapshot" if single else "bookmark",
        entity_id=ids[0] if single else bookmark_id,
        action=action,
        owner_user_id=owner_user_id,
        actor_user_id=actor_user_id,
        details=payload,
    )
