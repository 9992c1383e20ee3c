"""Periodic triggers for snapshot maintenance jobs."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlmodel import Session, select

from ..models import Job, JobSchedule

logger = logging.getLogger(__name__)

_INTERVAL_RE = re.compile(r"(\d+)\s*([smhdw])", re.IGNORECASE)
_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}
_RETRY_UNPARSABLE = timedelta(minutes=5)


def parse_frequency(value: str) -> timedelta:
    """Parse an interval such as ``"15m"``, ``"6h"`` or ``"1d"``.

    Raises :class:`ValueError` for anything else.
    """

    text = (value or "").strip()
    if not text:
        raise ValueError("Frequency must be provided")
    match = _INTERVAL_RE.fullmatch(text)
    if match is None:
        raise ValueError("Frequency must be an integer followed by s/m/h/d/w")
    count = int(match.group(1))
    if count < 1:
        raise ValueError("Frequency must be greater than zero")
    return _UNITS[match.group(2).lower()] * count


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _next_slot(previous: Optional[datetime], interval: timedelta, now: datetime) -> datetime:
    # Missed slots are skipped rather than enqueued as a catch-up burst.
    slot = _as_utc(previous or now)
    if slot <= now:
        missed = (now - slot) // interval + 1
        slot += interval * missed
    return slot


def _lock_rows(session: Session, stmt):
    dialect = getattr(session.get_bind(), "dialect", None)
    if getattr(dialect, "supports_for_update_skip_locked", False):
        return stmt.with_for_update(skip_locked=True)
    return stmt


def ensure_schedule(
    session: Session,
    *,
    schedule_name: str,
    job_type: str,
    frequency: str,
    payload: Optional[Dict] = None,
    owner_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JobSchedule:
    """Create or update the schedule called ``schedule_name``.

    The first run is due immediately for a new schedule; an existing
    schedule keeps its ``next_run_at`` and only changes frequency/payload.
    """

    parse_frequency(frequency)
    due = _as_utc(now or datetime.now(timezone.utc))
    schedule = session.exec(select(JobSchedule).where(JobSchedule.schedule_name == schedule_name)).first()
    if schedule is None:
        schedule = JobSchedule(schedule_name=schedule_name, next_run_at=due)
        logger.info("Created schedule %s (%s every %s)", schedule_name, job_type, frequency)
    elif schedule.next_run_at is None:
        schedule.next_run_at = due
    schedule.job_type = job_type
    schedule.frequency = frequency
    schedule.payload = dict(payload or {})
    schedule.owner_user_id = owner_user_id
    schedule.is_active = True
    session.add(schedule)
    return schedule


def _job_for(schedule: JobSchedule) -> Job:
    return Job(
        type=schedule.job_type,
        payload=dict(schedule.payload or {}),
        owner_user_id=schedule.owner_user_id,
        details={"schedule_id": schedule.id, "schedule_name": schedule.schedule_name},
    )


def enqueue_due_schedules(session: Session, *, now: Optional[datetime] = None) -> List[Job]:
    """Stage one job for every active schedule whose ``next_run_at`` has passed.

    Nothing is committed; the caller owns the transaction.
    """

    current = _as_utc(now or datetime.now(timezone.utc))
    due = session.exec(
        _lock_rows(
            session,
            select(JobSchedule)
            .where(JobSchedule.is_active.is_(True))
            .where(JobSchedule.next_run_at.is_not(None))
            .where(JobSchedule.next_run_at <= current)
            .order_by(JobSchedule.next_run_at, JobSchedule.id),
        )
    ).all()

    staged: List[Job] = []
    for schedule in due:
        try:
            interval = parse_frequency(schedule.frequency)
        except ValueError as exc:
            logger.warning("Schedule %s has an unusable frequency: %s", schedule.schedule_name, exc)
            schedule.last_error = str(exc)
            schedule.next_run_at = current + _RETRY_UNPARSABLE
            session.add(schedule)
            continue

        job = _job_for(schedule)
        session.add(job)
        session.flush()
        schedule.last_job_id = job.id
        schedule.last_run_at = current
        schedule.last_error = None
        schedule.next_run_at = _next_slot(schedule.next_run_at, interval, current)
        session.add(schedule)
        staged.append(job)
    return staged


__all__ = ["enqueue_due_schedules", "ensure_schedule", "parse_frequency"]
