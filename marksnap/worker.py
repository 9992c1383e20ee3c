"""Polling worker for snapshot maintenance jobs.

Each pass enqueues due schedules, claims the oldest runnable job and runs its
handler against the worker's :class:`SnapshotService`. Failures are retried
with exponential backoff until ``WORKER_MAX_ATTEMPTS`` (or the per-type
``WORKER_MAX_ATTEMPTS_<TYPE>``) is reached.
"""

import logging
import os
import time
from typing import Any, Dict, Optional

from sqlmodel import select

from .db import get_session_ctx
from .jobs import get_handler
from .jobs.scheduler import enqueue_due_schedules
from .models import Job
from .observability.logging import bind_job_id, setup_logging
from .observability.metrics import JOB_COUNTER, JOB_DURATION
from .snapshots import SnapshotService

logger = logging.getLogger(__name__)


def _env_for(job_type: str, name: str, default: str) -> str:
    return os.getenv(f"{name}_{job_type.upper()}", os.getenv(name, default))


def max_attempts(job_type: str) -> int:
    return int(_env_for(job_type, "WORKER_MAX_ATTEMPTS", "3"))


def retry_delay(job_type: str, attempts: int) -> float:
    base = float(_env_for(job_type, "WORKER_BACKOFF_BASE", "2"))
    return base * (2 ** max(attempts - 1, 0))


class JobWorker:
    def __init__(self, service: SnapshotService, *, poll_interval: Optional[float] = None) -> None:
        self.service = service
        if poll_interval is None:
            poll_interval = float(os.getenv("WORKER_POLL_INTERVAL", "2.0"))
        self.poll_interval = poll_interval

    def enqueue_scheduled(self) -> int:
        with get_session_ctx() as session:
            jobs = enqueue_due_schedules(session)
            session.commit()
        if jobs:
            logger.info("Enqueued %d scheduled jobs", len(jobs))
        return len(jobs)

    def claim_next(self) -> Optional[Job]:
        """Flip the oldest runnable queued job to ``in_progress`` and return it."""

        now = time.time()
        with get_session_ctx() as session:
            job = session.exec(
                select(Job)
                .where(Job.status == "queued")
                .where((Job.available_at.is_(None)) | (Job.available_at <= now))
                .order_by(Job.attempts.asc(), Job.created_at.asc())
                .limit(1)
            ).first()
            if job is None:
                return None
            job.status = "in_progress"
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def execute(self, job: Job) -> Dict[str, Any]:
        job_type = job.type or "unknown"
        handler = get_handler(job_type)
        if handler is None:
            raise RuntimeError(f"No handler registered for job type: {job_type}")
        logger.info("Running job", extra={"event": "job_start", "type": job_type})
        started = time.time()
        try:
            details = handler(self.service, job_id=job.id, owner_user_id=job.owner_user_id, payload=job.payload or {})
        except Exception:
            JOB_COUNTER.labels(job_type, "failed").inc()
            raise
        finally:
            JOB_DURATION.observe(time.time() - started)
        JOB_COUNTER.labels(job_type, "done").inc()
        return details or {}

    def complete(self, job: Job, details: Optional[Dict[str, Any]] = None) -> None:
        with get_session_ctx() as session:
            row = session.get(Job, job.id)
            if row is None:
                return
            row.status = "done"
            row.last_error = None
            if details:
                row.details = {**(row.details or {}), **details}
            session.add(row)
            session.commit()
        logger.info("Job finished", extra={"event": "job_done", "type": job.type})

    def fail(self, job: Job, error: str) -> None:
        """Record a failed attempt; requeue with backoff or give up."""

        with get_session_ctx() as session:
            row = session.get(Job, job.id)
            if row is None:
                return
            row.attempts = (row.attempts or 0) + 1
            row.last_error = error[:500]
            job_type = row.type or ""
            if row.attempts < max_attempts(job_type):
                row.status = "queued"
                row.available_at = time.time() + retry_delay(job_type, row.attempts)
            else:
                row.status = "failed"
                row.available_at = None
            session.add(row)
            session.commit()
            status = row.status
        logger.warning(
            "Job attempt failed", extra={"event": "job_error", "type": job.type, "status": status, "error": error}
        )

    def run_once(self) -> bool:
        """Enqueue due schedules and run at most one job; ``True`` if a job ran."""

        self.enqueue_scheduled()
        job = self.claim_next()
        if job is None:
            return False
        bind_job_id(job.id)
        try:
            self.complete(job, self.execute(job))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed: %s", job.id, exc)
            self.fail(job, str(exc))
        finally:
            bind_job_id(None)
        return True

    def run_forever(self) -> None:
        logger.info("Worker started")
        try:
            while True:
                if not self.run_once():
                    time.sleep(self.poll_interval)
        except KeyboardInterrupt:
            logger.info("Worker stopped by user")


def main() -> None:
    setup_logging()
    JobWorker(SnapshotService.from_env()).run_forever()


if __name__ == "__main__":
    main()
