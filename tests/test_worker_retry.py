import time
from pathlib import Path

import pytest


OWNER = "worker-user"


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SQLMODEL_CREATE_ALL", "1")
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))


def _worker(**settings):
    from marksnap.worker import JobWorker

    from tests.factories import make_service

    return JobWorker(make_service(**settings), poll_interval=0)


def test_worker_retry_backoff(monkeypatch):
    monkeypatch.setenv("WORKER_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("WORKER_BACKOFF_BASE", "0.1")

    from marksnap.db import init_db, get_session
    from marksnap.models import Job

    init_db()
    with next(get_session()) as session:
        j = Job(type="unknown", payload={}, status="queued", owner_user_id="u")
        session.add(j)
        session.commit()
        job_id = j.id

    worker = _worker()
    job = worker.claim_next()
    assert job is not None and job.id == job_id
    assert worker.claim_next() is None
    # Simulate failure twice
    worker.fail(job, "oops")
    with next(get_session()) as session:
        dbj = session.get(Job, job_id)
        assert dbj.status == "queued"
        assert dbj.attempts == 1
        assert dbj.available_at is not None and dbj.available_at > time.time()

    # Second failure should mark failed due to max attempts=2
    worker.fail(job, "oops again")
    with next(get_session()) as session:
        dbj2 = session.get(Job, job_id)
        assert dbj2.status == "failed"
        assert dbj2.attempts == 2
        assert dbj2.last_error == "oops again"


@pytest.mark.parametrize(
    "attempts, expected",
    [(1, 0.5), (2, 1.0), (3, 2.0)],
)
def test_retry_delay_doubles(monkeypatch, attempts, expected):
    monkeypatch.setenv("WORKER_BACKOFF_BASE", "0.5")

    from marksnap.worker import retry_delay

    assert retry_delay("snapshot_retention", attempts) == expected


def test_per_type_attempt_override(monkeypatch):
    monkeypatch.setenv("WORKER_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("WORKER_MAX_ATTEMPTS_SNAPSHOT_ORPHAN_REPAIR", "7")

    from marksnap.worker import max_attempts

    assert max_attempts("snapshot_orphan_repair") == 7
    assert max_attempts("snapshot_retention") == 3


def test_unknown_job_type_fails_without_handler(monkeypatch):
    monkeypatch.setenv("WORKER_MAX_ATTEMPTS", "1")

    from marksnap.db import get_session, init_db
    from marksnap.models import Job

    init_db()
    with next(get_session()) as session:
        job = Job(type="no_such_job", payload={}, owner_user_id=OWNER)
        session.add(job)
        session.commit()
        job_id = job.id

    assert _worker().run_once() is True
    with next(get_session()) as session:
        failed = session.get(Job, job_id)
        assert failed.status == "failed"
        assert "No handler registered" in failed.last_error


def test_run_once_applies_queued_retention():
    from marksnap.db import get_session, init_db
    from marksnap.models import Job, Snapshot
    from marksnap.snapshots import CapturePayload
    from sqlmodel import select

    from tests.factories import create_bookmark, create_user, page

    init_db()
    worker = _worker(retention_default=2)
    service = worker.service
    create_user(user_id=OWNER)
    bookmark = create_bookmark(owner_user_id=OWNER)
    for n in range(3):
        payload = CapturePayload(html=page(str(n)), title="t", source_url="https://example.com")
        with next(get_session()) as session:
            service.writer.create(session, owner_id=OWNER, bookmark_id=bookmark.id, payload=payload)

    while worker.run_once():
        pass

    with next(get_session()) as session:
        versions = [row.version for row in session.exec(select(Snapshot).order_by(Snapshot.version)).all()]
        jobs = session.exec(select(Job)).all()
    assert versions == [2, 3]
    assert {job.status for job in jobs} == {"done"}
    assert len(jobs) == 3
    assert all("deleted_count" in job.details for job in jobs)
    assert all(job.details.get("source") == "snapshot_write" for job in jobs)


def test_retention_job_without_bookmark_fails(monkeypatch):
    monkeypatch.setenv("WORKER_MAX_ATTEMPTS", "1")

    from marksnap.db import get_session, init_db
    from marksnap.models import Job

    init_db()
    with next(get_session()) as session:
        job = Job(type="snapshot_retention", payload={}, owner_user_id=OWNER)
        session.add(job)
        session.commit()
        job_id = job.id

    assert _worker().run_once() is True
    with next(get_session()) as session:
        failed = session.get(Job, job_id)
        assert failed.status == "failed"
        assert "bookmark_id is required" in failed.last_error


def test_run_once_enqueues_due_orphan_repair():
    from datetime import datetime, timedelta, timezone

    from marksnap.db import get_session, init_db
    from marksnap.models import Job, JobSchedule
    from sqlmodel import select

    init_db()
    worker = _worker()
    worker.service.store.put("images/sha256/aa/aaaa", b"x", content_type="image/png", metadata={"uploaded_at": "0"})
    with next(get_session()) as session:
        session.add(
            JobSchedule(
                schedule_name="snapshot-orphan-repair",
                job_type="snapshot_orphan_repair",
                frequency="1d",
                next_run_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            )
        )
        session.commit()

    assert worker.run_once() is True
    assert worker.run_once() is False
    with next(get_session()) as session:
        job = session.exec(select(Job)).one()
    assert job.status == "done"
    assert job.details["blobs_deleted"] == 1
    assert worker.service.store.get("images/sha256/aa/aaaa") is None
