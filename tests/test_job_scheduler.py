from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SQLMODEL_CREATE_ALL", "1")
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))
    yield


def test_enqueue_due_schedules_advances_next_run():
    from sqlmodel import select

    from marksnap.db import get_session, init_db
    from marksnap.jobs.scheduler import enqueue_due_schedules, parse_frequency
    from marksnap.models import Job, JobSchedule

    init_db()

    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    initial_next_run = now - timedelta(minutes=5)

    with next(get_session()) as session:
        schedule = JobSchedule(
            schedule_name="repair",
            job_type="snapshot_orphan_repair",
            payload={},
            frequency="1h",
            next_run_at=initial_next_run,
        )
        session.add(schedule)
        session.commit()
        schedule_id = schedule.id

    with next(get_session()) as session:
        with session.begin():
            jobs = enqueue_due_schedules(session, now=now)
            assert len(jobs) == 1
            job = jobs[0]
            schedule = session.get(JobSchedule, schedule_id)
            assert schedule is not None
            assert schedule.last_job_id == job.id
            assert schedule.last_run_at == now
            assert schedule.last_error is None
            assert schedule.next_run_at == initial_next_run + parse_frequency("1h")
            assert job.type == "snapshot_orphan_repair"
            assert job.details.get("schedule_id") == schedule_id
            assert job.details.get("schedule_name") == "repair"
        persisted_jobs = session.exec(select(Job)).all()
        assert len(persisted_jobs) == 1

    with next(get_session()) as session:
        with session.begin():
            jobs = enqueue_due_schedules(session, now=now)
            assert jobs == []


def test_missed_slots_are_skipped():
    from marksnap.db import get_session, init_db
    from marksnap.jobs.scheduler import enqueue_due_schedules
    from marksnap.models import JobSchedule

    init_db()
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    with next(get_session()) as session:
        schedule = JobSchedule(
            schedule_name="stale",
            job_type="snapshot_orphan_repair",
            frequency="1h",
            next_run_at=now - timedelta(hours=5, minutes=30),
        )
        session.add(schedule)
        session.commit()
        schedule_id = schedule.id

    with next(get_session()) as session:
        jobs = enqueue_due_schedules(session, now=now)
        session.commit()
        assert len(jobs) == 1
        refreshed = session.get(JobSchedule, schedule_id)
        next_run = refreshed.next_run_at
        if next_run.tzinfo is None:
            next_run = next_run.replace(tzinfo=timezone.utc)
        assert next_run == now + timedelta(minutes=30)


def test_scheduler_skips_inactive_or_future():
    from marksnap.db import get_session, init_db
    from marksnap.jobs.scheduler import enqueue_due_schedules
    from marksnap.models import JobSchedule

    init_db()

    future_time = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    with next(get_session()) as session:
        inactive = JobSchedule(
            schedule_name="inactive",
            job_type="snapshot_orphan_repair",
            frequency="1h",
            next_run_at=future_time - timedelta(minutes=10),
            is_active=False,
        )
        upcoming = JobSchedule(
            schedule_name="upcoming",
            job_type="snapshot_orphan_repair",
            frequency="1h",
            next_run_at=future_time + timedelta(minutes=10),
        )
        session.add(inactive)
        session.add(upcoming)
        session.commit()
        inactive_id = inactive.id
        upcoming_id = upcoming.id

    with next(get_session()) as session:
        with session.begin():
            jobs = enqueue_due_schedules(session, now=future_time)
            assert jobs == []

        assert session.get(JobSchedule, inactive_id).last_job_id is None
        assert session.get(JobSchedule, upcoming_id).last_job_id is None


def test_unparsable_frequency_is_recorded():
    from marksnap.db import get_session, init_db
    from marksnap.jobs.scheduler import enqueue_due_schedules
    from marksnap.models import JobSchedule

    init_db()
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    with next(get_session()) as session:
        schedule = JobSchedule(
            schedule_name="broken",
            job_type="snapshot_orphan_repair",
            frequency="often",
            next_run_at=now - timedelta(minutes=1),
        )
        session.add(schedule)
        session.commit()
        schedule_id = schedule.id

    with next(get_session()) as session:
        assert enqueue_due_schedules(session, now=now) == []
        session.commit()
        refreshed = session.get(JobSchedule, schedule_id)
        assert "Frequency must be" in refreshed.last_error


def test_ensure_schedule_creates_then_updates():
    from sqlmodel import select

    from marksnap.db import get_session, init_db
    from marksnap.jobs.scheduler import ensure_schedule
    from marksnap.models import JobSchedule

    init_db()
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    with next(get_session()) as session:
        created = ensure_schedule(
            session,
            schedule_name="snapshot-orphan-repair",
            job_type="snapshot_orphan_repair",
            frequency="1d",
            now=now,
        )
        session.commit()
        assert created.next_run_at is not None

    with next(get_session()) as session:
        ensure_schedule(
            session,
            schedule_name="snapshot-orphan-repair",
            job_type="snapshot_orphan_repair",
            frequency="6h",
            now=now + timedelta(days=3),
        )
        session.commit()
        rows = session.exec(select(JobSchedule)).all()
        assert len(rows) == 1
        assert rows[0].frequency == "6h"
        next_run = rows[0].next_run_at
        if next_run.tzinfo is None:
            next_run = next_run.replace(tzinfo=timezone.utc)
        assert next_run == now

    with next(get_session()) as session:
        with pytest.raises(ValueError):
            ensure_schedule(session, schedule_name="x", job_type="snapshot_orphan_repair", frequency="0h")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("15m", timedelta(minutes=15)),
        ("1h", timedelta(hours=1)),
        ("2D", timedelta(days=2)),
        ("1w", timedelta(weeks=1)),
    ],
)
def test_parse_frequency_valid(raw, expected):
    from marksnap.jobs.scheduler import parse_frequency

    assert parse_frequency(raw) == expected


@pytest.mark.parametrize("raw", ["", "0h", "five", "10x"])
def test_parse_frequency_invalid(raw):
    from marksnap.jobs.scheduler import parse_frequency

    with pytest.raises(ValueError):
        parse_frequency(raw)
