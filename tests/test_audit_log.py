from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SQLMODEL_CREATE_ALL", "1")


def test_single_snapshot_entry_targets_the_snapshot():
    from sqlmodel import select

    from marksnap.audit import record_snapshot_audit_log
    from marksnap.db import get_session, init_db
    from marksnap.models import AuditLog

    init_db()
    with next(get_session()) as session:
        record_snapshot_audit_log(
            session,
            bookmark_id="bm-1",
            action="snapshot_delete",
            owner_user_id="owner",
            actor_user_id="owner",
            snapshot_ids=["snap-1"],
            details={"freed_space": 10},
        )
        session.commit()
        row = session.exec(select(AuditLog)).one()
        assert row.entity_type == "snapshot"
        assert row.entity_id == "snap-1"
        assert row.details == {"bookmark_id": "bm-1", "snapshot_ids": ["snap-1"], "freed_space": 10}


def test_bulk_entry_targets_the_bookmark():
    from sqlmodel import select

    from marksnap.audit import record_snapshot_audit_log
    from marksnap.db import get_session, init_db
    from marksnap.models import AuditLog

    init_db()
    with next(get_session()) as session:
        record_snapshot_audit_log(
            session,
            bookmark_id="bm-1",
            action="snapshot_retention",
            owner_user_id="owner",
            snapshot_ids=["a", "b"],
        )
        session.commit()
        row = session.exec(select(AuditLog)).one()
        assert row.entity_type == "bookmark"
        assert row.entity_id == "bm-1"
        assert row.actor_user_id is None
        assert row.details["snapshot_ids"] == ["a", "b"]
