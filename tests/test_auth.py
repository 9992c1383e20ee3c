from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SQLMODEL_CREATE_ALL", "1")
    monkeypatch.delenv("DEV_NO_AUTH", raising=False)
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))

    from marksnap.config import is_dev_no_auth
    from marksnap.db import init_db

    is_dev_no_auth.cache_clear()
    init_db()
    try:
        yield
    finally:
        is_dev_no_auth.cache_clear()


def _client():
    from marksnap.main import create_app

    from tests.factories import make_settings

    return TestClient(create_app(settings=make_settings()))


def test_bearer_token_resolves_owner():
    from tests.factories import create_api_token, create_bookmark, create_user

    create_user(user_id="token-user")
    create_api_token(user_id="token-user", raw="raw-token")
    bookmark = create_bookmark(owner_user_id="token-user")

    client = _client()
    resp = client.get(
        f"/v1/bookmarks/{bookmark.id}/snapshots",
        headers={"Authorization": "Bearer raw-token"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"items": [], "total": 0}


def test_missing_or_unknown_token_is_401():
    client = _client()
    missing = client.get("/v1/settings/storage")
    assert missing.status_code == 401
    assert missing.json()["message"] == "Missing bearer token"

    unknown = client.get("/v1/settings/storage", headers={"Authorization": "Bearer nope"})
    assert unknown.status_code == 401


@pytest.mark.parametrize(
    "fields",
    [
        {"revoked_at": datetime.now(timezone.utc)},
        {"expires_at": datetime.now(timezone.utc) - timedelta(minutes=1)},
    ],
)
def test_revoked_or_expired_tokens_are_rejected(fields):
    from marksnap.auth import resolve_user_from_token
    from marksnap.db import get_session

    from tests.factories import create_api_token, create_user

    create_user(user_id="token-user")
    create_api_token(user_id="token-user", raw="raw-token", **fields)
    with next(get_session()) as session:
        assert resolve_user_from_token(session, "raw-token") is None


def test_inactive_user_is_rejected():
    from marksnap.auth import resolve_user_from_token
    from marksnap.db import get_session
    from marksnap.models import User

    from tests.factories import create_api_token, create_user

    create_user(user_id="token-user")
    create_api_token(user_id="token-user", raw="raw-token")
    with next(get_session()) as session:
        user = session.get(User, "token-user")
        user.is_active = False
        session.add(user)
        session.commit()
        assert resolve_user_from_token(session, "raw-token") is None


def test_dev_no_auth_identity(monkeypatch):
    from marksnap.auth import resolve_user_from_token
    from marksnap.config import is_dev_no_auth
    from marksnap.db import get_session

    monkeypatch.setenv("DEV_NO_AUTH", "1")
    monkeypatch.setenv("DEV_USER_SUB", "local-dev")
    is_dev_no_auth.cache_clear()
    with next(get_session()) as session:
        identity = resolve_user_from_token(session, None)
    assert identity["sub"] == "local-dev"


def test_tokens_are_stored_hashed():
    from marksnap.auth import hash_token

    from tests.factories import create_api_token, create_user

    create_user(user_id="token-user")
    token = create_api_token(user_id="token-user", raw="raw-token")
    assert token.token_hash == hash_token("raw-token")
    assert token.token_hash != "raw-token"
