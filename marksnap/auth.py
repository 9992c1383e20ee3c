"""Bearer-token session resolver for the snapshot API.

Session issuance lives elsewhere; this module only maps an opaque API token
(stored as a SHA-256 digest) to the owning user.
"""

from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session, select

from .config import is_dev_no_auth
from .db import get_session
from .models import ApiToken, User

security = HTTPBearer(auto_error=False)

logger = logging.getLogger(__name__)


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _dev_user() -> Dict[str, Any]:
    return {
        "sub": os.getenv("DEV_USER_SUB", "dev-user"),
        "email": os.getenv("DEV_USER_EMAIL", "dev@example.com"),
        "name": os.getenv("DEV_USER_NAME", "Developer"),
        "claims": {"dev_no_auth": True},
    }


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def resolve_user_from_token(session: Session, token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return a user dictionary for ``token``, or ``None`` when it is unusable."""

    if is_dev_no_auth():
        logger.debug("DEV_NO_AUTH enabled; returning synthetic developer identity")
        return _dev_user()
    if not token:
        return None
    row = session.exec(select(ApiToken).where(ApiToken.token_hash == hash_token(token))).first()
    if row is None or row.revoked_at is not None:
        return None
    if row.expires_at is not None and _ensure_utc(row.expires_at) <= datetime.now(timezone.utc):
        logger.debug("Rejected expired API token %s", row.id)
        return None
    user = session.get(User, row.user_id)
    if user is None or not user.is_active:
        return None
    return {"sub": user.id, "email": user.email, "name": user.full_name, "token_id": row.id}


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    user = resolve_user_from_token(session, creds.credentials if creds else None)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return user


def require_user_id(current_user) -> str:
    user_id = current_user.get("sub") if isinstance(current_user, dict) else None
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing user identifier")
    return user_id
