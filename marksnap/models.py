import secrets
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Column, Field, SQLModel


def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def gen_opaque_id(prefix: str) -> str:
    """Return an unguessable identifier suitable for bearer-addressed rows."""

    return f"{prefix}_{secrets.token_urlsafe(18)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    id: str = Field(primary_key=True)
    email: Optional[str] = Field(default=None, index=True)
    full_name: Optional[str] = None
    is_active: bool = Field(default=True, index=True)
    snapshot_retention_count: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, nullable=True),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class ApiToken(SQLModel, table=True):
    __tablename__ = "api_tokens"
    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_api_tokens_token_hash"),
    )

    id: str = Field(default_factory=lambda: gen_id("tok"), primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
        )
    )
    name: str = Field(index=True)
    token_hash: str
    scopes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    revoked_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class Bookmark(SQLModel, table=True):
    """Bookmark row as seen by the snapshot subsystem.

    The CRUD layer owns the remaining bookmark columns; only ownership,
    soft-delete state, retention override and snapshot counters matter here.
    """

    __tablename__ = "bookmark"
    id: str = Field(default_factory=lambda: gen_id("bm"), primary_key=True)
    owner_user_id: str = Field(index=True)
    url: Optional[str] = None
    title: Optional[str] = None
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    snapshot_retention_count: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, nullable=True),
    )
    snapshot_count: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default="0"),
    )
    has_snapshot: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default="0"),
    )
    latest_snapshot_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class Snapshot(SQLModel, table=True):
    __tablename__ = "snapshot"
    __table_args__ = (
        UniqueConstraint("bookmark_id", "version", name="uq_snapshot_bookmark_version"),
    )

    id: str = Field(default_factory=lambda: gen_opaque_id("snap"), primary_key=True)
    bookmark_id: str = Field(
        sa_column=Column(
            ForeignKey("bookmark.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    owner_user_id: str = Field(
        sa_column=Column(String, nullable=False, index=True),
    )
    version: int = Field(sa_column=Column(Integer, nullable=False))
    is_latest: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, index=True),
    )
    content_hash: str = Field(sa_column=Column(String(length=64), nullable=False, index=True))
    storage_key: str = Field(sa_column=Column(Text, nullable=False))
    storage_size: int = Field(
        default=0,
        sa_column=Column(BigInteger, nullable=False),
    )
    mime_type: str = Field(default="text/html")
    format: str = Field(
        default="v1",
        sa_column=Column(String(length=8), nullable=False, server_default="v1"),
    )
    title: Optional[str] = None
    source_url: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default="completed")
    image_count: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default="0"),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class SnapshotImage(SQLModel, table=True):
    """Dedup ledger entry for one distinct image payload."""

    __tablename__ = "snapshot_image"

    hash: str = Field(sa_column=Column(String(length=64), primary_key=True))
    storage_key: str = Field(sa_column=Column(Text, nullable=False))
    key_scheme: str = Field(
        default="v2",
        sa_column=Column(String(length=8), nullable=False, server_default="v2"),
    )
    size: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    mime_type: str = Field(default="application/octet-stream")
    owner_user_id: Optional[str] = Field(default=None, index=True)
    bookmark_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class SnapshotImageRef(SQLModel, table=True):
    __tablename__ = "snapshot_image_ref"

    snapshot_id: str = Field(
        sa_column=Column(
            ForeignKey("snapshot.id", ondelete="CASCADE"), primary_key=True
        )
    )
    image_hash: str = Field(
        sa_column=Column(
            ForeignKey("snapshot_image.hash", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        )
    )


class Job(SQLModel, table=True):
    __tablename__ = "job"
    id: str = Field(default_factory=lambda: gen_id("job"), primary_key=True)
    type: str  # snapshot_retention|snapshot_orphan_repair
    payload: Dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default="queued", index=True)
    owner_user_id: Optional[str] = Field(default=None, index=True)
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    available_at: Optional[float] = Field(default=None, index=True)
    details: Dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class JobSchedule(SQLModel, table=True):
    __tablename__ = "job_schedule"

    id: str = Field(default_factory=lambda: gen_id("js"), primary_key=True)
    schedule_name: str = Field(
        sa_column=Column(String(length=255), nullable=False, unique=True)
    )
    job_type: str = Field(
        sa_column=Column(String(length=255), nullable=False, index=True)
    )
    owner_user_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String, nullable=True, index=True),
    )
    payload: Dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    frequency: str = Field(sa_column=Column(String(length=255), nullable=False))
    next_run_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    last_run_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_job_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String, nullable=True),
    )
    last_error: Optional[str] = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, index=True),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: str = Field(default_factory=lambda: gen_id("alog"), primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    action: str = Field(index=True)
    owner_user_id: Optional[str] = Field(default=None, index=True)
    actor_user_id: Optional[str] = Field(default=None, index=True)
    details: Dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


__all__ = [
    "gen_id",
    "gen_opaque_id",
    "utcnow",
    "User",
    "ApiToken",
    "Bookmark",
    "Snapshot",
    "SnapshotImage",
    "SnapshotImageRef",
    "Job",
    "JobSchedule",
    "AuditLog",
]
