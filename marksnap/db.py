import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine


logger = logging.getLogger(__name__)

IN_MEMORY_URL = "sqlite://"

_engine: Optional[Engine] = None
_engine_url: Optional[str] = None


def database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./dev.db")


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    # Snapshot image refs rely on ON DELETE CASCADE.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url == IN_MEMORY_URL:
        # One shared connection, otherwise every session sees an empty database.
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    event.listen(engine, "connect", _sqlite_pragmas)
    return engine


def get_engine() -> Engine:
    """Return the process engine, rebuilding it when ``DATABASE_URL`` changes."""
    global _engine, _engine_url
    url = database_url()
    if _engine is None or url != _engine_url:
        logger.debug("Creating database engine for %s", url.split("@")[-1])
        _engine = _build_engine(url)
        _engine_url = url
    return _engine


def backend_name() -> str:
    return get_engine().url.get_backend_name()


def init_db() -> None:
    """Create tables outside of Alembic.

    The in-memory database is dropped and recreated on every call so each test
    starts empty. File or server databases are only touched when
    SQLMODEL_CREATE_ALL=1; production schemas come from Alembic migrations.
    """
    from . import models  # noqa: F401

    engine = get_engine()
    if database_url() == IN_MEMORY_URL:
        SQLModel.metadata.drop_all(engine)
        SQLModel.metadata.create_all(engine)
    elif os.getenv("SQLMODEL_CREATE_ALL", "0").lower() in ("1", "true"):
        SQLModel.metadata.create_all(engine)


def get_session() -> Iterator[Session]:
    with Session(get_engine()) as session:
        yield session


get_session_ctx = contextmanager(get_session)


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit everything staged inside the block, or roll it all back."""

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
