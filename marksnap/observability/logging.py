import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
job_id_ctx: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
bookmark_id_ctx: ContextVar[Optional[str]] = ContextVar("bookmark_id", default=None)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(job_id)s %(bookmark_id)s"


class ContextFilter(logging.Filter):
    """Stamp request, job and bookmark identifiers onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        # The JSON format references every field, so each must exist even
        # outside a request, job, or snapshot operation.
        record.request_id = request_id_ctx.get() or ""
        record.job_id = job_id_ctx.get() or ""
        record.bookmark_id = bookmark_id_ctx.get() or ""
        return True


def setup_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = []
    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter(_LOG_FORMAT))
    handler.addFilter(ContextFilter())
    root.addHandler(handler)


def bind_request_id(req_id: Optional[str] = None) -> str:
    rid = req_id or str(uuid.uuid4())
    request_id_ctx.set(rid)
    return rid


def bind_job_id(job_id: Optional[str]) -> None:
    job_id_ctx.set(job_id)


@contextmanager
def bookmark_log_context(bookmark_id: Optional[str]) -> Iterator[None]:
    token = bookmark_id_ctx.set(bookmark_id)
    try:
        yield
    finally:
        bookmark_id_ctx.reset(token)
