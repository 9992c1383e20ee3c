import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


class SnapshotError(Exception):
    """Base class for snapshot subsystem failures surfaced to clients."""

    status_code = 500
    code = "snapshot_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SnapshotValidationError(SnapshotError):
    status_code = 400
    code = "validation_error"


class SnapshotTooLarge(SnapshotError):
    status_code = 413
    code = "snapshot_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Snapshot too large ({size / 1024 / 1024:.2f}MB). "
            f"Maximum size is {limit / 1024 / 1024:.0f}MB.",
            details={"size_bytes": size, "limit_bytes": limit},
        )
        self.size = size
        self.limit = limit


class StorageQuotaExceeded(SnapshotError):
    status_code = 400
    code = "storage_quota_exceeded"

    def __init__(self, used_bytes: int, limit_bytes: float) -> None:
        used_gb = used_bytes / (1024 ** 3)
        limit_gb = limit_bytes / (1024 ** 3)
        super().__init__(
            f"Snapshot storage limit exceeded. Used {used_gb:.2f}GB of {limit_gb:.2f}GB. "
            "Please delete some snapshots or images and try again.",
            details={"used_bytes": int(used_bytes), "limit_bytes": int(limit_bytes)},
        )
        self.used_bytes = int(used_bytes)
        self.limit_bytes = limit_bytes


class SnapshotNotFound(SnapshotError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class CapabilityError(SnapshotError):
    status_code = 401
    code = "invalid_capability"


class CapabilityExpired(CapabilityError):
    code = "capability_expired"

    def __init__(self) -> None:
        super().__init__("URL has expired")


class CapabilityInvalid(CapabilityError):
    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class SnapshotConflict(SnapshotError):
    status_code = 409
    code = "snapshot_conflict"


class StorageUnavailable(SnapshotError):
    status_code = 500
    code = "storage_unavailable"


class SigningNotConfigured(SnapshotError):
    status_code = 500
    code = "signing_not_configured"

    def __init__(self) -> None:
        super().__init__("Snapshot URL signing is not configured")


def _problem(
    *,
    code: str,
    message: str,
    status: int,
    trace_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    body = {
        "type": f"about:blank#{code}",
        "title": message,
        "status": status,
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    if details:
        body["details"] = details
    return JSONResponse(
        body,
        status_code=status,
        headers={"X-Trace-Id": trace_id},
        media_type=PROBLEM_MEDIA_TYPE,
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SnapshotError)
    async def snapshot_exc_handler(request: Request, exc: SnapshotError):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        if exc.status_code >= 500:
            logger.error("Snapshot storage failure on %s: %s", request.url.path, exc.message)
        return _problem(
            code=exc.code,
            message=exc.message,
            status=exc.status_code,
            trace_id=trace_id,
            details=exc.details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        detail = exc.detail
        if isinstance(detail, dict):
            message = detail.get("message") or detail.get("error") or "HTTP error"
            return _problem(
                code="http_error",
                message=str(message),
                status=exc.status_code,
                trace_id=trace_id,
                details=detail,
            )
        return _problem(code="http_error", message=str(detail), status=exc.status_code, trace_id=trace_id)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        return _problem(
            code="validation_error",
            message="Request validation failed",
            status=422,
            trace_id=trace_id,
            details={"errors": [{k: v for k, v in err.items() if k not in ("ctx", "input")} for err in exc.errors()]},
        )

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
        trace_id = str(uuid.uuid4())
        logger.exception("Unhandled error: %s", exc)
        return _problem(
            code="internal_error",
            message="An unexpected error occurred",
            status=500,
            trace_id=trace_id,
        )
