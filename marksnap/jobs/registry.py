from typing import Any, Dict, Optional, Protocol

from sqlmodel import Session

from ..models import Job


class JobHandler(Protocol):
    def __call__(self, service: Any, *, job_id: str, owner_user_id: str | None, payload: dict) -> Any:  # noqa: D401
        """Run one snapshot maintenance job against ``service`` and return its details."""


_REGISTRY: Dict[str, JobHandler] = {}


def register_handler(job_type: str, handler: JobHandler) -> None:
    _REGISTRY[job_type] = handler


def get_handler(job_type: str) -> JobHandler | None:
    return _REGISTRY.get(job_type)


def known_job_types() -> list[str]:
    return sorted(_REGISTRY)


def enqueue_job(
    session: Session,
    job_type: str,
    *,
    owner_user_id: Optional[str] = None,
    payload: Optional[dict] = None,
    details: Optional[dict] = None,
) -> Job:
    """Stage a queued job in the caller's transaction."""

    if job_type not in _REGISTRY:
        raise ValueError(f"Unknown job type: {job_type}")
    job = Job(
        type=job_type,
        payload=dict(payload or {}),
        owner_user_id=owner_user_id,
        details=dict(details or {}),
    )
    session.add(job)
    return job
