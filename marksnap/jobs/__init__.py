from .registry import enqueue_job, get_handler, known_job_types, register_handler

# Importing the handler modules populates the registry.
from . import snapshots as _snapshots  # noqa: F401

__all__ = [
    "enqueue_job",
    "register_handler",
    "get_handler",
    "known_job_types",
]
