"""Application configuration helpers for snapshot storage."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}

DEFAULT_MAX_SNAPSHOT_BYTES = 50 * 1024 * 1024
DEFAULT_RETENTION_COUNT = 5
DEFAULT_VIEW_URL_TTL_SECONDS = 24 * 3600
DEFAULT_ORPHAN_GRACE_SECONDS = 3600


def _read_flag(name: str) -> bool | None:
    """Return the parsed boolean value for ``name`` if explicitly set."""

    value = os.getenv(name)
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized.lower() in _TRUE_VALUES


def _read_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default


def parse_quota_limit(raw: Optional[str]) -> float:
    """Return the configured storage ceiling in bytes.

    Unset, empty, unparsable, or non-positive values mean "unlimited" and are
    returned as ``math.inf``.
    """

    if raw is None or not raw.strip():
        return math.inf
    try:
        parsed = float(raw.strip())
    except ValueError:
        logger.warning("Invalid SNAPSHOT_STORAGE_MAX_TOTAL_BYTES %r, treating as unlimited", raw)
        return math.inf
    if not math.isfinite(parsed) or parsed <= 0:
        return math.inf
    return parsed


__all__ = [
    "SnapshotSettings",
    "get_settings",
    "is_dev_no_auth",
    "is_retention_inline",
    "parse_quota_limit",
]


@dataclass(frozen=True)
class SnapshotSettings:
    storage_backend: str = "memory"
    storage_dir: str = "./data/snapshots"
    s3_bucket: Optional[str] = None
    s3_prefix: str = ""
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None
    max_snapshot_bytes: int = DEFAULT_MAX_SNAPSHOT_BYTES
    quota_limit_bytes: float = math.inf
    retention_default: int = DEFAULT_RETENTION_COUNT
    retention_max_age_days: Optional[int] = None
    signing_secret: Optional[str] = None
    view_url_ttl_seconds: int = DEFAULT_VIEW_URL_TTL_SECONDS
    public_base_url: Optional[str] = None
    verify_image_hashes: bool = True
    orphan_grace_seconds: int = DEFAULT_ORPHAN_GRACE_SECONDS

    @property
    def quota_unlimited(self) -> bool:
        return not math.isfinite(self.quota_limit_bytes)

    @classmethod
    def from_env(cls) -> "SnapshotSettings":
        verify = _read_flag("SNAPSHOT_VERIFY_IMAGE_HASHES")
        max_age = _read_int("SNAPSHOT_RETENTION_MAX_AGE_DAYS", None)
        return cls(
            storage_backend=(os.getenv("SNAPSHOT_STORAGE_BACKEND") or "local").strip().lower(),
            storage_dir=os.getenv("SNAPSHOT_STORAGE_DIR", "./data/snapshots"),
            s3_bucket=os.getenv("SNAPSHOT_S3_BUCKET") or None,
            s3_prefix=os.getenv("SNAPSHOT_S3_PREFIX", ""),
            s3_endpoint_url=os.getenv("SNAPSHOT_S3_ENDPOINT_URL") or None,
            s3_region=os.getenv("SNAPSHOT_S3_REGION") or None,
            max_snapshot_bytes=_read_int("SNAPSHOT_MAX_BYTES", DEFAULT_MAX_SNAPSHOT_BYTES) or DEFAULT_MAX_SNAPSHOT_BYTES,
            quota_limit_bytes=parse_quota_limit(os.getenv("SNAPSHOT_STORAGE_MAX_TOTAL_BYTES")),
            retention_default=_read_int("SNAPSHOT_RETENTION_DEFAULT", DEFAULT_RETENTION_COUNT),
            retention_max_age_days=max_age if max_age and max_age > 0 else None,
            signing_secret=os.getenv("SNAPSHOT_SIGNING_SECRET") or None,
            view_url_ttl_seconds=_read_int("SNAPSHOT_VIEW_URL_TTL_SECONDS", DEFAULT_VIEW_URL_TTL_SECONDS)
            or DEFAULT_VIEW_URL_TTL_SECONDS,
            public_base_url=(os.getenv("SNAPSHOT_PUBLIC_BASE_URL") or "").rstrip("/") or None,
            verify_image_hashes=True if verify is None else verify,
            orphan_grace_seconds=_read_int("SNAPSHOT_ORPHAN_GRACE_SECONDS", DEFAULT_ORPHAN_GRACE_SECONDS)
            or 0,
        )


def get_settings() -> SnapshotSettings:
    """Return a fresh settings object built from the environment."""

    return SnapshotSettings.from_env()


@lru_cache(maxsize=1)
def is_dev_no_auth() -> bool:
    """Return ``True`` when the synthetic developer identity is enabled."""

    flag = _read_flag("DEV_NO_AUTH")
    if flag is None:
        return False
    return flag


@lru_cache(maxsize=1)
def is_retention_inline() -> bool:
    """Return ``True`` when retention runs in-request instead of as a job."""

    flag = _read_flag("SNAPSHOT_RETENTION_INLINE")
    if flag is None:
        return False
    return flag
