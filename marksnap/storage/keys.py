"""Object key layout for snapshot HTML bodies and image blobs."""

from __future__ import annotations

import re
from typing import Optional

# Image keys written by current code are content-addressed and shared across
# owners. Ledger rows record the scheme that wrote them.
IMAGE_KEY_SCHEME = "v2"
IMAGE_KEY_PREFIX = "images/"

KNOWN_IMAGE_EXTENSIONS = (".webp", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".avif")

_HASH_NAME = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def html_key(owner_id: str, bookmark_id: str, version: int, timestamp_ms: int) -> str:
    return f"{owner_id}/{bookmark_id}/snapshot-{timestamp_ms}-v{version}.html"


def image_key(image_hash: str) -> str:
    return f"{IMAGE_KEY_PREFIX}sha256/{image_hash[:2]}/{image_hash}"


def normalize_image_name(name: str) -> Optional[str]:
    """Return the bare image hash for a requested proxy path segment.

    Older captures referenced images with a file extension appended; exactly
    one known extension is stripped. Anything that is not a plain hash-like
    token yields ``None``.
    """

    candidate = (name or "").strip()
    lowered = candidate.lower()
    for ext in KNOWN_IMAGE_EXTENSIONS:
        if lowered.endswith(ext):
            candidate = candidate[: -len(ext)]
            break
    if not _HASH_NAME.match(candidate):
        return None
    return candidate
