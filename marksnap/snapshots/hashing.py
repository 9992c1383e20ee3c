"""Content digests shared by the writer, reader, and cleanup paths."""

from __future__ import annotations

import hashlib
from typing import Union

HASH_ALGORITHM = "sha256"


def content_hash(payload: Union[bytes, str]) -> str:
    """Return the hex SHA-256 digest of ``payload`` (text is UTF-8 encoded)."""

    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hashlib.sha256(data).hexdigest()


def utf8_size(text: str) -> int:
    return len(text.encode("utf-8"))
