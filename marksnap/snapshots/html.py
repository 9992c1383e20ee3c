"""HTML rewriting for V2 image placeholders and self-contained viewing."""

from __future__ import annotations

import re
from typing import Mapping, Optional, Tuple
from urllib.parse import urlencode

from ..storage.keys import normalize_image_name

IMAGE_PROXY_PATH = "/api/snapshot-images/"

CONTENT_SECURITY_POLICY = (
    "default-src * 'unsafe-inline' 'unsafe-eval' data: blob:; "
    "img-src * data: blob:; "
    "font-src * data:; "
    "style-src * 'unsafe-inline'; "
    "script-src * 'unsafe-inline' 'unsafe-eval'; "
    "frame-src *; "
    "connect-src *;"
)

_CSP_META = f'<meta http-equiv="Content-Security-Policy" content="{CONTENT_SECURITY_POLICY}">'

# Any reference to the image proxy, optionally absolute and optionally
# already carrying a query string, up to an attribute or CSS delimiter.
_PROXY_REFERENCE = re.compile(
    r"(?:https?://[^/\s\"'()]+)?"
    + re.escape(IMAGE_PROXY_PATH)
    + r"([A-Za-z0-9._-]+?)(?:\?[^\"'\s)]*)?(?=[\"'\s)]|$)"
)

_HEAD_OPEN = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)


def is_v2_html(html: str) -> bool:
    """Return ``True`` when ``html`` carries image-proxy placeholders."""

    return IMAGE_PROXY_PATH in html


def image_query(owner_id: str, bookmark_id: str, version: int) -> str:
    return urlencode({"u": owner_id, "b": bookmark_id, "v": str(version)})


def rewrite_placeholders(
    html: str,
    hash_map: Mapping[str, str],
    *,
    owner_id: str,
    bookmark_id: str,
    version: int,
) -> Tuple[str, int]:
    """Point stored image placeholders at the proxy with ownership parameters.

    ``hash_map`` maps the hash used in the captured page to the ledger hash the
    image is stored under. Placeholders for images that were not stored are
    left untouched. Returns the new HTML and the number of replacements.
    """

    if not hash_map:
        return html, 0
    query = image_query(owner_id, bookmark_id, version)
    replaced = 0

    def _swap(match: re.Match) -> str:
        nonlocal replaced
        name = match.group(1)
        target = hash_map.get(name) or hash_map.get(normalize_image_name(name) or "")
        if target is None:
            return match.group(0)
        replaced += 1
        return f"{IMAGE_PROXY_PATH}{target}?{query}"

    return _PROXY_REFERENCE.sub(_swap, html), replaced


def qualify_image_references(
    html: str,
    *,
    owner_id: str,
    bookmark_id: str,
    version: int,
    base_url: Optional[str] = None,
) -> Tuple[str, int]:
    """Normalise every proxy reference to a fully-qualified, parameterised URL."""

    prefix = (base_url or "").rstrip("/")
    query = image_query(owner_id, bookmark_id, version)
    replaced = 0

    def _swap(match: re.Match) -> str:
        nonlocal replaced
        replaced += 1
        return f"{prefix}{IMAGE_PROXY_PATH}{match.group(1)}?{query}"

    return _PROXY_REFERENCE.sub(_swap, html), replaced


def inject_csp_meta(html: str) -> str:
    """Insert the permissive CSP meta tag right after the opening ``<head>``."""

    match = _HEAD_OPEN.search(html)
    if not match:
        return html
    return html[: match.end()] + _CSP_META + html[match.end():]
