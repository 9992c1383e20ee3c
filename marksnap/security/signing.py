"""HMAC-signed, time-limited capability tokens for snapshot read access.

A capability is the tuple ``(owner_id, resource_id, expires_at, action)`` plus
an HMAC-SHA256 signature over ``owner_id:resource_id:expires_at:action``.
Nothing is persisted; verification recomputes the MAC with the server secret.
Anyone holding an unexpired, correctly signed tuple may read the resource.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from ..config import SnapshotSettings
from ..errors import CapabilityExpired, CapabilityInvalid
from ..observability.metrics import record_capability_check

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
ACTION_VIEW = "view"


@dataclass(frozen=True)
class Capability:
    owner_id: str
    resource_id: str
    expires_at: int
    action: str
    signature: str

    def as_query(self) -> dict:
        return {
            "signature": self.signature,
            "expires_at": str(self.expires_at),
            "owner_id": self.owner_id,
            "action": self.action,
        }


@dataclass(frozen=True)
class Verification:
    valid: bool
    reason: Optional[str] = None


def canonical_message(owner_id: str, resource_id: str, expires_at: int, action: Optional[str]) -> bytes:
    return f"{owner_id}:{resource_id}:{int(expires_at)}:{action or ''}".encode("utf-8")


class CapabilitySigner:
    def __init__(self, secret: Union[str, bytes], *, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise RuntimeError("SNAPSHOT_SIGNING_SECRET is not set. Unable to sign snapshot URLs.")
        self._key = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: SnapshotSettings) -> "CapabilitySigner":
        return cls(settings.signing_secret or "")

    def _now(self) -> int:
        return int(self._clock())

    def _mac(self, message: bytes) -> hmac.HMAC:
        h = hmac.HMAC(self._key, hashes.SHA256())
        h.update(message)
        return h

    def sign(self, owner_id: str, resource_id: str, expires_at: int, action: Optional[str]) -> str:
        return self._mac(canonical_message(owner_id, resource_id, expires_at, action)).finalize().hex()

    def issue(
        self,
        owner_id: str,
        resource_id: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        action: str = ACTION_VIEW,
    ) -> Capability:
        expires_at = self._now() + int(ttl_seconds)
        return Capability(
            owner_id=owner_id,
            resource_id=resource_id,
            expires_at=expires_at,
            action=action,
            signature=self.sign(owner_id, resource_id, expires_at, action),
        )

    def verify(
        self,
        signature: Optional[str],
        expires_at: Optional[int],
        owner_id: Optional[str],
        resource_id: str,
        action: Optional[str] = None,
    ) -> Verification:
        if not signature or expires_at is None or not owner_id:
            record_capability_check("missing")
            return Verification(False, "Missing signature parameters")
        if int(expires_at) < self._now():
            record_capability_check("expired")
            return Verification(False, "URL has expired")
        try:
            provided = bytes.fromhex(signature)
        except ValueError:
            record_capability_check("invalid")
            return Verification(False, "Invalid signature")
        mac = self._mac(canonical_message(owner_id, resource_id, expires_at, action))
        try:
            # HMAC.verify compares in constant time.
            mac.verify(provided)
        except InvalidSignature:
            record_capability_check("invalid")
            return Verification(False, "Invalid signature")
        record_capability_check("valid")
        return Verification(True)

    def require(
        self,
        signature: Optional[str],
        expires_at: Optional[int],
        owner_id: Optional[str],
        resource_id: str,
        action: Optional[str] = None,
    ) -> None:
        result = self.verify(signature, expires_at, owner_id, resource_id, action)
        if result.valid:
            return
        logger.info("Rejected snapshot capability for %s: %s", resource_id, result.reason)
        if result.reason == "URL has expired":
            raise CapabilityExpired()
        raise CapabilityInvalid(result.reason or "Invalid signature")
