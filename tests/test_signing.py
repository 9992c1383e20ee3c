from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _signer(clock=None):
    from marksnap.security.signing import CapabilitySigner

    return CapabilitySigner("s3cret", clock=clock or _Clock(1_700_000_000))


def test_issue_then_verify_round_trip():
    signer = _signer()
    cap = signer.issue("user-1", "snap_abc", ttl_seconds=60)
    assert cap.expires_at == 1_700_000_060
    assert cap.action == "view"
    assert len(cap.signature) == 64

    result = signer.verify(cap.signature, cap.expires_at, cap.owner_id, "snap_abc", cap.action)
    assert result.valid
    assert result.reason is None


def test_signature_binds_every_field():
    signer = _signer()
    cap = signer.issue("user-1", "snap_abc", ttl_seconds=60)

    assert not signer.verify(cap.signature, cap.expires_at, "user-2", "snap_abc", "view").valid
    assert not signer.verify(cap.signature, cap.expires_at, "user-1", "snap_other", "view").valid
    assert not signer.verify(cap.signature, cap.expires_at + 1, "user-1", "snap_abc", "view").valid
    assert not signer.verify(cap.signature, cap.expires_at, "user-1", "snap_abc", "download").valid


def test_expired_capability_reports_expiry():
    clock = _Clock(1_700_000_000)
    signer = _signer(clock)
    cap = signer.issue("user-1", "snap_abc", ttl_seconds=10)
    clock.now += 11

    result = signer.verify(cap.signature, cap.expires_at, "user-1", "snap_abc", "view")
    assert not result.valid
    assert result.reason == "URL has expired"


def test_expiry_at_current_second_is_still_valid():
    clock = _Clock(1_700_000_000)
    signer = _signer(clock)
    cap = signer.issue("user-1", "snap_abc", ttl_seconds=0)

    assert signer.verify(cap.signature, cap.expires_at, "user-1", "snap_abc", "view").valid


@pytest.mark.parametrize(
    ("signature", "expires_at", "owner_id"),
    [(None, 1_700_000_100, "user-1"), ("ab", None, "user-1"), ("ab", 1_700_000_100, "")],
)
def test_missing_parameters_are_rejected(signature, expires_at, owner_id):
    result = _signer().verify(signature, expires_at, owner_id, "snap_abc")
    assert not result.valid
    assert result.reason == "Missing signature parameters"


def test_malformed_hex_is_invalid_not_an_error():
    result = _signer().verify("not-hex!", 1_700_000_100, "user-1", "snap_abc", "view")
    assert not result.valid
    assert result.reason == "Invalid signature"


def test_other_secret_does_not_verify():
    from marksnap.security.signing import CapabilitySigner

    clock = _Clock(1_700_000_000)
    cap = CapabilitySigner("one", clock=clock).issue("user-1", "snap_abc", ttl_seconds=60)
    other = CapabilitySigner("two", clock=clock)

    assert not other.verify(cap.signature, cap.expires_at, "user-1", "snap_abc", "view").valid


def test_require_raises_typed_errors():
    from marksnap.errors import CapabilityExpired, CapabilityInvalid

    clock = _Clock(1_700_000_000)
    signer = _signer(clock)
    cap = signer.issue("user-1", "snap_abc", ttl_seconds=5)

    signer.require(cap.signature, cap.expires_at, "user-1", "snap_abc", "view")
    with pytest.raises(CapabilityInvalid):
        signer.require("00" * 32, cap.expires_at, "user-1", "snap_abc", "view")
    clock.now += 60
    with pytest.raises(CapabilityExpired):
        signer.require(cap.signature, cap.expires_at, "user-1", "snap_abc", "view")


def test_empty_secret_is_refused():
    from marksnap.security.signing import CapabilitySigner

    with pytest.raises(RuntimeError):
        CapabilitySigner("")


def test_canonical_message_layout():
    from marksnap.security.signing import canonical_message

    assert canonical_message("u", "r", 42, "view") == b"u:r:42:view"
    assert canonical_message("u", "r", 42, None) == b"u:r:42:"
