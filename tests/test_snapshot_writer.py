import hashlib
from pathlib import Path

import pytest
from sqlmodel import select


OWNER = "writer-user"


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SQLMODEL_CREATE_ALL", "1")
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))

    from marksnap.db import init_db

    init_db()


@pytest.fixture()
def bookmark():
    from tests.factories import create_bookmark, create_user

    create_user(user_id=OWNER)
    return create_bookmark(owner_user_id=OWNER)


def _write(service, bookmark_id, html, *, images=(), force=False, owner=OWNER):
    from marksnap.db import get_session
    from marksnap.snapshots import CapturePayload

    payload = CapturePayload(
        html=html,
        title="Example",
        source_url="https://example.com/article",
        images=list(images),
        force=force,
    )
    with next(get_session()) as session:
        return service.writer.create(session, owner_id=owner, bookmark_id=bookmark_id, payload=payload)


def _image(data: bytes):
    from marksnap.snapshots import IncomingImage

    from tests.factories import client_hash

    return IncomingImage(claimed_hash=client_hash(data), data=data, mime_type="image/png")


def _snapshots(bookmark_id):
    from marksnap.db import get_session
    from marksnap.models import Snapshot

    with next(get_session()) as session:
        return session.exec(
            select(Snapshot).where(Snapshot.bookmark_id == bookmark_id).order_by(Snapshot.version)
        ).all()


def test_first_capture_creates_version_one(bookmark):
    from marksnap.db import get_session
    from marksnap.models import Bookmark, Job

    from tests.factories import make_service, page

    service = make_service()
    html = page("<p>Hello</p>")
    result = _write(service, bookmark.id, html)

    snap = result.snapshot
    assert not result.is_duplicate
    assert snap.version == 1
    assert snap.is_latest
    assert snap.format == "v1"
    assert snap.content_hash == hashlib.sha256(html.encode("utf-8")).hexdigest()
    assert snap.storage_size == len(html.encode("utf-8"))
    assert snap.storage_key.startswith(f"{OWNER}/{bookmark.id}/snapshot-")
    assert snap.storage_key.endswith("-v1.html")

    stored = service.store.get(snap.storage_key)
    assert stored.text() == html
    assert stored.content_type == "text/html; charset=utf-8"
    assert stored.metadata["content_hash"] == snap.content_hash

    with next(get_session()) as session:
        refreshed = session.get(Bookmark, bookmark.id)
        assert refreshed.snapshot_count == 1
        assert refreshed.has_snapshot is True
        assert refreshed.latest_snapshot_at is not None
        jobs = session.exec(select(Job).where(Job.type == "snapshot_retention")).all()
        assert len(jobs) == 1
        assert jobs[0].payload == {"bookmark_id": bookmark.id}
        assert jobs[0].owner_user_id == OWNER


def test_unchanged_content_is_reported_as_duplicate(bookmark):
    from tests.factories import make_service, page

    service = make_service()
    html = page("<p>Same</p>")
    first = _write(service, bookmark.id, html)
    second = _write(service, bookmark.id, html)

    assert second.is_duplicate
    assert second.snapshot.id == first.snapshot.id
    assert len(_snapshots(bookmark.id)) == 1
    assert len(service.store) == 1


def test_force_stores_identical_content_again(bookmark):
    from tests.factories import make_service, page

    service = make_service()
    html = page("<p>Same</p>")
    _write(service, bookmark.id, html)
    forced = _write(service, bookmark.id, html, force=True)

    assert not forced.is_duplicate
    assert forced.snapshot.version == 2
    assert len(service.store) == 2


def test_duplicate_check_only_compares_latest(bookmark):
    from tests.factories import make_service, page

    service = make_service()
    _write(service, bookmark.id, page("A"))
    _write(service, bookmark.id, page("B"))
    again = _write(service, bookmark.id, page("A"))

    assert not again.is_duplicate
    assert again.snapshot.version == 3


def test_new_version_moves_latest_flag(bookmark):
    from tests.factories import make_service, page

    service = make_service()
    for body in ("one", "two", "three"):
        _write(service, bookmark.id, page(body))

    rows = _snapshots(bookmark.id)
    assert [row.version for row in rows] == [1, 2, 3]
    assert [row.is_latest for row in rows] == [False, False, True]


def test_oversized_snapshot_is_rejected(bookmark):
    from marksnap.errors import SnapshotTooLarge

    from tests.factories import make_service

    service = make_service(max_snapshot_bytes=100)
    with pytest.raises(SnapshotTooLarge) as excinfo:
        _write(service, bookmark.id, "x" * 101)

    assert excinfo.value.status_code == 413
    assert _snapshots(bookmark.id) == []
    assert len(service.store) == 0


def test_size_limit_counts_utf8_bytes(bookmark):
    from marksnap.errors import SnapshotTooLarge

    from tests.factories import make_service

    service = make_service(max_snapshot_bytes=100)
    _write(service, bookmark.id, "x" * 100)
    with pytest.raises(SnapshotTooLarge):
        _write(service, bookmark.id, "é" * 51)


def test_quota_rejects_write_that_would_cross_the_limit(bookmark):
    from marksnap.errors import StorageQuotaExceeded

    from tests.factories import make_service

    service = make_service(quota_limit_bytes=1000)
    _write(service, bookmark.id, "a" * 900)
    with pytest.raises(StorageQuotaExceeded) as excinfo:
        _write(service, bookmark.id, "b" * 200)

    assert excinfo.value.used_bytes == 900
    assert len(_snapshots(bookmark.id)) == 1
    assert len(service.store) == 1


def test_quota_allows_write_that_exactly_fills_the_limit(bookmark):
    from tests.factories import make_service

    service = make_service(quota_limit_bytes=1000)
    _write(service, bookmark.id, "a" * 900)
    result = _write(service, bookmark.id, "b" * 100)

    assert result.snapshot.version == 2


def test_unknown_or_foreign_bookmark_is_not_found(bookmark):
    from marksnap.errors import SnapshotNotFound

    from tests.factories import create_bookmark, make_service

    service = make_service()
    with pytest.raises(SnapshotNotFound):
        _write(service, "bm_missing", "x")
    with pytest.raises(SnapshotNotFound):
        _write(service, bookmark.id, "x", owner="someone-else")

    deleted = create_bookmark(owner_user_id=OWNER, deleted=True)
    with pytest.raises(SnapshotNotFound):
        _write(service, deleted.id, "x")


def test_images_are_stored_once_and_referenced(bookmark):
    from marksnap.db import get_session
    from marksnap.models import SnapshotImage, SnapshotImageRef

    from tests.factories import client_hash, make_service, page

    service = make_service()
    data = b"\x89PNG-image-bytes"
    claimed = client_hash(data)
    full = hashlib.sha256(data).hexdigest()
    html = page(f'<img src="/api/snapshot-images/{claimed}">')

    first = _write(service, bookmark.id, html, images=[_image(data)])
    second = _write(service, bookmark.id, html + "<!-- v2 -->", images=[_image(data)])

    assert first.images_stored == 1 and first.images_reused == 0
    assert second.images_stored == 0 and second.images_reused == 1
    assert first.snapshot.format == "v2"
    assert first.snapshot.image_count == 1

    with next(get_session()) as session:
        ledger = session.exec(select(SnapshotImage)).all()
        assert [row.hash for row in ledger] == [full]
        assert ledger[0].storage_key == f"images/sha256/{full[:2]}/{full}"
        assert ledger[0].size == len(data)
        refs = session.exec(select(SnapshotImageRef)).all()
        assert {ref.snapshot_id for ref in refs} == {first.snapshot.id, second.snapshot.id}

    assert service.store.list("images/") == [f"images/sha256/{full[:2]}/{full}"]
    stored_html = service.store.get(first.snapshot.storage_key).text()
    assert f"/api/snapshot-images/{full}?u={OWNER}&b={bookmark.id}&v=1" in stored_html


def test_repeated_image_in_one_capture_counts_once(bookmark):
    from tests.factories import make_service, page

    service = make_service()
    data = b"same-bytes"
    result = _write(service, bookmark.id, page("x"), images=[_image(data), _image(data)])

    assert result.images_stored == 1
    assert result.snapshot.image_count == 1


def test_image_over_quota_is_skipped_and_page_still_saved(bookmark):
    from marksnap.db import get_session
    from marksnap.models import SnapshotImage

    from tests.factories import make_service, page

    service = make_service(quota_limit_bytes=500)
    big = b"z" * 1000
    claimed = _image(big).claimed_hash
    html = page(f'<img src="/api/snapshot-images/{claimed}">')

    result = _write(service, bookmark.id, html, images=[_image(big)])

    assert result.images_skipped == [claimed]
    assert result.images_stored == 0
    assert result.snapshot is not None
    assert result.snapshot.image_count == 0
    assert service.store.list("images/") == []
    assert f'"/api/snapshot-images/{claimed}"' in service.store.get(result.snapshot.storage_key).text()
    with next(get_session()) as session:
        assert session.exec(select(SnapshotImage)).all() == []


def test_aborted_write_leaves_no_metadata(bookmark):
    from marksnap.db import get_session
    from marksnap.errors import StorageQuotaExceeded
    from marksnap.models import SnapshotImage, SnapshotImageRef

    from tests.factories import make_service

    service = make_service(quota_limit_bytes=1000)
    with pytest.raises(StorageQuotaExceeded):
        _write(service, bookmark.id, "h" * 500, images=[_image(b"i" * 600)])

    assert _snapshots(bookmark.id) == []
    with next(get_session()) as session:
        assert session.exec(select(SnapshotImage)).all() == []
        assert session.exec(select(SnapshotImageRef)).all() == []
    # The uploaded image blob is left for orphan repair.
    assert len(service.store.list("images/")) == 1
    assert service.store.list(OWNER) == []


def test_upload_failure_maps_to_storage_unavailable(bookmark, monkeypatch):
    from marksnap.errors import StorageUnavailable

    from tests.factories import make_service, page

    service = make_service()

    def _broken_put(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(service.store, "put", _broken_put)
    with pytest.raises(StorageUnavailable) as excinfo:
        _write(service, bookmark.id, page("content"))

    assert excinfo.value.status_code == 500
    assert _snapshots(bookmark.id) == []


def test_unverified_hashes_use_client_value(bookmark):
    from tests.factories import make_service, page

    service = make_service(verify_image_hashes=False)
    data = b"pixels"
    image = _image(data)
    result = _write(service, bookmark.id, page(f'<img src="/api/snapshot-images/{image.claimed_hash}">'), images=[image])

    assert result.images_stored == 1
    assert service.store.list("images/") == [f"images/sha256/{image.claimed_hash[:2]}/{image.claimed_hash}"]


def test_version_collision_maps_to_conflict(bookmark, monkeypatch):
    from marksnap.errors import SnapshotConflict
    from marksnap.snapshots import writer

    from tests.factories import make_service, page

    service = make_service()
    _write(service, bookmark.id, page("first"))
    monkeypatch.setattr(writer, "next_version", lambda session, bookmark_id: 1)

    with pytest.raises(SnapshotConflict) as excinfo:
        _write(service, bookmark.id, page("second"))

    assert excinfo.value.status_code == 409
    rows = _snapshots(bookmark.id)
    assert [(row.version, row.is_latest) for row in rows] == [(1, True)]
    assert len(service.store) == 1


def test_inline_retention_runs_after_write(bookmark):
    from marksnap.db import get_session
    from marksnap.models import Job
    from marksnap.snapshots import CapturePayload, SnapshotService

    from tests.factories import make_settings, page

    service = SnapshotService(make_settings(retention_default=2), retention_inline=True)
    for body in ("1", "2", "3"):
        payload = CapturePayload(html=page(body), title="t", source_url="https://example.com")
        with next(get_session()) as session:
            service.writer.create(session, owner_id=OWNER, bookmark_id=bookmark.id, payload=payload)

    assert [row.version for row in _snapshots(bookmark.id)] == [2, 3]
    with next(get_session()) as session:
        assert session.exec(select(Job)).all() == []


def test_base64_payload_accepts_data_urls():
    import base64

    from marksnap.errors import SnapshotValidationError
    from marksnap.snapshots import IncomingImage

    encoded = "data:image/webp;base64," + base64.b64encode(b"webp").decode()
    image = IncomingImage.from_base64("abc", encoded, None)
    assert image.decode() == b"webp"
    assert image.mime_type == "image/webp"

    plain = IncomingImage.from_base64("abc", base64.b64encode(b"jpg").decode(), None)
    assert plain.mime_type == "image/jpeg"

    broken = IncomingImage.from_base64("abc", "abc", None)
    with pytest.raises(SnapshotValidationError):
        broken.decode()


def test_corrupt_image_is_skipped_and_page_still_saved(bookmark):
    import base64

    from marksnap.snapshots import IncomingImage

    from tests.factories import client_hash, make_service, page

    service = make_service()
    data = b"\x89PNG-good-image"
    good = IncomingImage.from_base64(client_hash(data), base64.b64encode(data).decode(), "image/png")
    corrupt = IncomingImage.from_base64("bbbb", "abc", "image/png")

    result = _write(service, bookmark.id, page("mixed"), images=[good, corrupt])

    assert result.snapshot is not None
    assert result.images_stored == 1
    assert result.images_skipped == ["bbbb"]
    assert result.snapshot.image_count == 1
    assert len(service.store.list("images/")) == 1
