from pathlib import Path

import pytest

from uploader.backend import LocalObjectBackend
from uploader.errors import ObjectNotFound, PermanentBackendError, RangeNotSatisfiable


def test_local_backend_put_and_get(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path), chunk_size=3)

    etag = backend.put_object("1_payload.bin", "text/plain", b"payload")
    stream = backend.get_object("1_payload.bin")

    assert etag is not None
    assert list(stream) == [b"pay", b"loa", b"d"]
    assert stream.content_length == 7
    assert stream.content_type == "text/plain"
    info = backend.head_object("1_payload.bin")
    assert info.size == 7
    assert info.content_type == "text/plain"


def test_local_backend_ranged_get(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path))
    backend.put_object("k", "application/octet-stream", b"abcdefghijk")

    assert backend.get_object("k", byte_range=(2, 7)).read() == b"cdefgh"
    with pytest.raises(RangeNotSatisfiable):
        backend.get_object("k", byte_range=(20, 30))


def test_local_backend_multipart_is_invisible_until_completed(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path))
    session_id = backend.initiate_multipart("big.bin", "application/octet-stream")
    etag_2 = backend.upload_part("big.bin", session_id, 2, b"world")
    etag_1 = backend.upload_part("big.bin", session_id, 1, b"hello ")

    assert backend.list_objects().entries == []
    with pytest.raises(ObjectNotFound):
        backend.get_object("big.bin")

    backend.complete_multipart("big.bin", session_id, [(1, etag_1), (2, etag_2)])

    assert backend.list_objects().entries == ["big.bin"]
    assert backend.get_object("big.bin").read() == b"hello world"
    assert list((tmp_path / ".multipart").iterdir()) == []


def test_local_backend_abort_discards_parts(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path))
    session_id = backend.initiate_multipart("big.bin", "application/octet-stream")
    backend.upload_part("big.bin", session_id, 1, b"partial")

    backend.abort_multipart("big.bin", session_id)

    assert backend.list_objects().entries == []
    assert list((tmp_path / ".multipart").iterdir()) == []
    with pytest.raises(PermanentBackendError):
        backend.abort_multipart("big.bin", session_id)


def test_local_backend_rejects_mismatched_etag(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path))
    session_id = backend.initiate_multipart("big.bin", "application/octet-stream")
    backend.upload_part("big.bin", session_id, 1, b"data")

    with pytest.raises(PermanentBackendError):
        backend.complete_multipart("big.bin", session_id, [(1, '"not-the-etag"')])


def test_local_backend_lists_in_pages(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path))
    for name in ("e", "a", "d", "b", "c"):
        backend.put_object(name, "text/plain", b"x")

    first = backend.list_objects(page_size=2)
    second = backend.list_objects(continuation_token=first.continuation_token, page_size=2)
    third = backend.list_objects(continuation_token=second.continuation_token, page_size=2)

    assert first.entries == ["a", "b"]
    assert second.entries == ["c", "d"]
    assert third.entries == ["e"]
    assert third.continuation_token is None


def test_local_backend_missing_keys(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path))

    with pytest.raises(ObjectNotFound):
        backend.get_object("missing")
    with pytest.raises(ObjectNotFound):
        backend.delete_object("missing")


def test_local_backend_refuses_keys_outside_root(tmp_path: Path) -> None:
    backend = LocalObjectBackend(str(tmp_path / "store"))

    for key in ("../escape", "a/../../escape", ".meta/x"):
        with pytest.raises(PermanentBackendError):
            backend.put_object(key, "text/plain", b"x")
