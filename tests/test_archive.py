import io
import os
import zipfile

import pytest

from uploader.archive import ArchiveBundler, IterableReader
from uploader.errors import BundleError


def _entries(archive: bytes) -> list[tuple[str, bytes]]:
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        return [(info.filename, zf.open(info).read()) for info in zf.infolist()]


def test_bundle_keeps_duplicate_names_in_input_order() -> None:
    inputs = [
        ("a.txt", io.BytesIO(b"first")),
        ("b.txt", [b"sec", b"ond"]),
        ("a.txt", io.BytesIO(b"third")),
    ]

    archive = b"".join(ArchiveBundler().bundle(inputs))

    assert _entries(archive) == [("a.txt", b"first"), ("b.txt", b"second"), ("a.txt", b"third")]


def test_bundle_streams_inputs_lazily() -> None:
    consumed: list[str] = []

    def _inputs():
        for name in ("one.bin", "two.bin"):
            consumed.append(name)
            yield name, io.BytesIO(os.urandom(10_000))

    stream = ArchiveBundler(compression=zipfile.ZIP_STORED, chunk_size=1024).bundle(_inputs())
    first = next(stream)

    assert first
    assert consumed == ["one.bin"]
    rest = list(stream)
    assert len(rest) > 5
    assert [name for name, _ in _entries(first + b"".join(rest))] == ["one.bin", "two.bin"]


def test_bundle_fails_when_an_input_fails() -> None:
    class _BrokenStream:
        def read(self, size: int = -1) -> bytes:
            raise OSError("connection reset")

    stream = ArchiveBundler().bundle([("ok.txt", io.BytesIO(b"fine")), ("bad.txt", _BrokenStream())])

    with pytest.raises(BundleError) as exc_info:
        list(stream)
    assert exc_info.value.name == "bad.txt"


def test_iterable_reader_serves_arbitrary_read_sizes() -> None:
    reader = IterableReader(iter([b"abc", b"", b"defgh", b"i"]))

    assert reader.read(2) == b"ab"
    assert reader.read(4) == b"c"
    assert reader.read(4) == b"defg"
    assert reader.read() == b"hi"
    assert reader.read(1) == b""


def test_iterable_reader_large_reads_return_one_chunk() -> None:
    reader = IterableReader(iter([b"x" * 10, b"y" * 3]))

    assert reader.read(1 << 40) == b"x" * 10
    assert reader.read(1 << 40) == b"y" * 3
    assert reader.read(1 << 40) == b""
