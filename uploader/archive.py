"""Streaming ZIP bundling of several inputs into one upload source."""

import io
import time
import warnings
import zipfile
from typing import BinaryIO, Iterable, Iterator

from uploader.errors import BundleError

DEFAULT_CHUNK_SIZE = 64 * 1024


class _ChunkSink:
    """Write-only sink without tell/seek, so zipfile writes data descriptors
    instead of seeking back to patch local headers."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def write(self, data) -> int:
        self._buffer += data
        return len(data)

    def flush(self) -> None:
        return None

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class ArchiveBundler:
    def __init__(self, compression: int = zipfile.ZIP_DEFLATED, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.compression = compression
        self.chunk_size = chunk_size

    def _read_chunks(self, name: str, stream: BinaryIO | Iterable[bytes]) -> Iterator[bytes]:
        try:
            if hasattr(stream, "read"):
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        return
                    yield chunk
            else:
                for chunk in stream:
                    yield chunk
        except Exception as exc:
            raise BundleError(name, exc) from exc

    def bundle(self, inputs: Iterable[tuple[str, BinaryIO | Iterable[bytes]]]) -> Iterator[bytes]:
        """Yield the archive bytes while reading inputs one chunk at a time.

        Entries appear in input order and duplicate names stay duplicate
        entries. A failing input raises `BundleError`; the bytes already
        yielded are not a valid archive and must be discarded.
        """
        sink = _ChunkSink()
        with zipfile.ZipFile(sink, mode="w", compression=self.compression) as archive:
            for name, stream in inputs:
                info = zipfile.ZipInfo(name, date_time=time.localtime()[:6])
                info.compress_type = self.compression
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", UserWarning)
                    entry = archive.open(info, mode="w", force_zip64=True)
                with entry:
                    for chunk in self._read_chunks(name, stream):
                        entry.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data
                data = sink.drain()
                if data:
                    yield data
        data = sink.drain()
        if data:
            yield data


class IterableReader(io.RawIOBase):
    """File-like view over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def _fill(self) -> bool:
        while not self._pending:
            chunk = next(self._chunks, None)
            if chunk is None:
                return False
            self._pending = chunk
        return True

    def read(self, size: int = -1) -> bytes:
        # Returns at most one pending chunk without allocating a `size`-byte buffer.
        if size is None or size < 0:
            return self.readall()
        if size == 0 or not self._fill():
            return b""
        data, self._pending = self._pending[:size], self._pending[size:]
        return bytes(data)

    def readinto(self, buffer) -> int:
        if not self._fill():
            return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size
