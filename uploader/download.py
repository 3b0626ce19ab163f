from uploader.backend import ObjectBackend, ObjectInfo, ObjectStream
from uploader.errors import RangeNotSatisfiable


def parse_range(range_header: str, file_size: int) -> tuple[int, int]:
    """Parse a single `bytes=start-end` range (suffix form `bytes=-n` included)."""
    if not range_header.startswith("bytes="):
        raise RangeNotSatisfiable("invalid range header")
    parts = range_header.removeprefix("bytes=").split("-", 1)
    if len(parts) != 2 or not (parts[0] or parts[1]):
        raise RangeNotSatisfiable("invalid range format")

    try:
        if not parts[0]:
            start = max(0, file_size - int(parts[1]))
            end = file_size - 1
        else:
            start = int(parts[0])
            end = min(int(parts[1]), file_size - 1) if parts[1] else file_size - 1
    except ValueError as exc:
        raise RangeNotSatisfiable("invalid range format") from exc
    if start < 0 or end < start or start >= file_size:
        raise RangeNotSatisfiable("range out of bounds")
    return start, end


class DownloadStreamer:
    """Hands out object bodies as incremental streams. Never retries."""

    def __init__(self, backend: ObjectBackend) -> None:
        self.backend = backend

    def download(self, key: str, byte_range: tuple[int, int] | None = None) -> ObjectStream:
        # The backend call happens here, not on first read, so a missing key
        # raises ObjectNotFound to the caller immediately.
        return self.backend.get_object(key, byte_range=byte_range)

    def stat(self, key: str) -> ObjectInfo:
        return self.backend.head_object(key)
