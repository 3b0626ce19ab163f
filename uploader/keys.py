import re
import time
from threading import Lock
from typing import Callable

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_name(logical_name: str) -> str:
    """Reduce a caller-supplied name to a single safe key segment."""
    cleaned = _CONTROL_CHARS.sub("", logical_name)
    segments = [s for s in re.split(r"[\\/]+", cleaned) if s not in ("", ".", "..")]
    joined = "_".join(segments)
    joined = _UNSAFE_CHARS.sub("_", joined).strip("._")
    # "a..b" would otherwise survive as a traversal-looking segment
    joined = re.sub(r"\.{2,}", ".", joined)
    return joined or "object"


class KeyGenerator:
    """Builds `<timestamp>_<name>` keys with a strictly increasing timestamp.

    The timestamp is nanoseconds since the epoch. If the clock stalls or steps
    backwards the previous value plus one is used instead, so keys from one
    generator never repeat.
    """

    def __init__(self, clock: Callable[[], int] = time.time_ns) -> None:
        self._clock = clock
        self._last = 0
        self._lock = Lock()

    def _next_timestamp(self) -> int:
        with self._lock:
            now = self._clock()
            if now <= self._last:
                now = self._last + 1
            self._last = now
            return now

    def generate(self, logical_name: str) -> str:
        return f"{self._next_timestamp()}_{sanitize_name(logical_name)}"


_default_generator = KeyGenerator()


def generate_key(logical_name: str) -> str:
    return _default_generator.generate(logical_name)
