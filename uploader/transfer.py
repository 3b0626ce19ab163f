"""Single-shot and multipart transfer of one object to the backend.

A multipart transfer owns its session, its worker pool and its part
bookkeeping; nothing is shared between transfers. The source is read
sequentially on the calling thread and at most `max_concurrent_parts` part
buffers exist at any time.
"""

import hashlib
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Iterator

from uploader.backend import ObjectBackend
from uploader.errors import (
    PermanentBackendError,
    SessionAbortFailure,
    TransferCancelled,
    TransientBackendError,
    UploadError,
    ValidationRejected,
)
from uploader.events import log_event
from uploader.keys import KeyGenerator
from uploader.metrics import (
    bytes_uploaded_total,
    inflight_parts,
    objects_uploaded_total,
    part_retries_total,
    part_upload_failures_total,
    parts_uploaded_total,
    session_abort_failures_total,
    sessions_aborted_total,
)
from uploader.planner import SingleShot, TransferConfig, plan
from uploader.tracing import tracer

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class UploadRequest:
    source: BinaryIO
    logical_name: str
    content_type: str = DEFAULT_CONTENT_TYPE
    declared_size: int | None = None


class SessionState(str, Enum):
    initiated = "INITIATED"
    parts_in_flight = "PARTS_IN_FLIGHT"
    completed = "COMPLETED"
    aborted = "ABORTED"


class PartStatus(str, Enum):
    pending = "PENDING"
    uploaded = "UPLOADED"
    failed = "FAILED"


@dataclass
class PartRecord:
    size: int
    checksum_sha256: str
    status: PartStatus = PartStatus.pending
    etag: str | None = None
    attempts: int = 0


@dataclass
class UploadSession:
    session_id: str
    key: str
    state: SessionState = SessionState.initiated
    parts: dict[int, PartRecord] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_part(self, part_number: int, data: bytes) -> None:
        with self._lock:
            if self.state not in (SessionState.initiated, SessionState.parts_in_flight):
                raise RuntimeError(f"cannot add parts to a {self.state.value} session")
            self.state = SessionState.parts_in_flight
            self.parts[part_number] = PartRecord(size=len(data), checksum_sha256=hashlib.sha256(data).hexdigest())

    def record_attempt(self, part_number: int) -> int:
        with self._lock:
            record = self.parts[part_number]
            record.attempts += 1
            return record.attempts

    def mark_uploaded(self, part_number: int, etag: str) -> None:
        with self._lock:
            record = self.parts[part_number]
            record.status = PartStatus.uploaded
            record.etag = etag

    def mark_failed(self, part_number: int) -> None:
        with self._lock:
            self.parts[part_number].status = PartStatus.failed

    def _check_completable(self) -> None:
        if self.state != SessionState.parts_in_flight:
            raise RuntimeError(f"cannot complete a {self.state.value} session")
        if not self.parts or any(p.status != PartStatus.uploaded for p in self.parts.values()):
            raise RuntimeError("cannot complete a session with missing parts")

    def completion_parts(self) -> list[tuple[int, str]]:
        """Part etags in ascending part number order, as the completion call needs them."""
        with self._lock:
            self._check_completable()
            return [(number, self.parts[number].etag) for number in sorted(self.parts)]

    def mark_completed(self) -> None:
        with self._lock:
            self._check_completable()
            self.state = SessionState.completed

    def mark_aborted(self) -> None:
        with self._lock:
            if self.state in (SessionState.completed, SessionState.aborted):
                raise RuntimeError(f"cannot abort a {self.state.value} session")
            self.state = SessionState.aborted


def read_exact(source: BinaryIO, size: int) -> bytes:
    """Read up to `size` bytes, stopping early only at end of stream."""
    chunks = []
    remaining = size
    while remaining > 0:
        data = source.read(remaining)
        if not data:
            break
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


class _MultipartRun:
    """Per-transfer scratch state shared by the reader and the part workers."""

    def __init__(self, session: UploadSession, cancel_event: threading.Event | None) -> None:
        self.session = session
        self.cancel_event = cancel_event
        self.stop = threading.Event()
        self.first_error: BaseException | None = None
        self._lock = threading.Lock()

    def fail(self, error: BaseException) -> None:
        with self._lock:
            if self.first_error is None:
                self.first_error = error
        self.stop.set()


class TransferCoordinator:
    def __init__(
        self,
        backend: ObjectBackend,
        config: TransferConfig,
        key_generator: KeyGenerator | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.key_generator = key_generator or KeyGenerator()

    def transfer(self, request: UploadRequest, cancel_event: threading.Event | None = None) -> str:
        key = self.key_generator.generate(request.logical_name)
        strategy = plan(request.declared_size, self.config)
        with tracer.start_as_current_span("uploader.transfer") as span:
            span.set_attribute("uploader.key", key)
            log_event(
                {
                    "event": "transfer_started",
                    "key": key,
                    "logical_name": request.logical_name,
                    "declared_size": request.declared_size,
                    "strategy": type(strategy).__name__,
                }
            )
            # The declared size only picks the strategy and part size; the
            # source is always read until it ends.
            threshold = self.config.multipart_threshold_bytes
            if isinstance(strategy, SingleShot):
                # One byte past the threshold reveals an understated declared size.
                part_size = plan(None, self.config).part_size
                prefix = read_exact(request.source, threshold + 1)
                fits = len(prefix) <= threshold
            else:
                part_size = strategy.part_size
                prefix = read_exact(request.source, part_size)
                fits = len(prefix) < part_size and len(prefix) <= threshold

            if fits:
                if not prefix:
                    raise ValidationRejected("empty objects are not allowed")
                self._raise_if_cancelled(cancel_event)
                self.backend.put_object(key, request.content_type, prefix)
                span.set_attribute("uploader.strategy", "single")
                self._record_success(request, key, "single", len(prefix), part_count=0)
                return key

            part_iter = self._streamed_parts(request.source, prefix, part_size)
            span.set_attribute("uploader.strategy", "multipart")
            size, part_count = self._multipart(request, key, part_iter, cancel_event)
            span.set_attribute("uploader.part_count", part_count)
            self._record_success(request, key, "multipart", size, part_count=part_count)
            return key

    def _record_success(self, request: UploadRequest, key: str, strategy: str, size: int, part_count: int) -> None:
        objects_uploaded_total.labels(strategy=strategy).inc()
        bytes_uploaded_total.inc(size)
        if request.declared_size is not None and request.declared_size != size:
            log_event(
                {
                    "event": "declared_size_mismatch",
                    "key": key,
                    "declared_size": request.declared_size,
                    "size": size,
                },
                level=logging.WARNING,
            )
        log_event(
            {
                "event": "transfer_completed",
                "key": key,
                "strategy": strategy,
                "size": size,
                "part_count": part_count,
            }
        )

    @staticmethod
    def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TransferCancelled("transfer cancelled by caller")

    def _streamed_parts(self, source: BinaryIO, prefix: bytes, part_size: int) -> Iterator[tuple[int, bytes]]:
        part_number = 0
        while True:
            if len(prefix) >= part_size:
                data, prefix = prefix[:part_size], prefix[part_size:]
            else:
                data = prefix + read_exact(source, part_size - len(prefix))
                prefix = b""
            if not data:
                return
            part_number += 1
            if part_number > self.config.max_parts:
                raise PermanentBackendError(f"object exceeds {self.config.max_parts} parts of {part_size} bytes")
            yield part_number, data
            if len(data) < part_size:
                return

    def _multipart(
        self,
        request: UploadRequest,
        key: str,
        part_iter: Iterator[tuple[int, bytes]],
        cancel_event: threading.Event | None,
    ) -> tuple[int, int]:
        session_id = self.backend.initiate_multipart(key, request.content_type)
        run = _MultipartRun(UploadSession(session_id=session_id, key=key), cancel_event)
        total = 0
        with ThreadPoolExecutor(max_workers=self.config.max_concurrent_parts, thread_name_prefix="part-upload") as pool:
            try:
                total, futures = self._schedule_parts(run, pool, part_iter)
                pending = set(futures)
                while pending and not run.stop.is_set():
                    _, pending = wait(pending, timeout=0.05)
                    self._raise_if_cancelled(cancel_event)
            except BaseException as exc:
                # Stop the workers before the pool waits on them.
                run.fail(exc)

        if run.first_error is None:
            try:
                self._raise_if_cancelled(cancel_event)
                self.backend.complete_multipart(key, session_id, run.session.completion_parts())
                run.session.mark_completed()
                return total, len(run.session.parts)
            except Exception as exc:
                run.first_error = exc

        self._abort(run)
        raise self._escalate(run.first_error)

    def _schedule_parts(self, run: _MultipartRun, pool: ThreadPoolExecutor, part_iter) -> tuple[int, list[Future]]:
        slots = threading.BoundedSemaphore(self.config.max_concurrent_parts)
        total = 0
        futures: list[Future] = []
        while not run.stop.is_set():
            # A slot is taken before the next part is read so buffered parts stay bounded.
            while not slots.acquire(timeout=0.05):
                self._raise_if_cancelled(run.cancel_event)
                if run.stop.is_set():
                    return total, futures
            try:
                self._raise_if_cancelled(run.cancel_event)
                item = next(part_iter, None)
            except BaseException:
                slots.release()
                raise
            if item is None or run.stop.is_set():
                slots.release()
                break
            part_number, data = item
            run.session.add_part(part_number, data)
            total += len(data)
            future = pool.submit(self._upload_part, run, part_number, data)
            future.add_done_callback(lambda _: slots.release())
            futures.append(future)
        return total, futures

    def _upload_part(self, run: _MultipartRun, part_number: int, data: bytes) -> None:
        session = run.session
        attempts = self.config.part_retry_attempts
        inflight_parts.inc()
        try:
            for attempt in range(1, attempts + 1):
                if run.stop.is_set():
                    return
                session.record_attempt(part_number)
                try:
                    etag = self.backend.upload_part(session.key, session.session_id, part_number, data)
                except TransientBackendError as exc:
                    if attempt == attempts:
                        self._fail_part(run, part_number, attempt, exc)
                        return
                    part_retries_total.inc()
                    log_event(
                        {
                            "event": "part_retry",
                            "key": session.key,
                            "session_id": session.session_id,
                            "part_number": part_number,
                            "attempt": attempt,
                            "detail": str(exc),
                        },
                        level=logging.WARNING,
                    )
                    if run.stop.wait(self.config.retry_backoff_seconds * (2 ** (attempt - 1))):
                        return
                    continue
                except Exception as exc:
                    self._fail_part(run, part_number, attempt, exc)
                    return
                session.mark_uploaded(part_number, etag)
                parts_uploaded_total.inc()
                return
        finally:
            inflight_parts.dec()

    def _fail_part(self, run: _MultipartRun, part_number: int, attempt: int, exc: Exception) -> None:
        run.session.mark_failed(part_number)
        part_upload_failures_total.inc()
        log_event(
            {
                "event": "part_failed",
                "key": run.session.key,
                "session_id": run.session.session_id,
                "part_number": part_number,
                "attempts": attempt,
                "error_class": type(exc).__name__,
                "detail": str(exc),
            },
            level=logging.ERROR,
        )
        error = PermanentBackendError(f"part {part_number} failed after {attempt} attempt(s): {exc}")
        error.__cause__ = exc
        run.fail(error)

    def _call_abort(self, session: UploadSession) -> Exception | None:
        attempts = self.config.part_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.backend.abort_multipart(session.key, session.session_id)
                return None
            except TransientBackendError as exc:
                if attempt == attempts:
                    return exc
            except Exception as exc:
                return exc
        return None

    def _abort(self, run: _MultipartRun) -> None:
        session = run.session
        session.mark_aborted()
        abort_error = self._call_abort(session)
        if abort_error is not None:
            session_abort_failures_total.inc()
            log_event(
                {
                    "event": "session_abort_failed",
                    "key": session.key,
                    "session_id": session.session_id,
                    "detail": str(abort_error),
                    "original_error": str(run.first_error),
                },
                level=logging.ERROR,
            )
            raise SessionAbortFailure(session.session_id, session.key, run.first_error, abort_error) from abort_error

        sessions_aborted_total.inc()
        log_event(
            {
                "event": "transfer_cancelled" if isinstance(run.first_error, TransferCancelled) else "session_aborted",
                "key": session.key,
                "session_id": session.session_id,
                "parts_uploaded": sum(1 for p in session.parts.values() if p.status == PartStatus.uploaded),
                "detail": str(run.first_error),
            },
            level=logging.WARNING,
        )

    @staticmethod
    def _escalate(error: BaseException) -> BaseException:
        if isinstance(error, UploadError) or not isinstance(error, Exception):
            return error
        escalated = PermanentBackendError(f"multipart transfer failed: {error}")
        escalated.__cause__ = error
        return escalated
