import logging
import threading
from typing import BinaryIO, Iterable, Iterator

from uploader.archive import ArchiveBundler, IterableReader
from uploader.backend import ObjectBackend, ObjectInfo, ObjectStream, build_backend
from uploader.config import Settings
from uploader.download import DownloadStreamer
from uploader.errors import ObjectNotFound, ValidationRejected
from uploader.events import log_event
from uploader.keys import KeyGenerator
from uploader.listing import ListingEnumerator
from uploader.metrics import validation_rejections_total
from uploader.planner import TransferConfig
from uploader.transfer import TransferCoordinator, UploadRequest
from uploader.validation import ValidationGate, ValidationVerdict

ZIP_CONTENT_TYPE = "application/zip"


class ObjectService:
    """Caller-facing upload, list, download, delete and bundle operations."""

    def __init__(
        self,
        backend: ObjectBackend,
        config: TransferConfig,
        gate: ValidationGate | None = None,
        key_generator: KeyGenerator | None = None,
        list_page_size: int = 1000,
        list_max_pages: int = 10000,
        bundler: ArchiveBundler | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.gate = gate or ValidationGate()
        self.coordinator = TransferCoordinator(backend, config, key_generator=key_generator)
        self.listing = ListingEnumerator(backend, page_size=list_page_size, max_pages=list_max_pages)
        self.streamer = DownloadStreamer(backend)
        self.bundler = bundler or ArchiveBundler()

    def validate(self, request: UploadRequest) -> ValidationVerdict:
        return self.gate.validate(request)

    def _reject(self, request: UploadRequest, reason: str) -> ValidationRejected:
        validation_rejections_total.inc()
        log_event(
            {
                "event": "validation_rejected",
                "logical_name": request.logical_name,
                "declared_size": request.declared_size,
                "reason": reason,
            },
            level=logging.WARNING,
        )
        return ValidationRejected(reason)

    def upload(self, request: UploadRequest, cancel_event: threading.Event | None = None) -> str:
        verdict = self.validate(request)
        if not verdict.accepted:
            raise self._reject(request, verdict.reason)
        return self.coordinator.transfer(request, cancel_event=cancel_event)

    def list_keys(self, prefix: str = "") -> Iterator[str]:
        return self.listing.iter_keys(prefix)

    def download(self, key: str, byte_range: tuple[int, int] | None = None) -> ObjectStream:
        return self.streamer.download(key, byte_range=byte_range)

    def stat(self, key: str) -> ObjectInfo:
        return self.streamer.stat(key)

    def delete(self, key: str) -> None:
        """Delete `key`. Deleting a key that does not exist succeeds.

        Some backends report a missing key as an error and some do not; this
        method treats both the same way.
        """
        try:
            self.backend.delete_object(key)
        except ObjectNotFound:
            log_event({"event": "object_deleted", "key": key, "existed": False})
            return
        log_event({"event": "object_deleted", "key": key, "existed": True})

    def bundle(self, inputs: Iterable[tuple[str, BinaryIO | Iterable[bytes]]]) -> Iterator[bytes]:
        return self.bundler.bundle(inputs)

    def upload_bundle(
        self,
        logical_name: str,
        inputs: Iterable[tuple[str, BinaryIO | Iterable[bytes]]],
        cancel_event: threading.Event | None = None,
    ) -> str:
        """Bundle `inputs` into one ZIP and upload it under `logical_name`.

        Member names go through the gate before the archive is started. Member
        sizes are not known up front, so only the name checks apply to them.
        """
        inputs = list(inputs)
        for name, stream in inputs:
            member = UploadRequest(source=stream, logical_name=name)
            verdict = self.validate(member)
            if not verdict.accepted:
                raise self._reject(member, f"archive member {name!r}: {verdict.reason}")
        request = UploadRequest(
            source=IterableReader(self.bundle(inputs)),
            logical_name=logical_name,
            content_type=ZIP_CONTENT_TYPE,
        )
        return self.upload(request, cancel_event=cancel_event)


def build_service(settings: Settings) -> ObjectService:
    return ObjectService(
        backend=build_backend(settings),
        config=TransferConfig.from_settings(settings),
        gate=ValidationGate(denylist=settings.denylist()),
        list_page_size=settings.list_page_size,
        list_max_pages=settings.list_max_pages,
    )
