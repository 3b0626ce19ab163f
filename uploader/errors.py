class UploadError(Exception):
    """Base class for every failure surfaced by the uploader."""

    error_code = "upload_error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationRejected(UploadError):
    error_code = "validation_rejected"


class ObjectNotFound(UploadError):
    error_code = "not_found"

    def __init__(self, key: str) -> None:
        super().__init__(f"object not found: {key}")
        self.key = key


class RangeNotSatisfiable(UploadError):
    error_code = "range_not_satisfiable"


class BackendError(UploadError):
    error_code = "backend_error"


class TransientBackendError(BackendError):
    """Retryable: throttling, timeouts, 5xx responses, dropped connections."""

    error_code = "backend_unavailable"


class PermanentBackendError(BackendError):
    error_code = "backend_failure"


class SessionAbortFailure(BackendError):
    """Aborting a multipart session failed; uploaded parts may be orphaned.

    `original` is the error that triggered the abort. Operators reconcile the
    session out-of-band using `session_id` and `key`.
    """

    error_code = "session_abort_failed"

    def __init__(self, session_id: str, key: str, original: BaseException | None, abort_error: BaseException) -> None:
        super().__init__(
            f"failed to abort multipart session {session_id} for {key}: {abort_error}"
            + (f" (after: {original})" if original is not None else "")
        )
        self.session_id = session_id
        self.key = key
        self.original = original
        self.abort_error = abort_error


class TransferCancelled(UploadError):
    error_code = "transfer_cancelled"


class BundleError(UploadError):
    error_code = "bundle_failed"

    def __init__(self, name: str, cause: BaseException) -> None:
        super().__init__(f"failed to read archive input {name!r}: {cause}")
        self.name = name
