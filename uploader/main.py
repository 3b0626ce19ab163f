import itertools
import logging
import time
import uuid

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from uploader.config import settings
from uploader.download import parse_range
from uploader.errors import (
    BundleError,
    ObjectNotFound,
    PermanentBackendError,
    RangeNotSatisfiable,
    SessionAbortFailure,
    TransferCancelled,
    TransientBackendError,
    UploadError,
    ValidationRejected,
)
from uploader.events import log_request_event
from uploader.metrics import http_request_duration_seconds, metrics_response
from uploader.schemas import ErrorResponse, ListObjectsResponse, UploadObjectResponse
from uploader.service import build_service
from uploader.tracing import current_trace_id, setup_tracing
from uploader.transfer import DEFAULT_CONTENT_TYPE, UploadRequest

app = FastAPI(title=settings.app_name)
setup_tracing(app)
service = build_service(settings)

# Checked in order, so subclasses come before their bases.
_ERROR_STATUS = (
    (ValidationRejected, 400),
    (BundleError, 400),
    (ObjectNotFound, 404),
    (TransferCancelled, 409),
    (RangeNotSatisfiable, 416),
    (SessionAbortFailure, 500),
    (TransientBackendError, 503),
    (PermanentBackendError, 502),
)

COMMON_ERROR_RESPONSES = {
    502: {"model": ErrorResponse, "description": "Storage backend failure"},
    503: {"model": ErrorResponse, "description": "Storage backend temporarily unavailable"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _status_for(exc: UploadError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_body(request: Request, detail: str, error_code: str) -> dict:
    return {
        "detail": detail,
        "error_code": error_code,
        "request_id": _request_id(request),
        "trace_id": current_trace_id(),
    }


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Uploader-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_request_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    status_code = _status_for(exc)
    log_request_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": exc.error_code,
            "detail": exc.reason,
        },
        level=logging.ERROR if status_code >= 500 else logging.INFO,
    )
    return JSONResponse(status_code=status_code, content=_error_body(request, exc.reason, exc.error_code))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_request_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, str(exc.detail), f"http_{exc.status_code}"),
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_request_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        },
        level=logging.ERROR,
    )
    return JSONResponse(status_code=500, content=_error_body(request, "internal server error", "internal_error"))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post(
    "/v1/objects",
    response_model=UploadObjectResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Upload rejected"}},
)
def upload_object(file: UploadFile = File(...)) -> UploadObjectResponse:
    request = UploadRequest(
        source=file.file,
        logical_name=file.filename or "",
        content_type=file.content_type or DEFAULT_CONTENT_TYPE,
        declared_size=file.size,
    )
    key = service.upload(request)
    return UploadObjectResponse(key=key, status="UPLOADED")


@app.post(
    "/v1/objects/bundle",
    response_model=UploadObjectResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Upload rejected"}},
)
def upload_bundle(files: list[UploadFile] = File(...), name: str = Form("bundle.zip")) -> UploadObjectResponse:
    inputs = [(file.filename or "unnamed", file.file) for file in files]
    key = service.upload_bundle(name, inputs)
    return UploadObjectResponse(key=key, status="UPLOADED")


@app.get("/v1/objects", response_model=ListObjectsResponse, responses={**COMMON_ERROR_RESPONSES})
def list_objects(prefix: str = "", limit: int = Query(default=1000, ge=1, le=10000)) -> ListObjectsResponse:
    keys = list(itertools.islice(service.list_keys(prefix), limit + 1))
    return ListObjectsResponse(keys=keys[:limit], truncated=len(keys) > limit)


@app.get(
    "/v1/objects/{key:path}",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Object not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
def download_object(key: str, range: str | None = Header(default=None)) -> StreamingResponse:
    headers = {"Accept-Ranges": "bytes"}
    if range:
        info = service.stat(key)
        start, end = parse_range(range, info.size)
        stream = service.download(key, byte_range=(start, end))
        headers["Content-Range"] = f"bytes {start}-{end}/{info.size}"
        status_code = 206
    else:
        stream = service.download(key)
        status_code = 200
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)
    return StreamingResponse(
        iter(stream),
        status_code=status_code,
        media_type=stream.content_type or DEFAULT_CONTENT_TYPE,
        headers=headers,
        background=BackgroundTask(stream.close),
    )


@app.delete("/v1/objects/{key:path}", status_code=204, responses={**COMMON_ERROR_RESPONSES})
def delete_object(key: str) -> Response:
    service.delete(key)
    return Response(status_code=204)
