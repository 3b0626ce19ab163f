from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

objects_uploaded_total = Counter("objects_uploaded_total", "Total objects uploaded", ["strategy"])
bytes_uploaded_total = Counter("bytes_uploaded_total", "Total bytes uploaded")
parts_uploaded_total = Counter("parts_uploaded_total", "Total multipart parts uploaded")
part_upload_failures_total = Counter("part_upload_failures_total", "Total parts that exhausted their retry budget")
part_retries_total = Counter("part_retries_total", "Total retry attempts for part uploads")
sessions_aborted_total = Counter("sessions_aborted_total", "Total multipart sessions aborted")
session_abort_failures_total = Counter("session_abort_failures_total", "Total multipart aborts that failed")
validation_rejections_total = Counter("validation_rejections_total", "Total uploads rejected before transfer")

inflight_parts = Gauge("inflight_parts", "Current inflight part uploads")

backend_call_latency_seconds = Histogram(
    "backend_call_latency_seconds",
    "Object storage call latency in seconds",
    ["operation"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
