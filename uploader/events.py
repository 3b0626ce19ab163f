import json
import logging

from uploader.tracing import current_trace_id


def _json_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


request_logger = _json_logger("uploader.request")
transfer_logger = _json_logger("uploader.transfer")


def _emit(logger: logging.Logger, payload: dict, level: int) -> None:
    payload.setdefault("trace_id", current_trace_id())
    logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def log_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(transfer_logger, payload, level)


def log_request_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(request_logger, payload, level)
