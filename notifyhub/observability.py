import json
import logging
import time
import uuid
import contextvars
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterator

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

CORRELATION_HEADER = "x-correlation-id"

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("correlation_id", default=None)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured fields go in ``extra={"extra": {...}}``."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": _now_iso(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = _correlation_id.get()
        if cid:
            base["correlation_id"] = cid
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            base.update(extra)
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def init_logging(service_name: str, level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    root.handlers = []
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter(service_name))
    root.addHandler(h)
    root.setLevel(level.upper())
    logging.getLogger("uvicorn.error").setLevel(level.upper())
    logging.getLogger("uvicorn.access").setLevel(level.upper())
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger(service_name)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(cid: Optional[str]):
    _correlation_id.set(cid)


@contextmanager
def correlation_scope(cid: Optional[str]) -> Iterator[Optional[str]]:
    """Bind ``cid`` to log records emitted inside the block (worker side)."""
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = CORRELATION_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get(self.header_name) or new_correlation_id()
        request.state.correlation_id = cid
        token = _correlation_id.set(cid)
        try:
            response: Response = await call_next(request)
        finally:
            _correlation_id.reset(token)
        response.headers[self.header_name] = cid
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, logger: logging.Logger):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        fields = {
            "http.method": request.method,
            "http.path": request.url.path,
            "http.query": str(request.url.query or ""),
            "client.ip": request.client.host if request.client else None,
            "origin": request.headers.get("x-origin"),
        }
        self.logger.info("http_request_start", extra={"extra": {"event": "http_request_start", **fields}})
        try:
            response: Response = await call_next(request)
        except Exception as e:
            dur = int((time.perf_counter() - start) * 1000)
            self.logger.error(f"http_request_error: {e}", extra={"extra": {
                "event": "http_request_error", "duration_ms": dur, **fields,
            }}, exc_info=True)
            raise
        dur = int((time.perf_counter() - start) * 1000)
        self.logger.info("http_request_end", extra={"extra": {
            "event": "http_request_end", "http.status_code": response.status_code,
            "duration_ms": dur, **fields,
        }})
        return response
