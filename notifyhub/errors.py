import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from notifyhub.observability import get_correlation_id

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base for errors that map onto an HTTP response.

    ``code`` is the machine-readable kind, ``status`` the HTTP status and
    ``fields`` any extra keys rendered into the response body.
    """

    code = "internal_error"
    status = 500

    def __init__(self, message: str, **fields: Any):
        super().__init__(message)
        self.message = message
        self.fields = fields

    def body(self, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.status, "error": self.code, "message": self.message}
        payload.update({k: v for k, v in self.fields.items() if v is not None})
        if correlation_id:
            payload["correlationId"] = correlation_id
        return payload


class ValidationFailed(ServiceError):
    code = "validation_error"
    status = 400

    def __init__(self, message: str = "validation error", details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, details=details)


class RecipientNotFound(ServiceError):
    code = "recipient_not_found"
    status = 422

    def __init__(self, recipient_id: int):
        super().__init__("recipient not found", recipientId=recipient_id)
        self.recipient_id = recipient_id


class UpstreamUnavailable(ServiceError):
    code = "upstream_unavailable"
    status = 503


class NotFound(ServiceError):
    code = "not_found"
    status = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class Conflict(ServiceError):
    code = "conflict"
    status = 409


class DatastoreUnreachable(ServiceError):
    code = "datastore_unreachable"
    status = 503


class BrokerUnavailable(ServiceError):
    code = "broker_unavailable"
    status = 503


def validation_details(exc: RequestValidationError) -> List[Dict[str, str]]:
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "path", "query")]
        details.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid value")})
    return details


def _cid(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None) or get_correlation_id()


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        if exc.status >= 500:
            logger.warning(f"{exc.code}: {exc.message}", extra={"extra": {"event": exc.code}})
        return JSONResponse(status_code=exc.status, content=exc.body(_cid(request)))

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        err = ValidationFailed(details=validation_details(exc))
        return JSONResponse(status_code=err.status, content=err.body(_cid(request)))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error(f"unhandled error: {exc}", extra={"extra": {
            "event": "unhandled_error", "http.path": request.url.path,
        }}, exc_info=exc)
        cid = _cid(request)
        return JSONResponse(
            status_code=500,
            content=ServiceError("Internal Server Error").body(cid),
            headers={"x-correlation-id": cid} if cid else None,
        )
