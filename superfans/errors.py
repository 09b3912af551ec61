"""
Error taxonomy and the JSON error envelope.

Every route raises one of the ``ApiError`` subclasses (or FastAPI's
``HTTPException``); the handlers installed by ``install_error_handlers``
turn them into ``{"error": ..., "details": ...}`` bodies. Anything else that
escapes a route is logged and answered with a 500 whose details are only
shown in development.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException

from . import config

log = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Any = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        self.extra = extra or {}
        super().__init__(self.message)

    def body(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            out["details"] = self.details
        out.update(self.extra)
        return out


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Forbidden - Admin access required"


class ValidationFailed(ApiError):
    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: Optional[str] = None, *,
                 field: Optional[str] = None, **kw) -> None:
        super().__init__(message, **kw)
        self.field = field
        if field is not None:
            self.extra.setdefault("field", field)


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class Conflict(ApiError):
    status_code = 409
    default_message = "Conflict"


class Retryable(ApiError):
    """Upstream not ready or unreachable; the client should try again."""
    status_code = 503
    default_message = "Upstream service unavailable, retry shortly"

    def body(self) -> Dict[str, Any]:
        out = super().body()
        out["retryable"] = True
        return out


class ServerError(ApiError):
    status_code = 500


def _detail_allowed() -> bool:
    return config.ENVIRONMENT == "development"


async def _api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        log.error("[API] %s %s -> %s: %s", request.method, request.url.path,
                  exc.status_code, exc.message)
    return ORJSONResponse(exc.body(), status_code=exc.status_code)


async def _http_exception_handler(request: Request, exc: HTTPException):
    body: Dict[str, Any]
    if isinstance(exc.detail, dict):
        body = dict(exc.detail)
        body.setdefault("error", "Request failed")
    else:
        body = {"error": str(exc.detail)}
    return ORJSONResponse(body, status_code=exc.status_code,
                          headers=getattr(exc, "headers", None))


async def _validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        fields.append({"field": loc, "message": err.get("msg", "invalid")})
    return ORJSONResponse(
        {"error": "Invalid request body", "details": fields},
        status_code=400,
    )


async def _unexpected_handler(request: Request, exc: Exception):
    log.exception("[API] unhandled error on %s %s", request.method,
                  request.url.path)
    body: Dict[str, Any] = {"error": "Internal server error"}
    if _detail_allowed():
        body["details"] = f"{type(exc).__name__}: {exc}"
    return ORJSONResponse(body, status_code=500)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(Exception, _unexpected_handler)
