from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from useraccess.api.schemas import Envelope, ErrorBody
from useraccess.logging import get_logger
from useraccess.service.errors import ServiceError
from useraccess.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# stable error codes keyed by HTTP status
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    410: "gone",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """Wrap an error in the standard response envelope."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(Envelope(status="error", error=body)),
    )


def _log_rejection(request: Request, event: str, status_code: int, **fields: Any) -> None:
    emit = logger.error if status_code >= 500 else logger.warning
    emit(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _validation_details(exc: RequestValidationError) -> list:
    # only loc/msg/type; pydantic's "ctx" may hold a raw exception object
    return [
        {
            "loc": list(err.get("loc", ())),
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for domain, storage and request errors."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_rejection(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_rejection(request, "request_validation_failed", 400, error_count=len(details))
        message = details[0]["msg"] if details else "invalid request"
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        # framework-raised errors such as unknown routes or wrong methods
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        _log_rejection(request, "http_error", exc.status_code, message=message)
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
