"""Error normalization and handlers.

Every error leaves the service as::

    {"error": {"code", "message", "request_id", ...details}, "detail": message}

with an ``x-request-id`` header. User-facing gate denials carry the verdict
fields (kind, tier, hint, remaining, cooldown_expiry) as details.
"""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tutorgate.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}
        self.headers = headers or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class GoneError(AppError):
    code = "gone"
    status_code = 410


class LimitExceededError(AppError):
    code = "limit_exceeded"
    status_code = 429


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


def _request_id(request: Request, preferred: Optional[str] = None) -> str:
    return preferred or getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    for key, value in (details or {}).items():
        # details never overwrite the envelope keys
        error.setdefault(key, value)
    return {"error": error, "detail": message}


def _error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    request_id: Optional[str] = None,
    log_message: str = "app.error",
    exc_info: bool = False,
) -> JSONResponse:
    rid = _request_id(request, request_id)
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(
        level,
        log_message,
        exc_info=exc_info,
        extra={"request_id": rid, "error_code": code, "status": status_code, "path": request.url.path},
    )
    response = JSONResponse(status_code=status_code, content=_error_payload(code, message, rid, details))
    for key, value in (headers or {}).items():
        response.headers[key] = value
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    return _error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=exc.headers,
        request_id=exc.request_id,
    )


async def http_error_handler(request: Request, exc: HTTPException):
    return _error_response(
        request,
        status_code=exc.status_code,
        code="not_found" if exc.status_code == 404 else "http_error",
        message=str(exc.detail) if exc.detail else "HTTP error",
        headers=dict(exc.headers or {}),
        log_message="http.error",
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return _error_response(
        request,
        status_code=422,
        code="validation_error",
        message="Request validation failed",
        details={"errors": errors},
        log_message="validation.error",
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    return _error_response(
        request,
        status_code=500,
        code="internal_error",
        message="Unexpected error",
        log_message="unhandled.exception",
        exc_info=True,
    )
