"""Error envelope and exception handlers for the kinmerge API.

Every error response has the body {code, message, details, request_id} and echoes
the request id in the X-Request-Id header. Domain errors carry their own code and
status; framework errors are mapped from the HTTP status. Details hold ids and
stage names only.
"""

from __future__ import annotations

import logging
import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from kinmerge.api.middleware.request_id import REQUEST_ID_HEADER
from kinmerge.services.merge.errors import MergeError

logger = logging.getLogger(__name__)

# Codes that differ from the upper-cased HTTP reason phrase.
_STATUS_CODE_OVERRIDES: dict[int, str] = {
    409: "CONFLICT",
    422: "REQUEST_VALIDATION_FAILED",
    500: "INTERNAL_ERROR",
}


class ErrorResponse(BaseModel):
    """Error envelope schema."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str


def code_for_status(status_code: int) -> str:
    """Machine-readable code for a bare HTTP status, e.g. 405 -> METHOD_NOT_ALLOWED."""
    if status_code in _STATUS_CODE_OVERRIDES:
        return _STATUS_CODE_OVERRIDES[status_code]
    try:
        return HTTPStatus(status_code).phrase.upper().replace(" ", "_").replace("-", "_")
    except ValueError:
        return "ERROR"


def request_id_of(request: Request) -> str:
    """Request id set by RequestIdMiddleware, else the header, else a fresh uuid4."""
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Render the error envelope."""
    envelope = ErrorResponse(
        code=code,
        message=message,
        details=details or None,
        request_id=request_id_of(request),
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(),
        headers={REQUEST_ID_HEADER: envelope.request_id},
    )


async def merge_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a MergeError with its own code and status."""
    assert isinstance(exc, MergeError)

    if exc.http_status >= 500:
        logger.error(
            "Merge operation failed: %s %s",
            exc.code,
            exc.message,
            extra={"request_id": request_id_of(request)},
        )
    return error_response(request, exc.http_status, exc.code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render HTTPException (unknown route, wrong method, ...)."""
    assert isinstance(exc, HTTPException)

    message = str(exc.detail) if exc.detail else HTTPStatus(exc.status_code).phrase
    return error_response(request, exc.status_code, code_for_status(exc.status_code), message)


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render request validation failures as field/message pairs.

    Input values are not echoed back.
    """
    assert isinstance(exc, RequestValidationError)

    errors = []
    for error in exc.errors():
        location = [
            str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")
        ]
        errors.append(
            {
                "field": ".".join(location) or "request",
                "message": error.get("msg", "Invalid value"),
            }
        )
    return error_response(
        request,
        422,
        code_for_status(422),
        "Request validation failed",
        {"errors": errors} if errors else None,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fail closed: log the exception, return a generic 500."""
    logger.exception(
        "Unhandled %s while serving %s %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        extra={"request_id": request_id_of(request)},
    )
    return error_response(request, 500, code_for_status(500), "An internal error occurred")
