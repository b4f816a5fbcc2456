"""
Error normalization and handlers.

Every error response shares one envelope:

    {"error": {"code": str, "message": str, "request_id": str}, "detail": str}

and echoes the request id in the ``x-request-id`` header.
"""

import builtins
import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gamerhub.core.logging import get_request_id


logger = logging.getLogger("gamerhub")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class QuotaExceededError(AppError):
    """An entitlement check refused the action; the message is the denial reason."""
    code = "quota_exceeded"
    status_code = 403


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class PayloadTooLargeError(AppError):
    code = "payload_too_large"
    status_code = 413


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


def _request_id(request: Request, preferred: Optional[str] = None) -> str:
    return (
        preferred
        or getattr(request.state, "request_id", None)
        or get_request_id()
        or str(uuid4())
    )


def error_response(request: Request, status_code: int, code: str, message: str, request_id: Optional[str] = None) -> JSONResponse:
    rid = _request_id(request, request_id)
    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": code, "status": status_code, "path": request.url.path},
    )
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": rid},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    return error_response(request, exc.status_code, exc.code, exc.message, exc.request_id)


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return error_response(request, exc.status_code, code, str(exc.detail) if exc.detail else "HTTP error")


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Upload clients read error.message, so flatten pydantic's list into one line
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header"))
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return error_response(request, 422, "validation_error", "; ".join(problems) or "Invalid request")


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"error_code": "internal_error"})
    return error_response(request, 500, "internal_error", "Unexpected error")
