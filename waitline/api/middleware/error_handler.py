"""
Error handlers.

Turn the typed exceptions from waitline.lib.errors into consistent JSON
error responses carrying the request's correlation ID:

    {"error": "...", "correlation_id": "...", "details": {...}}
"""
import logging
import math
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from waitline.lib.errors import AppException, RateLimitedError, UpstreamFailureError
from waitline.lib.logging import get_logger

logger = get_logger(__name__)


def retry_after_header(retry_after_seconds: float) -> str:
    """Whole seconds, never less than one."""
    return str(max(1, math.ceil(retry_after_seconds)))


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


def _request_context(request: Request, **fields) -> Dict[str, Any]:
    return {
        "correlation_id": _correlation_id(request),
        "path": request.url.path,
        "method": request.method,
        **fields,
    }


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content = {"error": message, "correlation_id": _correlation_id(request)}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Typed application errors.

    4xx are logged as warnings (callers are expected to refresh and retry
    on conflicts), 5xx as errors. Rate limiting adds Retry-After.
    """
    logger.log(
        logging.WARNING if exc.status_code < 500 else logging.ERROR,
        f"Application error: {exc.message}",
        extra=_request_context(request, status_code=exc.status_code, details=exc.details),
    )

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": retry_after_header(exc.retry_after_seconds)}

    return _error_response(request, exc.status_code, exc.message, exc.details, headers)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Request body / query validation failures, one item per field."""
    errors = [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    logger.warning("Validation error", extra=_request_context(request, errors=errors))

    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        {"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Unknown routes, wrong methods."""
    logger.warning(
        f"HTTP exception: {exc.detail}",
        extra=_request_context(request, status_code=exc.status_code),
    )
    return _error_response(
        request,
        exc.status_code,
        exc.detail,
        headers=getattr(exc, "headers", None),
    )


async def datastore_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Database unreachable or connection dropped mid-request."""
    return await app_exception_handler(
        request,
        UpstreamFailureError("Datastore unavailable", details={"code": "datastore_unavailable"}),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else: full stack trace in the log, generic message out."""
    logger.error(
        f"Unhandled exception: {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
