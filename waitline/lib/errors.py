"""
Typed error taxonomy shared by the queue engine, outbox and API layer.

Services raise these; the API error handlers turn them into HTTP responses.
"""
from typing import Any, Dict, Optional

from fastapi import status


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class InvalidInputError(AppException):
    """Input failed validation before any state change."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class UnauthorizedError(AppException):
    """Caller did not present an identity."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class ForbiddenError(AppException):
    """Caller lacks the required role."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class NotFoundError(AppException):
    """Referenced entry, queue or location does not exist."""

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "resource_id": resource_id},
        )


class ConflictError(AppException):
    """
    Expected-state precondition failed.

    Callers should refresh and decide; the core never retries these.
    `current` optionally carries the live state of the contested record.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        current: Any = None,
    ):
        self.current = current
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class RateLimitedError(AppException):
    """A rate-limit bucket is exhausted."""

    def __init__(self, retry_after_seconds: float, message: Optional[str] = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message=message or "Too many requests. Please try again later.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"code": "rate_limited", "retry_after": retry_after_seconds},
        )


class UpstreamFailureError(AppException):
    """Messaging provider or datastore unavailable."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )
