"""
API dependencies for FastAPI dependency injection.

Provides database sessions, the queue services wired to one session, staff
authentication and client IP resolution.
"""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from waitline.lib.db import get_db as get_db_session
from waitline.lib.errors import ForbiddenError, UnauthorizedError
from waitline.lib.jwt import verify_token
from waitline.lib.logging import get_logger
from waitline.models.employees import EmployeeProfile, EmployeeRole
from waitline.services.outbox_service import OutboxService
from waitline.services.queue_engine import QueueEngine
from waitline.services.sms_provider import SmsProvider, get_sms_provider


logger = get_logger(__name__)

# Re-export get_db for convenience
get_db = get_db_session

# HTTP Bearer token security scheme; a missing header is reported as 401 below
security = HTTPBearer(auto_error=False)

STAFF_ROLES = (EmployeeRole.EMPLOYEE, EmployeeRole.ADMIN)

_provider: Optional[SmsProvider] = None


@dataclass(frozen=True)
class StaffContext:
    """Authenticated staff caller."""
    user_id: UUID
    role: EmployeeRole


def get_provider() -> SmsProvider:
    """Process-wide SMS provider."""
    global _provider
    if _provider is None:
        _provider = get_sms_provider()
    return _provider


def get_outbox(
    db: Session = Depends(get_db),
    provider: SmsProvider = Depends(get_provider),
) -> OutboxService:
    return OutboxService(db, provider=provider)


def get_queue_engine(
    db: Session = Depends(get_db),
    outbox: OutboxService = Depends(get_outbox),
) -> QueueEngine:
    return QueueEngine(db, outbox=outbox)


def get_current_staff(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> StaffContext:
    """
    Dependency resolving the bearer token to an open employee profile.

    Raises:
        UnauthorizedError: No bearer token
        ForbiddenError: Bad token, unknown or closed profile, or wrong role
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError()

    try:
        payload = verify_token(credentials.credentials)
        user_id = UUID(str(payload.get("sub")))
    except (jwt.InvalidTokenError, ValueError) as e:
        logger.warning(f"Rejected staff token: {e}")
        raise ForbiddenError("Invalid authentication token")

    profile = db.get(EmployeeProfile, user_id)
    if profile is None or not profile.is_open or profile.role not in STAFF_ROLES:
        raise ForbiddenError("Employee access required")

    return StaffContext(user_id=profile.user_id, role=profile.role)


def get_client_ip(request: Request) -> str:
    """First forwarded hop, then proxy headers, then the socket peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
