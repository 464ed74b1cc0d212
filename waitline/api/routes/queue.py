"""
Public queue API routes.

Endpoints:
- POST /queue/join: Join the default queue of a location
- GET /queue/status/{public_token}: Live status of one's own entry
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from waitline.api.dependencies import get_client_ip, get_db, get_queue_engine
from waitline.lib.errors import ConflictError, InvalidInputError
from waitline.lib.logging import get_logger
from waitline.lib.phone import normalize_phone
from waitline.services.queue_engine import JoinRequest, QueueEngine, TransitionResult
from waitline.services.rate_limiter import RateLimiter, join_rules

logger = get_logger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


# Request/Response Models
class JoinQueueRequest(BaseModel):
    """Walk-in join form."""
    airport_code: str = Field(..., min_length=1, max_length=10)
    location_code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=1, max_length=32)
    email: Optional[str] = Field(default=None, max_length=255)
    consent: bool
    customer_type: str = Field(..., description="paying or priority_pass")
    service_label: Optional[str] = Field(default=None, max_length=100)
    consent_version_id: Optional[UUID] = None
    consent_key: Optional[str] = Field(default=None, max_length=100)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "airport_code": "ATL",
                    "location_code": "concourse-a",
                    "name": "Jamie",
                    "phone": "(555) 123-4567",
                    "email": "jamie@example.com",
                    "consent": True,
                    "customer_type": "paying",
                    "consent_key": "queue_join_consent",
                }
            ]
        }
    }


class QueueEntryStatusResponse(BaseModel):
    """Customer-facing view of an entry."""
    queue_entry_id: UUID
    public_token: str
    queue_id: UUID
    status: str
    customer_type: str
    created_at: datetime
    queue_position: Optional[int] = None
    location_display_name: Optional[str] = None
    already_in_queue: bool = False


def _status_response(result: TransitionResult, already_in_queue: bool = False) -> QueueEntryStatusResponse:
    entry = result.entry
    return QueueEntryStatusResponse(
        queue_entry_id=entry.id,
        public_token=entry.public_token,
        queue_id=entry.queue_id,
        status=entry.status.value,
        customer_type=entry.customer_type.value,
        created_at=entry.created_at,
        queue_position=result.position,
        location_display_name=result.location.display_name if result.location else None,
        already_in_queue=already_in_queue,
    )


# Endpoints
@router.post("/join", response_model=QueueEntryStatusResponse)
def join_queue(
    payload: JoinQueueRequest,
    request: Request,
    db: Session = Depends(get_db),
    engine: QueueEngine = Depends(get_queue_engine),
) -> QueueEntryStatusResponse:
    """
    Join a queue.

    A customer who already has an active entry in this queue gets that
    entry back with `already_in_queue=true` instead of an error.
    """
    if not payload.consent:
        raise InvalidInputError("Consent is required")
    phone_e164 = normalize_phone(payload.phone)
    if not phone_e164:
        raise InvalidInputError("Invalid phone number")

    # Join sends SMS, so a limiter outage blocks it
    RateLimiter(db).enforce(
        join_rules(get_client_ip(request), phone_e164),
        endpoint="queue_join",
        fail_open=False,
        context={"phone": phone_e164},
    )

    join_request = JoinRequest(
        airport_code=payload.airport_code,
        location_code=payload.location_code,
        full_name=payload.name,
        phone=phone_e164,
        email=payload.email,
        customer_type=payload.customer_type,
        consent=payload.consent,
        service_label=payload.service_label,
        consent_version_id=payload.consent_version_id,
        consent_key=payload.consent_key,
    )
    try:
        result = engine.join(join_request)
    except ConflictError as e:
        if e.current is None:
            raise
        logger.info(
            "Duplicate join returned existing entry",
            extra={"queue_entry_id": str(e.current.id)},
        )
        return _status_response(engine.status(e.current.public_token), already_in_queue=True)

    return _status_response(result)


@router.get("/status/{public_token}", response_model=QueueEntryStatusResponse)
def get_queue_status(
    public_token: str,
    engine: QueueEngine = Depends(get_queue_engine),
) -> QueueEntryStatusResponse:
    """Live status and position of an entry, by its public token."""
    return _status_response(engine.status(public_token))
