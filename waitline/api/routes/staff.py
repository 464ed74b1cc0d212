"""
Staff API routes.

Every endpoint requires an open employee profile and is rate limited per
staff user and per location.

Endpoints:
- POST /staff/queues/{queue_id}/advance: Serve the next waiting customer
- POST /staff/entries/{entry_id}/serving: Serve a specific waiting entry
- POST /staff/entries/{entry_id}/actions: complete, cancel, return, no_show, move, delete, serving
- PATCH /staff/entries/{entry_id}: Edit customer and service details
- POST /staff/entries/{entry_id}/messages: Text the customer
- GET /staff/outbox/dead: Dead-lettered messages
- POST /staff/outbox/{message_id}/retry: Requeue a dead message
"""
import enum
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from waitline.api.dependencies import (
    StaffContext,
    get_current_staff,
    get_db,
    get_outbox,
    get_queue_engine,
)
from waitline.lib.errors import InvalidInputError, NotFoundError
from waitline.models.locations import Queue
from waitline.services.outbox_service import DeliveryResult, OutboxService
from waitline.services.queue_engine import QueueEngine, TransitionResult
from waitline.services.rate_limiter import RateLimiter, staff_rules
from waitline.services.staff_message_service import MAX_BODY_LENGTH, StaffMessageService

router = APIRouter(prefix="/staff", tags=["staff"])


class StaffAction(str, enum.Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"
    RETURN = "return"
    NO_SHOW = "no_show"
    MOVE = "move"
    DELETE = "delete"
    SERVING = "serving"


# Request/Response Models
class EntryActionRequest(BaseModel):
    action: StaffAction
    target_location_id: Optional[UUID] = Field(
        default=None,
        description="Destination location, required for move"
    )


class UpdateEntryRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: str = Field(..., min_length=1, max_length=32)
    service_label: str = Field(..., max_length=100)
    customer_type: str


class StaffMessageRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=MAX_BODY_LENGTH)


class DeliveryResponse(BaseModel):
    message_id: UUID
    status: str
    error: Optional[str] = None


class EntryResponse(BaseModel):
    """Entry state after a staff operation."""
    queue_entry_id: UUID
    queue_id: UUID
    status: str
    customer_type: str
    sort_key: int
    service_label: Optional[str] = None
    created_at: datetime
    served_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    queue_position: Optional[int] = None
    deleted: bool = False
    deliveries: List[DeliveryResponse] = Field(default_factory=list)


class StaffMessageResponse(BaseModel):
    message_id: UUID
    delivery: Optional[DeliveryResponse] = None


class OutboxMessageResponse(BaseModel):
    id: UUID
    queue_entry_id: Optional[UUID] = None
    message_type: str
    to_phone: Optional[str] = None
    status: str
    attempt_count: int
    last_error: Optional[str] = None
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime


def _delivery_response(result: DeliveryResult) -> DeliveryResponse:
    return DeliveryResponse(message_id=result.message_id, status=result.status.value, error=result.error)


def _entry_response(result: TransitionResult, deleted: bool = False) -> EntryResponse:
    entry = result.entry
    return EntryResponse(
        queue_entry_id=entry.id,
        queue_id=entry.queue_id,
        status=entry.status.value,
        customer_type=entry.customer_type.value,
        sort_key=entry.sort_key,
        service_label=entry.service_label,
        created_at=entry.created_at,
        served_at=entry.served_at,
        completed_at=entry.completed_at,
        cancelled_at=entry.cancelled_at,
        no_show_at=entry.no_show_at,
        queue_position=result.position,
        deleted=deleted,
        deliveries=[_delivery_response(d) for d in result.deliveries],
    )


def _outbox_response(message) -> OutboxMessageResponse:
    return OutboxMessageResponse(
        id=message.id,
        queue_entry_id=message.queue_entry_id,
        message_type=message.message_type.value,
        to_phone=message.to_phone,
        status=message.status.value,
        attempt_count=message.attempt_count,
        last_error=message.last_error,
        next_attempt_at=message.next_attempt_at,
        created_at=message.created_at,
        updated_at=message.updated_at,
    )


def _enforce_staff_limits(
    db: Session,
    staff: StaffContext,
    location_id: Optional[UUID],
    endpoint: str,
) -> None:
    RateLimiter(db).enforce(
        staff_rules(staff.user_id, location_id),
        endpoint=endpoint,
        fail_open=True,
        context={"user_id": str(staff.user_id), "location_id": str(location_id) if location_id else None},
    )


# Endpoints
@router.post("/queues/{queue_id}/advance", response_model=EntryResponse)
def advance_queue(
    queue_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    engine: QueueEngine = Depends(get_queue_engine),
) -> EntryResponse:
    """Serve the highest-priority waiting entry. 409 when nobody is waiting."""
    queue = db.get(Queue, queue_id)
    if queue is None:
        raise NotFoundError("Queue", str(queue_id))
    _enforce_staff_limits(db, staff, queue.location_id, "advance_queue")
    return _entry_response(engine.advance(queue_id, actor_user_id=staff.user_id))


@router.post("/entries/{entry_id}/serving", response_model=EntryResponse)
def set_serving(
    entry_id: UUID,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    engine: QueueEngine = Depends(get_queue_engine),
) -> EntryResponse:
    _enforce_staff_limits(db, staff, engine.location_id_for_entry(entry_id), "set_serving")
    return _entry_response(engine.set_serving(entry_id, actor_user_id=staff.user_id))


@router.post("/entries/{entry_id}/actions", response_model=EntryResponse)
def entry_action(
    entry_id: UUID,
    payload: EntryActionRequest,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    engine: QueueEngine = Depends(get_queue_engine),
) -> EntryResponse:
    """Apply one staff transition to an entry."""
    if payload.action == StaffAction.MOVE and payload.target_location_id is None:
        raise InvalidInputError("target_location_id is required for move")

    location_id = payload.target_location_id or engine.location_id_for_entry(entry_id)
    _enforce_staff_limits(db, staff, location_id, "queue_entry_action")

    actor = staff.user_id
    if payload.action == StaffAction.COMPLETE:
        result = engine.complete(entry_id, actor)
    elif payload.action == StaffAction.CANCEL:
        result = engine.cancel(entry_id, actor)
    elif payload.action == StaffAction.RETURN:
        result = engine.return_to_queue(entry_id, actor)
    elif payload.action == StaffAction.NO_SHOW:
        result = engine.mark_no_show(entry_id, actor)
    elif payload.action == StaffAction.MOVE:
        result = engine.move(entry_id, payload.target_location_id, actor)
    elif payload.action == StaffAction.DELETE:
        return _entry_response(engine.delete(entry_id, actor), deleted=True)
    else:
        result = engine.set_serving(entry_id, actor)
    return _entry_response(result)


@router.patch("/entries/{entry_id}", response_model=EntryResponse)
def update_entry(
    entry_id: UUID,
    payload: UpdateEntryRequest,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    engine: QueueEngine = Depends(get_queue_engine),
) -> EntryResponse:
    """Edit customer details, service label or class. 409 when nothing changes."""
    _enforce_staff_limits(db, staff, engine.location_id_for_entry(entry_id), "update_queue_entry")
    result = engine.update(
        entry_id,
        full_name=payload.full_name,
        email=payload.email,
        phone=payload.phone,
        service_label=payload.service_label,
        customer_type=payload.customer_type,
        actor_user_id=staff.user_id,
    )
    return _entry_response(result)


@router.post("/entries/{entry_id}/messages", response_model=StaffMessageResponse)
def send_staff_message(
    entry_id: UUID,
    payload: StaffMessageRequest,
    db: Session = Depends(get_db),
    staff: StaffContext = Depends(get_current_staff),
    engine: QueueEngine = Depends(get_queue_engine),
    outbox: OutboxService = Depends(get_outbox),
) -> StaffMessageResponse:
    _enforce_staff_limits(db, staff, engine.location_id_for_entry(entry_id), "send_employee_message")
    message_id, delivery = StaffMessageService(db, outbox=outbox).send(
        entry_id, payload.body, actor_user_id=staff.user_id
    )
    return StaffMessageResponse(
        message_id=message_id,
        delivery=_delivery_response(delivery) if delivery else None,
    )


@router.get("/outbox/dead", response_model=List[OutboxMessageResponse])
def list_dead_messages(
    limit: int = Query(50, ge=1, le=500),
    staff: StaffContext = Depends(get_current_staff),
    outbox: OutboxService = Depends(get_outbox),
) -> List[OutboxMessageResponse]:
    """Dead-lettered messages, most recent first, for manual follow-up."""
    return [_outbox_response(message) for message in outbox.list_dead(limit)]


@router.post("/outbox/{message_id}/retry", response_model=OutboxMessageResponse)
def retry_dead_message(
    message_id: UUID,
    staff: StaffContext = Depends(get_current_staff),
    outbox: OutboxService = Depends(get_outbox),
) -> OutboxMessageResponse:
    """Requeue a dead message with a fresh retry budget and try it once now."""
    outbox.retry_dead(message_id)
    outbox.deliver([message_id])
    return _outbox_response(outbox.get(message_id))
