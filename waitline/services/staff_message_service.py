"""Ad hoc text messages typed by staff to a queued customer."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from waitline.lib.errors import ConflictError, InvalidInputError, NotFoundError
from waitline.lib.logging import get_logger
from waitline.models.customers import Customer
from waitline.models.outbox import MessageType
from waitline.models.queue_entries import QueueEntry
from waitline.models.queue_events import QueueEvent
from waitline.services import messages
from waitline.services.outbox_service import DeliveryResult, OutboxService


logger = get_logger(__name__)

MAX_BODY_LENGTH = 1600


class StaffMessageService:
    """Enqueue and immediately attempt one staff message per call."""

    def __init__(self, session: Session, outbox: Optional[OutboxService] = None):
        self.session = session
        self.outbox = outbox or OutboxService(session)

    def send(
        self,
        entry_id: UUID,
        body: str,
        actor_user_id: Optional[UUID] = None,
    ) -> tuple[UUID, Optional[DeliveryResult]]:
        """
        Send `body` to the customer behind `entry_id`.

        Returns:
            (message id, result of the immediate delivery attempt if any)

        Raises:
            InvalidInputError: Empty or overlong body
            NotFoundError: Unknown entry
            ConflictError: Customer has no phone on file
        """
        body = (body or "").strip()
        if not body:
            raise InvalidInputError("Message body is required")
        if len(body) > MAX_BODY_LENGTH:
            raise InvalidInputError(
                f"Message body must be at most {MAX_BODY_LENGTH} characters",
                details={"length": len(body)},
            )

        row = self.session.execute(
            select(QueueEntry.id, Customer.phone_e164)
            .join(Customer, Customer.id == QueueEntry.customer_id)
            .where(QueueEntry.id == entry_id)
        ).first()
        if row is None:
            raise NotFoundError("Queue entry", str(entry_id))
        if not row.phone_e164:
            raise ConflictError("Customer phone number is missing")

        message_id = self.outbox.enqueue(
            entry_id,
            MessageType.STAFF,
            row.phone_e164,
            body,
            messages.staff_message_key(entry_id),
        )
        self.session.add(
            QueueEvent(
                queue_entry_id=entry_id,
                actor_user_id=actor_user_id,
                event_type="staff_message_sent",
                payload={"message_id": str(message_id)},
            )
        )
        self.session.commit()

        logger.info(
            "Staff message enqueued",
            extra={"queue_entry_id": str(entry_id), "message_id": str(message_id)},
        )
        results = self.outbox.deliver([message_id])
        return message_id, results[0] if results else None
