"""
Queue ordering engine.

Admits customers into a queue, serves them in priority order and applies
every staff or customer transition as a single guarded UPDATE (or DELETE),
so two workers racing on the same entry cannot both win. Notifications a
transition implies are enqueued in the same transaction and delivered right
after it commits.

Line order within a queue: priority class (configurable, see
settings.priority_order), then sort_key, then created_at.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from waitline.lib.datetime_utils import utcnow
from waitline.lib.db import upsert
from waitline.lib.errors import ConflictError, InvalidInputError, NotFoundError
from waitline.lib.logging import get_logger
from waitline.lib.phone import normalize_phone
from waitline.lib.settings import settings
from waitline.models.consent_versions import ConsentVersion
from waitline.models.customers import Customer
from waitline.models.locations import DEFAULT_QUEUE_CODE, Location, Queue
from waitline.models.outbox import MessageType, OutboxMessage
from waitline.models.queue_entries import (
    ACTIVE_STATUSES,
    CustomerType,
    QueueEntry,
    QueueEntryStatus,
)
from waitline.models.queue_events import QueueEvent
from waitline.services import messages
from waitline.services.outbox_service import DeliveryResult, OutboxService


logger = get_logger(__name__)

DEFAULT_SERVICE_LABELS = {
    CustomerType.PAYING: "Paying",
    CustomerType.PRIORITY_PASS: "Priority Pass",
}


@dataclass
class JoinRequest:
    """Customer-supplied join form."""
    airport_code: str
    location_code: str
    full_name: str
    phone: str
    customer_type: str
    consent: bool
    email: Optional[str] = None
    service_label: Optional[str] = None
    consent_version_id: Optional[UUID] = None
    consent_key: Optional[str] = None


@dataclass
class TransitionResult:
    """Entry state after a transition plus what the outbox did about it."""
    entry: QueueEntry
    position: Optional[int] = None
    location: Optional[Location] = None
    message_ids: list[UUID] = field(default_factory=list)
    deliveries: list[DeliveryResult] = field(default_factory=list)
    already_in_queue: bool = False


def parse_customer_type(value) -> CustomerType:
    try:
        return CustomerType(value)
    except ValueError:
        raise InvalidInputError(
            "Customer type is invalid",
            details={"customer_type": value, "allowed": [c.value for c in CustomerType]},
        )


def priority_rank(column=QueueEntry.customer_type):
    """SQL expression ranking customer classes; lower is served first."""
    classes = settings.priority_classes
    return case(
        *[(column == CustomerType(name), rank) for rank, name in enumerate(classes)],
        else_=len(classes),
    )


def python_rank(customer_type: CustomerType) -> int:
    return settings.priority_classes.index(customer_type.value)


def line_order(model=QueueEntry) -> list:
    return [
        priority_rank(model.customer_type),
        model.sort_key,
        model.created_at,
        model.id,
    ]


class QueueEngine:
    """
    Queue state machine.

    Every public transition commits its own transaction and then attempts
    immediate delivery of the messages it enqueued.
    """

    def __init__(
        self,
        session: Session,
        outbox: Optional[OutboxService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.clock = clock
        self.outbox = outbox or OutboxService(session, clock=clock)

    # Lookups

    def resolve_queue(self, airport_code: str, location_code: str) -> tuple[Queue, Location]:
        """Default queue of an open location, by human-facing codes."""
        row = self.session.execute(
            select(Queue, Location)
            .join(Location, Location.id == Queue.location_id)
            .where(
                Location.airport_code == airport_code,
                Location.code == location_code,
                Location.is_open.is_(True),
                Queue.code == DEFAULT_QUEUE_CODE,
                Queue.is_open.is_(True),
            )
        ).first()
        if row is None:
            raise NotFoundError("Queue", f"{airport_code}/{location_code}")
        return row[0], row[1]

    def get_entry(self, entry_id: UUID) -> QueueEntry:
        entry = self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Queue entry", str(entry_id))
        return entry

    def location_for_queue(self, queue_id: UUID) -> Optional[Location]:
        return self.session.execute(
            select(Location)
            .join(Queue, Queue.location_id == Location.id)
            .where(Queue.id == queue_id)
        ).scalar_one_or_none()

    def location_id_for_entry(self, entry_id: UUID) -> Optional[UUID]:
        return self.session.execute(
            select(Queue.location_id)
            .join(QueueEntry, QueueEntry.queue_id == Queue.id)
            .where(QueueEntry.id == entry_id)
        ).scalar_one_or_none()

    def head_of_line(self, queue_id: UUID) -> Optional[QueueEntry]:
        """Waiting entry that advance() would serve next."""
        return self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.queue_id == queue_id, QueueEntry.status == QueueEntryStatus.WAITING)
            .order_by(*line_order())
            .limit(1)
        ).scalar_one_or_none()

    def waiting_line(self, queue_id: UUID) -> list[QueueEntry]:
        return list(
            self.session.execute(
                select(QueueEntry)
                .where(QueueEntry.queue_id == queue_id, QueueEntry.status == QueueEntryStatus.WAITING)
                .order_by(*line_order())
            ).scalars().all()
        )

    def position(self, entry: QueueEntry) -> Optional[int]:
        """1-based place in the waiting line, or None when not waiting."""
        if entry.status != QueueEntryStatus.WAITING:
            return None
        rank = priority_rank()
        own_rank = python_rank(entry.customer_type)
        ahead = self.session.execute(
            select(func.count(QueueEntry.id)).where(
                QueueEntry.queue_id == entry.queue_id,
                QueueEntry.status == QueueEntryStatus.WAITING,
                QueueEntry.id != entry.id,
                or_(
                    rank < own_rank,
                    and_(
                        rank == own_rank,
                        or_(
                            QueueEntry.sort_key < entry.sort_key,
                            and_(
                                QueueEntry.sort_key == entry.sort_key,
                                QueueEntry.created_at < entry.created_at,
                            ),
                        ),
                    ),
                ),
            )
        ).scalar_one()
        return ahead + 1

    def next_sort_key(self, queue_id: UUID, customer_type: CustomerType) -> int:
        current = self.session.execute(
            select(func.max(QueueEntry.sort_key)).where(
                QueueEntry.queue_id == queue_id,
                QueueEntry.customer_type == customer_type,
            )
        ).scalar_one_or_none()
        return (current or 0) + 1

    def status(self, public_token: str) -> TransitionResult:
        """Live status of an entry by its customer-facing token."""
        entry = self.session.execute(
            select(QueueEntry).where(QueueEntry.public_token == public_token)
        ).scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Queue entry")
        return TransitionResult(
            entry=entry,
            position=self.position(entry),
            location=self.location_for_queue(entry.queue_id),
        )

    # Join

    def join(self, request: JoinRequest) -> TransitionResult:
        """
        Admit a customer into the default queue of a location.

        Raises:
            InvalidInputError: Missing consent, bad phone or class
            NotFoundError: Unknown or closed location/queue
            ConflictError: Customer already has an active entry here;
                `current` holds that entry
        """
        if not request.consent:
            raise InvalidInputError("Consent is required")
        phone_e164 = normalize_phone(request.phone)
        if not phone_e164:
            raise InvalidInputError("Invalid phone number")
        full_name = (request.full_name or "").strip()
        if not full_name:
            raise InvalidInputError("Name is required")
        customer_type = parse_customer_type(request.customer_type)

        queue, location = self.resolve_queue(request.airport_code, request.location_code)
        consent_version_id = self._resolve_consent(request)
        service_label = (request.service_label or "").strip() or DEFAULT_SERVICE_LABELS[customer_type]

        customer_id = self._upsert_customer(phone_e164, full_name, request.email)

        existing = self._active_entry(customer_id, queue.id)
        if existing is not None:
            self.session.rollback()
            raise ConflictError(
                "Customer already has an active entry in this queue",
                details={"queue_entry_id": str(existing.id)},
                current=existing,
            )

        previous_head = self.head_of_line(queue.id)
        now = self.clock()
        entry = QueueEntry(
            queue_id=queue.id,
            customer_id=customer_id,
            consent_version_id=consent_version_id,
            status=QueueEntryStatus.WAITING,
            customer_type=customer_type,
            sort_key=self.next_sort_key(queue.id, customer_type),
            service_label=service_label,
            created_at=now,
            updated_at=now,
        )
        self.session.add(entry)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            existing = self._active_entry_by_phone(phone_e164, queue.id)
            if existing is None:
                raise
            raise ConflictError(
                "Customer already has an active entry in this queue",
                details={"queue_entry_id": str(existing.id)},
                current=existing,
            )

        self._record_event(
            entry.id,
            "joined",
            payload={"customer_type": customer_type.value, "source": "queue_join"},
        )

        position = self.position(entry)
        message_ids = [
            self.outbox.enqueue(
                entry.id,
                MessageType.CONFIRM,
                phone_e164,
                messages.build_confirmation(customer_type, full_name, location.display_name, position),
                messages.idempotency_key(MessageType.CONFIRM, entry.id),
            )
        ]
        message_ids += self._notify_new_head(queue.id, previous_head)

        deliveries = self._commit_and_deliver(message_ids)
        logger.info(
            "Customer joined queue",
            extra={
                "queue_entry_id": str(entry.id),
                "queue_id": str(queue.id),
                "customer_type": customer_type.value,
                "position": position,
            },
        )
        return TransitionResult(
            entry=entry,
            position=position,
            location=location,
            message_ids=message_ids,
            deliveries=deliveries,
        )

    # Staff transitions

    def advance(self, queue_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        """
        Serve the first waiting entry of the queue.

        Raises:
            NotFoundError: Unknown queue
            ConflictError: Nobody is waiting (or another worker just took them)
        """
        if self.session.get(Queue, queue_id) is None:
            raise NotFoundError("Queue", str(queue_id))

        candidate = aliased(QueueEntry)
        head = (
            select(candidate.id)
            .where(candidate.queue_id == queue_id, candidate.status == QueueEntryStatus.WAITING)
            .order_by(*line_order(candidate))
            .limit(1)
        )
        if self.session.get_bind().dialect.name == "postgresql":
            head = head.with_for_update(skip_locked=True)

        now = self.clock()
        served_id = self.session.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id == head.scalar_subquery(),
                QueueEntry.status == QueueEntryStatus.WAITING,
            )
            .values(status=QueueEntryStatus.SERVING, served_at=now, updated_at=now)
            .returning(QueueEntry.id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

        if served_id is None:
            self.session.rollback()
            raise ConflictError("No waiting entries in queue", details={"queue_id": str(queue_id)})

        entry = self.get_entry(served_id)
        self._record_event(entry.id, "serving", actor_user_id, {"source": "advance"})
        message_ids = [self._enqueue_serving(entry)]
        message_ids += self._notify_new_head(queue_id, entry)
        return self._finish(entry, message_ids)

    def set_serving(self, entry_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        now = self.clock()
        entry, previous_head = self._transition(
            entry_id,
            (QueueEntryStatus.WAITING,),
            {"status": QueueEntryStatus.SERVING, "served_at": now},
        )
        self._record_event(entry.id, "serving", actor_user_id, {"source": "set_serving"})
        message_ids = [self._enqueue_serving(entry)]
        message_ids += self._notify_new_head(entry.queue_id, previous_head)
        return self._finish(entry, message_ids)

    def complete(self, entry_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        entry, previous_head = self._transition(
            entry_id,
            (QueueEntryStatus.SERVING,),
            {"status": QueueEntryStatus.COMPLETED, "completed_at": self.clock()},
        )
        self._record_event(entry.id, "completed", actor_user_id)
        return self._finish(entry, self._notify_new_head(entry.queue_id, previous_head))

    def cancel(self, entry_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        entry, previous_head = self._transition(
            entry_id,
            ACTIVE_STATUSES,
            {"status": QueueEntryStatus.CANCELLED, "cancelled_at": self.clock()},
        )
        self._record_event(entry.id, "cancelled", actor_user_id)
        return self._finish(entry, self._notify_new_head(entry.queue_id, previous_head))

    def return_to_queue(self, entry_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        """serving -> waiting; the entry keeps its original sort_key."""
        entry, previous_head = self._transition(
            entry_id,
            (QueueEntryStatus.SERVING,),
            {"status": QueueEntryStatus.WAITING, "served_at": None},
        )
        self._record_event(entry.id, "returned", actor_user_id)
        return self._finish(entry, self._notify_new_head(entry.queue_id, previous_head))

    def mark_no_show(self, entry_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        entry, previous_head = self._transition(
            entry_id,
            ACTIVE_STATUSES,
            {"status": QueueEntryStatus.NO_SHOW, "no_show_at": self.clock()},
        )
        self._record_event(entry.id, "no_show", actor_user_id)
        return self._finish(entry, self._notify_new_head(entry.queue_id, previous_head))

    def move(
        self,
        entry_id: UUID,
        target_location_id: UUID,
        actor_user_id: Optional[UUID] = None,
    ) -> TransitionResult:
        """
        Move a waiting entry to the default queue of another location at the
        same airport. The entry goes to the back of its class there.
        """
        entry = self.get_entry(entry_id)
        if entry.status != QueueEntryStatus.WAITING:
            raise ConflictError(
                f"Queue entry is {entry.status.value}, only waiting entries can move",
                details={"status": entry.status.value},
                current=entry,
            )

        source_location = self.location_for_queue(entry.queue_id)
        target_location = self.session.get(Location, target_location_id)
        if target_location is None or not target_location.is_open:
            raise NotFoundError("Location", str(target_location_id))
        if source_location is None or source_location.airport_code != target_location.airport_code:
            raise InvalidInputError(
                "Entries can only move between locations at the same airport",
                details={
                    "from_airport": source_location.airport_code if source_location else None,
                    "to_airport": target_location.airport_code,
                },
            )

        target_queue = self.session.execute(
            select(Queue).where(
                Queue.location_id == target_location.id,
                Queue.code == DEFAULT_QUEUE_CODE,
                Queue.is_open.is_(True),
            )
        ).scalar_one_or_none()
        if target_queue is None:
            raise NotFoundError("Queue", f"{target_location.airport_code}/{target_location.code}")
        if target_queue.id == entry.queue_id:
            raise InvalidInputError("Queue entry is already in that queue")

        source_queue_id = entry.queue_id
        source_head = self.head_of_line(source_queue_id)
        target_head = self.head_of_line(target_queue.id)

        try:
            moved_id = self.session.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id == entry.id,
                    QueueEntry.status == QueueEntryStatus.WAITING,
                    QueueEntry.queue_id == source_queue_id,
                )
                .values(
                    queue_id=target_queue.id,
                    sort_key=self.next_sort_key(target_queue.id, entry.customer_type),
                    updated_at=self.clock(),
                )
                .returning(QueueEntry.id)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError(
                "Customer already has an active entry in the target queue",
                details={"target_queue_id": str(target_queue.id)},
            )

        if moved_id is None:
            self.session.rollback()
            self._raise_transition_conflict(entry_id, (QueueEntryStatus.WAITING,))

        entry = self.get_entry(entry_id)
        self._record_event(
            entry.id,
            "moved",
            actor_user_id,
            {
                "from_queue_id": str(source_queue_id),
                "to_queue_id": str(target_queue.id),
                "from_location_id": str(source_location.id),
                "to_location_id": str(target_location.id),
            },
        )
        message_ids = self._notify_new_head(source_queue_id, source_head)
        message_ids += self._notify_new_head(target_queue.id, target_head)
        return self._finish(entry, message_ids)

    def delete(self, entry_id: UUID, actor_user_id: Optional[UUID] = None) -> TransitionResult:
        """Remove an entry in any state. Its events go with it; its messages stay."""
        entry = self.get_entry(entry_id)
        queue_id = entry.queue_id
        previous_head = self.head_of_line(queue_id)

        self.session.execute(
            update(OutboxMessage)
            .where(OutboxMessage.queue_entry_id == entry_id)
            .values(queue_entry_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(QueueEvent)
            .where(QueueEvent.queue_entry_id == entry_id)
            .execution_options(synchronize_session=False)
        )
        deleted_id = self.session.execute(
            delete(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .returning(QueueEntry.id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if deleted_id is None:
            self.session.rollback()
            raise NotFoundError("Queue entry", str(entry_id))

        self.session.expunge(entry)
        logger.info(
            "Queue entry deleted",
            extra={
                "queue_entry_id": str(entry_id),
                "status": entry.status.value,
                "actor_user_id": str(actor_user_id) if actor_user_id else None,
            },
        )
        return self._finish(entry, self._notify_new_head(queue_id, previous_head), with_position=False)

    def update(
        self,
        entry_id: UUID,
        *,
        full_name: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        service_label: Optional[str],
        customer_type,
        actor_user_id: Optional[UUID] = None,
    ) -> TransitionResult:
        """
        Edit the customer's details and the entry's service or class.

        A waiting entry whose class changes goes to the back of its new class.
        """
        service_label = (service_label or "").strip()
        if not service_label:
            raise InvalidInputError("Service label is required")
        new_type = parse_customer_type(customer_type)
        phone_e164 = normalize_phone(phone)
        if not phone_e164:
            raise InvalidInputError("Valid phone number is required")
        full_name = (full_name or "").strip() or None
        email = (email or "").strip().lower() or None

        entry = self.get_entry(entry_id)
        customer = self.session.get(Customer, entry.customer_id)

        customer_unchanged = (
            customer.full_name == full_name
            and customer.email == email
            and customer.phone_e164 == phone_e164
        )
        entry_unchanged = entry.service_label == service_label and entry.customer_type == new_type
        if customer_unchanged and entry_unchanged:
            raise ConflictError("No changes to apply", current=entry)

        if customer.phone_e164 != phone_e164:
            owner = self.session.execute(
                select(Customer.id).where(Customer.phone_e164 == phone_e164)
            ).scalar_one_or_none()
            if owner is not None and owner != customer.id:
                raise ConflictError("Phone number already in use.")

        previous_head = self.head_of_line(entry.queue_id)
        now = self.clock()
        values = {"service_label": service_label, "customer_type": new_type, "updated_at": now}
        if entry.status == QueueEntryStatus.WAITING and new_type != entry.customer_type:
            values["sort_key"] = self.next_sort_key(entry.queue_id, new_type)

        try:
            self.session.execute(
                update(Customer)
                .where(Customer.id == customer.id)
                .values(full_name=full_name, email=email, phone_e164=phone_e164, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            updated_id = self.session.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id == entry.id,
                    QueueEntry.status == entry.status,
                    QueueEntry.customer_type == entry.customer_type,
                )
                .values(**values)
                .returning(QueueEntry.id)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("Phone number already in use.")

        if updated_id is None:
            self.session.rollback()
            raise ConflictError("Queue entry changed concurrently, refresh and retry", current=self.get_entry(entry_id))

        entry = self.get_entry(entry_id)
        self._record_event(
            entry.id,
            "edited_by_staff",
            actor_user_id,
            {"service_label": service_label, "customer_type": new_type.value},
        )
        return self._finish(entry, self._notify_new_head(entry.queue_id, previous_head))

    # Customer-originated

    def cancel_latest_for_phone(self, phone_e164: str) -> Optional[TransitionResult]:
        """
        Cancel the sender's most recent active entry and acknowledge by SMS.

        Returns None when the phone has nothing to cancel.
        """
        customer = self.session.execute(
            select(Customer).where(Customer.phone_e164 == phone_e164)
        ).scalar_one_or_none()
        if customer is None:
            return None

        latest = self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.customer_id == customer.id, QueueEntry.status.in_(ACTIVE_STATUSES))
            .order_by(QueueEntry.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None:
            return None

        try:
            entry, previous_head = self._transition(
                latest.id,
                ACTIVE_STATUSES,
                {"status": QueueEntryStatus.CANCELLED, "cancelled_at": self.clock()},
            )
        except ConflictError:
            logger.info(
                "Entry left the active states before SMS cancel applied",
                extra={"queue_entry_id": str(latest.id)},
            )
            return None

        self._record_event(entry.id, "cancelled_by_customer", payload={"source": "sms"})
        message_ids = [
            self.outbox.enqueue(
                entry.id,
                MessageType.CANCEL_ACK,
                phone_e164,
                messages.build_cancel_ack(customer.full_name),
                messages.idempotency_key(MessageType.CANCEL_ACK, entry.id),
            )
        ]
        message_ids += self._notify_new_head(entry.queue_id, previous_head)
        return self._finish(entry, message_ids)

    # Internals

    def _resolve_consent(self, request: JoinRequest) -> UUID:
        if request.consent_version_id:
            consent = self.session.get(ConsentVersion, request.consent_version_id)
            if consent is None or not consent.is_active:
                raise InvalidInputError("Consent version is unavailable")
            return consent.id
        if not request.consent_key:
            raise InvalidInputError("Consent version is required")
        consent_id = self.session.execute(
            select(ConsentVersion.id)
            .where(ConsentVersion.key == request.consent_key, ConsentVersion.is_active.is_(True))
            .order_by(ConsentVersion.version.desc())
            .limit(1)
        ).scalar_one_or_none()
        if consent_id is None:
            raise InvalidInputError("Consent version is unavailable")
        return consent_id

    def _upsert_customer(self, phone_e164: str, full_name: str, email: Optional[str]) -> UUID:
        now = self.clock()
        email = (email or "").strip().lower() or None
        stmt = upsert(self.session, Customer).values(
            id=uuid4(),
            phone_e164=phone_e164,
            full_name=full_name,
            email=email,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["phone_e164"],
            set_={
                "full_name": stmt.excluded.full_name,
                "email": func.coalesce(stmt.excluded.email, Customer.__table__.c.email),
                "updated_at": now,
            },
        ).returning(Customer.__table__.c.id)
        return self.session.execute(stmt).scalar_one()

    def _active_entry(self, customer_id: UUID, queue_id: UUID) -> Optional[QueueEntry]:
        return self.session.execute(
            select(QueueEntry).where(
                QueueEntry.customer_id == customer_id,
                QueueEntry.queue_id == queue_id,
                QueueEntry.status.in_(ACTIVE_STATUSES),
            )
        ).scalar_one_or_none()

    def _active_entry_by_phone(self, phone_e164: str, queue_id: UUID) -> Optional[QueueEntry]:
        return self.session.execute(
            select(QueueEntry)
            .join(Customer, Customer.id == QueueEntry.customer_id)
            .where(
                Customer.phone_e164 == phone_e164,
                QueueEntry.queue_id == queue_id,
                QueueEntry.status.in_(ACTIVE_STATUSES),
            )
        ).scalar_one_or_none()

    def _transition(
        self,
        entry_id: UUID,
        expected: tuple[QueueEntryStatus, ...],
        values: dict,
    ) -> tuple[QueueEntry, Optional[QueueEntry]]:
        """
        Compare-and-swap the entry's status.

        Returns the refreshed entry and the head of its line as it was
        before the change.
        """
        entry = self.get_entry(entry_id)
        previous_head = self.head_of_line(entry.queue_id)

        changed_id = self.session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.status.in_(expected))
            .values(updated_at=self.clock(), **values)
            .returning(QueueEntry.id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

        if changed_id is None:
            self.session.rollback()
            self._raise_transition_conflict(entry_id, expected)

        return self.get_entry(entry_id), previous_head

    def _raise_transition_conflict(self, entry_id: UUID, expected) -> None:
        current = self.get_entry(entry_id)
        raise ConflictError(
            f"Queue entry is {current.status.value}, expected {' or '.join(s.value for s in expected)}",
            details={"status": current.status.value, "expected": [s.value for s in expected]},
            current=current,
        )

    def _record_event(
        self,
        entry_id: UUID,
        event_type: str,
        actor_user_id: Optional[UUID] = None,
        payload: Optional[dict] = None,
    ) -> None:
        self.session.add(
            QueueEvent(
                queue_entry_id=entry_id,
                actor_user_id=actor_user_id,
                event_type=event_type,
                payload=payload,
                created_at=self.clock(),
            )
        )

    def _customer_phone(self, entry: QueueEntry) -> Optional[str]:
        return self.session.execute(
            select(Customer.phone_e164).where(Customer.id == entry.customer_id)
        ).scalar_one_or_none()

    def _enqueue_serving(self, entry: QueueEntry) -> UUID:
        return self.outbox.enqueue(
            entry.id,
            MessageType.SERVING,
            self._customer_phone(entry),
            messages.build_serving_notification(),
            messages.idempotency_key(MessageType.SERVING, entry.id),
        )

    def _notify_new_head(self, queue_id: UUID, previous_head: Optional[QueueEntry]) -> list[UUID]:
        """Send "you're next" to whoever now leads the waiting line, once per entry."""
        self.session.flush()
        head = self.head_of_line(queue_id)
        if head is None or (previous_head is not None and head.id == previous_head.id):
            return []
        location = self.location_for_queue(queue_id)
        return [
            self.outbox.enqueue(
                head.id,
                MessageType.NEXT,
                self._customer_phone(head),
                messages.build_next_notification(location.display_name if location else settings.brand_name),
                messages.idempotency_key(MessageType.NEXT, head.id),
            )
        ]

    def _finish(
        self,
        entry: QueueEntry,
        message_ids: list[UUID],
        with_position: bool = True,
    ) -> TransitionResult:
        position = self.position(entry) if with_position else None
        location = self.location_for_queue(entry.queue_id) if with_position else None
        deliveries = self._commit_and_deliver(message_ids)
        return TransitionResult(
            entry=entry,
            position=position,
            location=location,
            message_ids=message_ids,
            deliveries=deliveries,
        )

    def _commit_and_deliver(self, message_ids: list[UUID]) -> list[DeliveryResult]:
        self.session.commit()
        if not message_ids:
            return []
        return self.outbox.deliver(message_ids)
