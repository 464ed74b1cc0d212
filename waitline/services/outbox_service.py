"""
Outbox delivery engine.

Transitions enqueue messages in their own transaction; delivery happens
afterwards, either immediately for the ids a transition just enqueued or
from the periodic sweep. Any number of workers may claim concurrently:
claiming is one UPDATE over rows that are due, unlocked (or whose lock
expired) and, for gated message types, whose entry's confirmation has
already been sent.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.orm import Session, aliased

from waitline.lib.datetime_utils import utcnow
from waitline.lib.db import upsert
from waitline.lib.errors import ConflictError, NotFoundError
from waitline.lib.logging import get_logger
from waitline.lib.settings import settings
from waitline.models.locations import Queue
from waitline.models.outbox import (
    CLAIMABLE_STATUSES,
    REQUIRES_CONFIRM_SENT,
    MessageType,
    OutboxMessage,
    OutboxStatus,
    gated_message_types,
)
from waitline.models.queue_entries import QueueEntry
from waitline.models.sms import SmsOptOut
from waitline.services.rate_limiter import RateLimiter, delivery_rules
from waitline.services.sms_provider import SmsProvider, get_sms_provider


logger = get_logger(__name__)

MAX_SWEEP_LIMIT = 100

OPTED_OUT = "opted_out"
MISSING_CONTENT = "Missing body or to_phone"
RATE_LIMITED = "rate_limited"


class DeliveryStatus(str, enum.Enum):
    """What one delivery pass did with a message."""
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"
    REQUEUED = "requeued"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DeliveryResult:
    message_id: UUID
    status: DeliveryStatus
    error: Optional[str] = None


def backoff_delay_seconds(attempt_count: int) -> int:
    """
    Delay before retry number `attempt_count + 1`.

    60s after the first failure, doubling per failure, capped at one hour.
    """
    exponent = max(attempt_count - 1, 0)
    return min(
        settings.outbox_base_delay_seconds * 2 ** exponent,
        settings.outbox_max_delay_seconds,
    )


def _claimable(model, now: datetime, lock_cutoff: datetime):
    """Due, retryable and not held by a live claim."""
    return and_(
        model.status.in_(CLAIMABLE_STATUSES),
        model.next_attempt_at <= now,
        or_(model.locked_at.is_(None), model.locked_at < lock_cutoff),
    )


def clamp_sweep_limit(limit: Optional[int]) -> int:
    if limit is None:
        return settings.outbox_sweep_limit
    return max(1, min(int(limit), MAX_SWEEP_LIMIT))


class OutboxService:
    """
    Enqueue, claim and send outbox messages.

    Usage:
        outbox = OutboxService(db)
        message_id = outbox.enqueue(entry.id, MessageType.CONFIRM, phone, body, key)
        db.commit()
        outbox.deliver([message_id])
    """

    def __init__(
        self,
        session: Session,
        provider: Optional[SmsProvider] = None,
        limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.clock = clock
        self.limiter = limiter or RateLimiter(session, clock=clock)
        self._provider = provider

    @property
    def provider(self) -> SmsProvider:
        if self._provider is None:
            self._provider = get_sms_provider()
        return self._provider

    # Enqueue

    def enqueue(
        self,
        queue_entry_id: Optional[UUID],
        message_type: MessageType,
        to_phone: Optional[str],
        body: Optional[str],
        idempotency_key: str,
    ) -> UUID:
        """
        Insert a queued message unless one with the same idempotency key exists.

        Runs inside the caller's transaction and does not commit.

        Returns:
            Id of the new or already existing message
        """
        now = self.clock()
        stmt = upsert(self.session, OutboxMessage).values(
            id=uuid4(),
            queue_entry_id=queue_entry_id,
            message_type=message_type,
            idempotency_key=idempotency_key,
            to_phone=to_phone,
            body=body,
            status=OutboxStatus.QUEUED,
            attempt_count=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["idempotency_key"])
        self.session.execute(stmt)

        message_id = self.session.execute(
            select(OutboxMessage.id).where(OutboxMessage.idempotency_key == idempotency_key)
        ).scalar_one()

        if queue_entry_id is not None and REQUIRES_CONFIRM_SENT[message_type]:
            dead_confirm = self._dead_confirm(queue_entry_id)
            if dead_confirm is not None:
                self._dead_letter_gated(queue_entry_id, dead_confirm.last_error)

        logger.info(
            "Outbox message enqueued",
            extra={
                "message_id": str(message_id),
                "message_type": message_type.value,
                "idempotency_key": idempotency_key,
            },
        )
        return message_id

    # Claim

    def claim(
        self,
        limit: int,
        lock_minutes: Optional[int] = None,
        message_id: Optional[UUID] = None,
    ) -> list[OutboxMessage]:
        """
        Atomically lock up to `limit` eligible messages for this worker.

        Each claim stamps locked_at and a fresh lock_token; the claim is
        committed before returning so other workers see the lock.
        """
        if lock_minutes is None:
            lock_minutes = settings.outbox_lock_minutes
        now = self.clock()
        lock_cutoff = now - timedelta(minutes=lock_minutes)

        candidate = aliased(OutboxMessage)
        confirm = aliased(OutboxMessage)
        confirm_pending = exists().where(
            confirm.queue_entry_id == candidate.queue_entry_id,
            confirm.message_type == MessageType.CONFIRM,
            confirm.status != OutboxStatus.SENT,
        )
        ordered = or_(
            candidate.message_type.not_in(gated_message_types()),
            candidate.queue_entry_id.is_(None),
            ~confirm_pending,
        )

        candidates = (
            select(candidate.id)
            .where(_claimable(candidate, now, lock_cutoff), ordered)
            .order_by(candidate.next_attempt_at, candidate.created_at)
            .limit(limit)
        )
        if message_id is not None:
            candidates = candidates.where(candidate.id == message_id)
        if self.session.get_bind().dialect.name == "postgresql":
            candidates = candidates.with_for_update(skip_locked=True)

        # Re-checked on the outer UPDATE so a row claimed concurrently is not taken twice
        lock_token = uuid4()
        claimed_ids = self.session.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.id.in_(candidates.scalar_subquery()),
                _claimable(OutboxMessage, now, lock_cutoff),
            )
            .values(locked_at=now, lock_token=lock_token)
            .returning(OutboxMessage.id)
            .execution_options(synchronize_session=False)
        ).scalars().all()
        self.session.commit()

        if not claimed_ids:
            return []

        messages = self.session.execute(
            select(OutboxMessage)
            .where(OutboxMessage.id.in_(claimed_ids))
            .order_by(OutboxMessage.next_attempt_at, OutboxMessage.created_at)
            .execution_options(populate_existing=True)
        ).scalars().all()

        logger.info(f"Claimed {len(messages)} outbox message(s)", extra={"lock_token": str(lock_token)})
        return list(messages)

    # Send

    def send_claimed(self, message: OutboxMessage) -> DeliveryResult:
        """
        Run one delivery attempt for a message this worker has claimed.

        Every bookkeeping write is guarded by the claim's lock token, so a
        message is never counted twice for one attempt.
        """
        if not message.body or not message.to_phone:
            self._mark_dead(message, MISSING_CONTENT)
            return DeliveryResult(message.id, DeliveryStatus.DEAD, MISSING_CONTENT)

        if self._is_opted_out(message.to_phone):
            self._mark_dead(message, OPTED_OUT)
            return DeliveryResult(message.id, DeliveryStatus.DEAD, OPTED_OUT)

        rate_limit = self.limiter.check(
            delivery_rules(message.to_phone, self._location_id(message)),
            endpoint="sms_delivery",
            fail_open=False,
            context={"message_id": str(message.id)},
        )
        if not rate_limit.allowed:
            self._requeue(message, rate_limit.retry_after_seconds)
            return DeliveryResult(message.id, DeliveryStatus.REQUEUED, RATE_LIMITED)

        try:
            result = self.provider.send(message.to_phone, message.body)
        except Exception as e:
            logger.error(
                f"SMS provider raised: {e}",
                extra={"message_id": str(message.id)},
                exc_info=True,
            )
            result = None
            error = str(e) or "Unknown error"
        else:
            error = result.error or "Provider send failed"

        if result is not None and result.ok:
            self._mark_sent(message, result.provider_message_id)
            return DeliveryResult(message.id, DeliveryStatus.SENT)

        status = self._mark_failed(message, error)
        return DeliveryResult(message.id, status, error)

    def deliver(self, message_ids: Iterable[UUID]) -> list[DeliveryResult]:
        """
        Immediately attempt the given messages, typically right after the
        transition that enqueued them committed.

        Never raises; anything not delivered here is left for the sweep.
        """
        results = []
        for message_id in message_ids:
            try:
                claimed = self.claim(limit=1, message_id=message_id)
                if not claimed:
                    results.append(DeliveryResult(message_id, DeliveryStatus.SKIPPED))
                    continue
                results.append(self.send_claimed(claimed[0]))
            except Exception as e:
                self.session.rollback()
                logger.error(
                    f"Immediate delivery failed: {e}",
                    extra={"message_id": str(message_id)},
                    exc_info=True,
                )
        return results

    def sweep(self, limit: Optional[int] = None) -> list[DeliveryResult]:
        """
        Claim due messages and attempt each one.

        A message whose attempt raises keeps its lock until it expires and
        does not stop the rest of the batch.
        """
        results = []
        for message in self.claim(clamp_sweep_limit(limit)):
            message_id = message.id
            try:
                results.append(self.send_claimed(message))
            except Exception as e:
                self.session.rollback()
                logger.error(
                    f"Sweep delivery failed: {e}",
                    extra={"message_id": str(message_id)},
                    exc_info=True,
                )
        return results

    # Dead letters

    def list_dead(self, limit: int = 50) -> list[OutboxMessage]:
        return list(
            self.session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.DEAD)
                .order_by(OutboxMessage.updated_at.desc())
                .limit(limit)
            ).scalars().all()
        )

    def retry_dead(self, message_id: UUID) -> OutboxMessage:
        """
        Put a dead message back in line with a fresh retry budget.

        Retrying a confirmation also requeues the next/serving messages that
        died with it. A next/serving message cannot be retried on its own
        while its confirmation is still dead.

        Raises:
            NotFoundError: No such message
            ConflictError: Message is not dead, or its confirmation is
        """
        message = self.get(message_id)
        if (
            message.queue_entry_id is not None
            and REQUIRES_CONFIRM_SENT[message.message_type]
            and self._dead_confirm(message.queue_entry_id) is not None
        ):
            raise ConflictError(
                "Confirmation for this entry is dead; retry it first",
                details={"code": "confirm_dead"},
            )

        reset = (
            update(OutboxMessage)
            .where(OutboxMessage.status == OutboxStatus.DEAD)
            .values(
                status=OutboxStatus.QUEUED,
                attempt_count=0,
                next_attempt_at=self.clock(),
                locked_at=None,
                lock_token=None,
                last_error=None,
            )
            .returning(OutboxMessage.id)
            .execution_options(synchronize_session=False)
        )
        reset_id = self.session.execute(
            reset.where(OutboxMessage.id == message_id)
        ).scalar_one_or_none()

        if reset_id is None:
            self.session.rollback()
            raise ConflictError(
                f"Outbox message is {message.status.value}, not dead",
                details={"status": message.status.value},
            )

        requeued = []
        if message.message_type == MessageType.CONFIRM and message.queue_entry_id is not None:
            requeued = self.session.execute(
                reset.where(
                    OutboxMessage.queue_entry_id == message.queue_entry_id,
                    OutboxMessage.message_type.in_(gated_message_types()),
                )
            ).scalars().all()

        self.session.commit()
        logger.info(
            "Dead outbox message requeued",
            extra={"message_id": str(message_id), "dependents_requeued": len(requeued)},
        )
        return self.get(message_id)

    def get(self, message_id: UUID) -> OutboxMessage:
        """Fresh copy of one message."""
        message = self.session.execute(
            select(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if message is None:
            raise NotFoundError("Outbox message", str(message_id))
        return message

    # Bookkeeping

    def _is_opted_out(self, phone: str) -> bool:
        return self.session.execute(
            select(exists().where(SmsOptOut.phone_e164 == phone))
        ).scalar()

    def _location_id(self, message: OutboxMessage) -> Optional[UUID]:
        if message.queue_entry_id is None:
            return None
        return self.session.execute(
            select(Queue.location_id)
            .join(QueueEntry, QueueEntry.queue_id == Queue.id)
            .where(QueueEntry.id == message.queue_entry_id)
        ).scalar_one_or_none()

    def _dead_confirm(self, queue_entry_id: UUID) -> Optional[OutboxMessage]:
        return self.session.execute(
            select(OutboxMessage).where(
                OutboxMessage.queue_entry_id == queue_entry_id,
                OutboxMessage.message_type == MessageType.CONFIRM,
                OutboxMessage.status == OutboxStatus.DEAD,
            )
        ).scalars().first()

    def _dead_letter_gated(self, queue_entry_id: UUID, reason: Optional[str]) -> int:
        """
        Dead-letter the entry's undelivered next/serving messages, which can
        never be claimed while the confirmation is dead. Does not commit.
        """
        dead_ids = self.session.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.queue_entry_id == queue_entry_id,
                OutboxMessage.message_type.in_(gated_message_types()),
                OutboxMessage.status.in_(CLAIMABLE_STATUSES),
            )
            .values(
                status=OutboxStatus.DEAD,
                next_attempt_at=self.clock(),
                locked_at=None,
                lock_token=None,
                last_error=reason,
            )
            .returning(OutboxMessage.id)
            .execution_options(synchronize_session=False)
        ).scalars().all()
        if dead_ids:
            logger.warning(
                f"Dead-lettered {len(dead_ids)} message(s) behind a dead confirmation: {reason}",
                extra={"queue_entry_id": str(queue_entry_id)},
            )
        return len(dead_ids)

    def _finish(self, message: OutboxMessage, **values) -> bool:
        """
        Apply post-attempt values and release the lock, if we still hold it.

        A confirmation going dead takes the entry's held-back messages with
        it in the same transaction.
        """
        result = self.session.execute(
            update(OutboxMessage)
            .where(OutboxMessage.id == message.id, OutboxMessage.lock_token == message.lock_token)
            .values(locked_at=None, lock_token=None, **values)
            .execution_options(synchronize_session=False)
        )
        if (
            result.rowcount
            and values.get("status") == OutboxStatus.DEAD
            and message.message_type == MessageType.CONFIRM
            and message.queue_entry_id is not None
        ):
            self._dead_letter_gated(message.queue_entry_id, values.get("last_error"))
        self.session.commit()
        if result.rowcount == 0:
            logger.warning(
                "Outbox lock lost before bookkeeping",
                extra={"message_id": str(message.id), "lock_token": str(message.lock_token)},
            )
            return False
        return True

    def _mark_sent(self, message: OutboxMessage, provider_message_id: Optional[str]) -> None:
        now = self.clock()
        self._finish(
            message,
            status=OutboxStatus.SENT,
            provider_message_id=provider_message_id,
            sent_at=now,
            next_attempt_at=now,
            last_error=None,
        )
        logger.info(
            "Outbox message sent",
            extra={"message_id": str(message.id), "provider_message_id": provider_message_id},
        )

    def _mark_failed(self, message: OutboxMessage, error: str) -> DeliveryStatus:
        now = self.clock()
        attempt_count = message.attempt_count + 1
        is_dead = attempt_count >= settings.outbox_max_attempts
        next_attempt_at = now if is_dead else now + timedelta(seconds=backoff_delay_seconds(attempt_count))

        self._finish(
            message,
            status=OutboxStatus.DEAD if is_dead else OutboxStatus.FAILED,
            attempt_count=attempt_count,
            next_attempt_at=next_attempt_at,
            last_error=error,
        )

        if is_dead:
            logger.error(
                "Outbox message dead-lettered after retries",
                extra={"message_id": str(message.id), "attempt_count": attempt_count, "error": error},
            )
            return DeliveryStatus.DEAD

        logger.warning(
            "Outbox send failed, will retry",
            extra={
                "message_id": str(message.id),
                "attempt_count": attempt_count,
                "next_attempt_at": next_attempt_at.isoformat(),
                "error": error,
            },
        )
        return DeliveryStatus.FAILED

    def _mark_dead(self, message: OutboxMessage, reason: str) -> None:
        self._finish(
            message,
            status=OutboxStatus.DEAD,
            next_attempt_at=self.clock(),
            last_error=reason,
        )
        logger.warning(
            f"Outbox message dead-lettered: {reason}",
            extra={"message_id": str(message.id)},
        )

    def _requeue(self, message: OutboxMessage, retry_after_seconds: int) -> None:
        next_attempt_at = self.clock() + timedelta(seconds=retry_after_seconds)
        self._finish(
            message,
            status=OutboxStatus.QUEUED,
            next_attempt_at=next_attempt_at,
            last_error=RATE_LIMITED,
        )
        logger.warning(
            "Outbox message requeued by rate limit",
            extra={
                "message_id": str(message.id),
                "next_attempt_at": next_attempt_at.isoformat(),
            },
        )
