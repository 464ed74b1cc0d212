"""
Outbox message model - durable record of every outbound SMS attempt.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import (
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Index,
    Enum as SQLEnum,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base, enum_values


class MessageType(str, enum.Enum):
    """Notification kinds; STAFF covers ad hoc messages typed by employees."""
    CONFIRM = "confirm"
    NEXT = "next"
    SERVING = "serving"
    CANCEL_ACK = "cancel_ack"
    STAFF = "staff"


# Which message types may only go out once the entry's confirmation is sent.
# Every MessageType must appear here.
REQUIRES_CONFIRM_SENT: dict[MessageType, bool] = {
    MessageType.CONFIRM: False,
    MessageType.NEXT: True,
    MessageType.SERVING: True,
    MessageType.CANCEL_ACK: False,
    MessageType.STAFF: False,
}


def gated_message_types() -> list[MessageType]:
    """Message types held back until the entry's confirm message is sent."""
    return [message_type for message_type, gated in REQUIRES_CONFIRM_SENT.items() if gated]


class OutboxStatus(str, enum.Enum):
    """Delivery status; sent and dead are terminal, failed awaits retry."""
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"


CLAIMABLE_STATUSES = (OutboxStatus.QUEUED, OutboxStatus.FAILED)


class OutboxMessage(Base):
    """
    Outbox message entity.

    idempotency_key is globally unique so re-enqueueing the same logical
    notification is a no-op. A claim stamps locked_at and a fresh lock_token;
    bookkeeping after the send attempt is guarded by that token.
    """
    __tablename__ = "sms_outbox"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    # Scope
    queue_entry_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("queue_entries.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    message_type: Mapped[MessageType] = mapped_column(
        SQLEnum(MessageType, name="outbox_message_type", values_callable=enum_values),
        nullable=False,
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    # Content
    to_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Delivery state
    status: Mapped[OutboxStatus] = mapped_column(
        SQLEnum(OutboxStatus, name="outbox_status", values_callable=enum_values),
        nullable=False,
        default=OutboxStatus.QUEUED,
        index=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lock_token: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider result
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_sms_outbox_due", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<OutboxMessage(id={self.id}, type={self.message_type}, status={self.status}, attempts={self.attempt_count})>"
