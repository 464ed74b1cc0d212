"""
Queue entry model - one customer's place in one queue.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4, UUID
import enum
import secrets

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    ForeignKey,
    Index,
    Enum as SQLEnum,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base, enum_values


class QueueEntryStatus(str, enum.Enum):
    """Queue entry lifecycle status."""
    WAITING = "waiting"
    SERVING = "serving"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


ACTIVE_STATUSES = (QueueEntryStatus.WAITING, QueueEntryStatus.SERVING)


class CustomerType(str, enum.Enum):
    """Priority class of a queue entry."""
    PAYING = "paying"
    PRIORITY_PASS = "priority_pass"


def generate_public_token() -> str:
    return secrets.token_urlsafe(16)


class QueueEntry(Base):
    """
    Queue entry entity.

    Mutated only through the queue engine's guarded transitions.
    At most one waiting/serving entry may exist per (customer, queue);
    the partial unique index below is what enforces it under concurrent joins.
    """
    __tablename__ = "queue_entries"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    public_token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        default=generate_public_token,
    )

    # Ownership
    queue_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("queues.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    consent_version_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("consent_versions.id", ondelete="RESTRICT"),
        nullable=True,
    )

    # Ordering
    status: Mapped[QueueEntryStatus] = mapped_column(
        SQLEnum(QueueEntryStatus, name="queue_entry_status", values_callable=enum_values),
        nullable=False,
        default=QueueEntryStatus.WAITING,
        index=True,
    )
    customer_type: Mapped[CustomerType] = mapped_column(
        SQLEnum(CustomerType, name="customer_type", values_callable=enum_values),
        nullable=False,
    )
    sort_key: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="FIFO position within (queue, customer_type)",
    )
    service_label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Transition timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    served_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    no_show_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index(
            "uniq_active_entry_per_customer_per_queue",
            "customer_id",
            "queue_id",
            unique=True,
            postgresql_where=text("status IN ('waiting', 'serving')"),
            sqlite_where=text("status IN ('waiting', 'serving')"),
        ),
        Index("ix_queue_entries_line_order", "queue_id", "status", "customer_type", "sort_key"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return f"<QueueEntry(id={self.id}, status={self.status}, type={self.customer_type}, sort_key={self.sort_key})>"
