"""
Location and Queue models - physical sites and their waiting lines.
"""
from datetime import datetime, timezone
from uuid import uuid4, UUID

from sqlalchemy import String, Boolean, DateTime, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base


DEFAULT_QUEUE_CODE = "default"


class Location(Base):
    """
    Location entity - one physical site.
    Locations sharing an airport_code form the grouping entries may move within.
    """
    __tablename__ = "locations"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    airport_code: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("airport_code", "code", name="uniq_location_code_per_airport"),
    )

    def __repr__(self) -> str:
        return f"<Location(id={self.id}, {self.airport_code}/{self.code})>"


class Queue(Base):
    """
    Queue entity - the ordered waiting line at a location.
    """
    __tablename__ = "queues"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    location_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("locations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=DEFAULT_QUEUE_CODE,
    )
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("location_id", "code", name="uniq_queue_code_per_location"),
    )

    def __repr__(self) -> str:
        return f"<Queue(id={self.id}, location={self.location_id}, code={self.code})>"
