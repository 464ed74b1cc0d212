"""
SMS compliance models - opt-out registry and inbound message log.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import String, Text, DateTime, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base


class SmsOptOut(Base):
    """
    Opt-out entity - phones that replied STOP. Checked before every send.
    """
    __tablename__ = "sms_opt_outs"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    phone_e164: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    opted_out_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<SmsOptOut(phone={self.phone_e164})>"


class SmsInbound(Base):
    """
    Inbound SMS entity - verbatim copy of every signed provider callback.
    """
    __tablename__ = "sms_inbound"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    from_phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    to_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    provider_message_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
    )
    raw: Mapped[Optional[dict]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<SmsInbound(from={self.from_phone}, sid={self.provider_message_id})>"
