"""
Consent version model - externally managed, immutable consent texts.
"""
from datetime import datetime, timezone
from uuid import uuid4, UUID

from sqlalchemy import String, Integer, Boolean, DateTime, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base


class ConsentVersion(Base):
    """
    Consent version entity. Joins cite one; this service never edits them.
    """
    __tablename__ = "consent_versions"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="e.g. queue_join_consent_bodywork",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("key", "version", name="uniq_consent_key_version"),
    )

    def __repr__(self) -> str:
        return f"<ConsentVersion(key={self.key}, v={self.version}, active={self.is_active})>"
