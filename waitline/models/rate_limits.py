"""
Rate limit bucket model - windowed counters shared by every worker.
"""
from datetime import datetime
from uuid import uuid4, UUID

from sqlalchemy import String, Integer, BigInteger, DateTime, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base


class RateLimitBucket(Base):
    """
    Rate limit bucket entity.

    One row per (bucket_key, window_seconds, window_start). Windows are
    epoch-aligned, so a new window simply lands on a new row and old rows are
    swept by the cleanup job.
    """
    __tablename__ = "rate_limit_buckets"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    bucket_key: Mapped[str] = mapped_column(String(255), nullable=False)
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    window_start: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Epoch seconds at which the window opened",
    )
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reset_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "bucket_key",
            "window_seconds",
            "window_start",
            name="uniq_rate_limit_bucket_window",
        ),
    )

    def __repr__(self) -> str:
        return f"<RateLimitBucket(key={self.bucket_key}, window={self.window_seconds}, count={self.count})>"
