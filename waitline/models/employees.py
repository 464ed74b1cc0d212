"""
Employee profile model - staff authorization record.
"""
from datetime import datetime, timezone
from uuid import UUID
import enum

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from waitline.lib.db import Base, enum_values


class EmployeeRole(str, enum.Enum):
    """Staff role enumeration."""
    EMPLOYEE = "employee"
    ADMIN = "admin"


class EmployeeProfile(Base):
    """
    Employee profile - keyed by the identity provider's user id.
    Only open profiles may operate on queues.
    """
    __tablename__ = "employee_profiles"

    user_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
    )
    role: Mapped[EmployeeRole] = mapped_column(
        SQLEnum(EmployeeRole, name="employee_role", values_callable=enum_values),
        nullable=False,
        default=EmployeeRole.EMPLOYEE,
    )
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<EmployeeProfile(user_id={self.user_id}, role={self.role}, open={self.is_open})>"
