from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, Index, Enum as SQLEnum
import enum

from ..core.database import Base
from ..core.security import UserRole


class NotificationCategory(str, enum.Enum):
    APPOINTMENT = "appointment"
    PRESCRIPTION = "prescription"
    PAYMENT = "payment"
    SYSTEM = "system"
    REMINDER = "reminder"
    EMERGENCY = "emergency"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)

    recipient_id = Column(Integer, nullable=False)
    recipient_kind = Column(
        SQLEnum(UserRole, values_callable=_values, native_enum=False, length=10),
        nullable=False,
    )

    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    category = Column(
        SQLEnum(NotificationCategory, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    priority = Column(
        SQLEnum(NotificationPriority, values_callable=_values, native_enum=False, length=10),
        nullable=False,
        default=NotificationPriority.MEDIUM,
    )

    # Read tracking
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)

    action_url = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "recipient_kind", "is_read"),
        Index("ix_notifications_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, recipient={self.recipient_kind}:{self.recipient_id}, title='{self.title}')>"
