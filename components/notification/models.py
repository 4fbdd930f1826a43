"""Notification template and log models for the database."""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime, Enum, ForeignKey,
    UniqueConstraint, func,
)

from components.core.database import Base


class Channel(str, enum.Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class ScheduleOffset(enum.IntEnum):
    """Days relative to the due date. Negative fires before it."""
    BEFORE_D7 = -7
    BEFORE_D3 = -3
    BEFORE_D1 = -1
    AFTER_D1 = 1
    AFTER_D3 = 3
    AFTER_D7 = 7


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENDING = "sending"  # Claimed by a sender, provider call in flight
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class NotificationTemplate(Base):
    """Reminder text for one channel and one schedule offset."""
    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    channel = Column(
        Enum(Channel, native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
    )
    subject = Column(String(255), nullable=False, default="")  # Unused for WhatsApp
    body = Column(Text, nullable=False)
    schedule_offset = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class NotificationLog(Base):
    """A rendered notification and its delivery bookkeeping."""
    __tablename__ = "notification_logs"
    # (installment, template, calendar day) is the idempotence key
    __table_args__ = (
        UniqueConstraint(
            "installment_id", "template_id", "dedupe_date",
            name="uq_notification_installment_template_day",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    installment_id = Column(Integer, ForeignKey("loan_installments.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("notification_templates.id"), nullable=False)
    channel = Column(
        Enum(Channel, native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
    )
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False, default="")
    body = Column(Text, nullable=False)
    status = Column(
        Enum(NotificationStatus, native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
        default=NotificationStatus.PENDING,
        index=True,
    )
    scheduled_for = Column(DateTime, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    dedupe_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False)
