"""Pydantic schemas for notification data validation."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from components.notification.models import Channel, NotificationStatus


class NotificationTemplate(BaseModel):
    """Schema for template response."""
    id: int
    name: str
    channel: Channel
    subject: str
    body: str
    schedule_offset: int
    active: bool

    class Config:
        from_attributes = True


class NotificationRequest(BaseModel):
    """Schema for scheduling one notification."""
    installment_id: int = Field(..., gt=0)
    template_id: int = Field(..., gt=0)
    channel: Channel
    recipient: str = Field(..., min_length=1)
    scheduled_for: Optional[datetime] = None


class NotificationTestRequest(BaseModel):
    """Schema for a direct provider test message."""
    channel: Channel
    recipient: str = Field(..., min_length=1)
    subject: str = ""
    body: str = Field(..., min_length=1)


class NotificationLog(BaseModel):
    """Schema for notification log response."""
    id: int
    installment_id: int
    template_id: int
    channel: Channel
    recipient: str
    subject: str
    body: str
    status: NotificationStatus
    scheduled_for: datetime
    attempts: int
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DrainResult(BaseModel):
    """Outcome counts of one pending-queue drain."""
    processed: int = 0
    sent: int = 0
    failed: int = 0


class ReminderPassResult(BaseModel):
    """Outcome counts of one reminder pass."""
    templates: int = 0
    matched: int = 0
    scheduled: int = 0
    skipped: int = 0
    errors: int = 0
