"""Notification and email queue schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import EmailStr, Field

from ..models import (
    NotificationStatus,
    NotificationType,
    QueuePriority,
    RecipientType,
    SeverityLevel,
)
from .base import IncidentBaseModel, TimestampMixin


class EmailAlertCreate(IncidentBaseModel):
    """Queue an email alert for the background sweep."""

    recipient_email: EmailStr
    recipient_type: RecipientType
    subject: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)
    priority: QueuePriority = QueuePriority.MEDIUM
    incident_id: UUID | None = None
    scheduled_for: datetime | None = Field(
        default=None,
        description="Defaults to now plus the configured notification delay",
    )


class EmailAlertQueued(IncidentBaseModel):
    id: UUID
    scheduled_for: datetime


class NotificationResponse(IncidentBaseModel, TimestampMixin):
    id: UUID
    incident_id: UUID
    facility_id: UUID
    message_type: NotificationType
    severity: SeverityLevel
    recipients: list[str]
    channels: list[str]
    subject: str
    body: str
    status: NotificationStatus
    retry_count: int
    max_retries: int
    sent_at: datetime | None = None
    last_error: str | None = None


class NotificationAuditResponse(IncidentBaseModel):
    id: UUID
    notification_id: UUID
    action: str
    details: str | None = None
    user_id: UUID | None = None
    timestamp: datetime


class NotificationStatsResponse(IncidentBaseModel):
    total_sent: int
    total_failed: int
    total_queued: int
    success_rate: float


class RetryResponse(IncidentBaseModel):
    retried: int


class SweepResponse(IncidentBaseModel):
    """Summary of one pass over the email queue."""

    processed: int
    sent: int
    failed: int
    requeued: int
