"""SQLAlchemy ORM models for BI Incidents."""

from .base import Base, TimestampMixin, UUIDMixin
from .models import (
    # Enums
    IncidentStatus,
    NotificationStatus,
    NotificationType,
    QueuePriority,
    QueueStatus,
    RecipientType,
    SeverityLevel,
    StepStatus,
    # Incidents
    Incident,
    WorkflowStep,
    # Notifications
    EmailAlertQueueEntry,
    FacilityNotificationConfig,
    NotificationAuditLog,
    NotificationRecord,
    # Activity
    ActivityLog,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    # Enums
    "SeverityLevel",
    "IncidentStatus",
    "StepStatus",
    "NotificationType",
    "NotificationStatus",
    "QueueStatus",
    "QueuePriority",
    "RecipientType",
    # Incidents
    "Incident",
    "WorkflowStep",
    # Notifications
    "NotificationRecord",
    "EmailAlertQueueEntry",
    "NotificationAuditLog",
    "FacilityNotificationConfig",
    # Activity
    "ActivityLog",
]
