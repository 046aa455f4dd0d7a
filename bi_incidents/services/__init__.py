"""Business logic services for BI Incidents."""

from .audit import AuditService
from .incident_service import (
    ChangeEvent,
    FacilityDirectory,
    IncidentService,
    StaticFacilityDirectory,
    ToolValidationResult,
)
from .incident_store import CreateIncidentParams, IncidentStore
from .notification_dispatch import (
    EmailChannel,
    EmailSender,
    NotificationDispatch,
    NotificationStats,
    SweepResult,
    WebhookChannel,
)
from .notification_router import NotificationConfig, NotificationMessage, NotificationRouter
from .notification_service import NotificationService
from .numbering import IncidentNumbering
from .realtime import EventBroadcaster
from .workflow_engine import WorkflowEngine, WorkflowStatusInfo

__all__ = [
    # Facade
    "IncidentService",
    "FacilityDirectory",
    "StaticFacilityDirectory",
    "ToolValidationResult",
    "ChangeEvent",
    # Incidents
    "IncidentStore",
    "CreateIncidentParams",
    "IncidentNumbering",
    # Workflow
    "WorkflowEngine",
    "WorkflowStatusInfo",
    # Notifications
    "NotificationRouter",
    "NotificationConfig",
    "NotificationMessage",
    "NotificationDispatch",
    "NotificationService",
    "NotificationStats",
    "SweepResult",
    "EmailChannel",
    "EmailSender",
    "WebhookChannel",
    # Support
    "AuditService",
    "EventBroadcaster",
]
