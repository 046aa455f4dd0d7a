"""BI Incidents API Schemas.

Schemas are organized by domain:
- base: common configuration and error responses
- incidents: incidents, workflow steps, tool validation, activity
- notifications: notification records, email queue, audit
"""

from .base import (
    ErrorDetail,
    ErrorResponse,
    IncidentBaseModel,
    TimestampMixin,
)
from .incidents import (
    ActivityLogResponse,
    AdvanceStepRequest,
    CancelWorkflowRequest,
    FailStepRequest,
    IncidentCreate,
    IncidentResolve,
    IncidentResponse,
    IncidentStatusUpdate,
    OperationResult,
    ResetWorkflowRequest,
    ToolCanUseResponse,
    ToolValidationResponse,
    WorkflowStatusResponse,
    WorkflowStepResponse,
)
from .notifications import (
    EmailAlertCreate,
    EmailAlertQueued,
    NotificationAuditResponse,
    NotificationResponse,
    NotificationStatsResponse,
    RetryResponse,
    SweepResponse,
)

__all__ = [
    # Base
    "IncidentBaseModel",
    "TimestampMixin",
    "ErrorDetail",
    "ErrorResponse",
    # Incidents
    "IncidentCreate",
    "IncidentResponse",
    "IncidentResolve",
    "IncidentStatusUpdate",
    "OperationResult",
    # Workflow
    "WorkflowStepResponse",
    "WorkflowStatusResponse",
    "AdvanceStepRequest",
    "FailStepRequest",
    "CancelWorkflowRequest",
    "ResetWorkflowRequest",
    # Tools
    "ToolValidationResponse",
    "ToolCanUseResponse",
    # Activity
    "ActivityLogResponse",
    # Notifications
    "EmailAlertCreate",
    "EmailAlertQueued",
    "NotificationResponse",
    "NotificationAuditResponse",
    "NotificationStatsResponse",
    "RetryResponse",
    "SweepResponse",
]
