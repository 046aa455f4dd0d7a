"""Incident, workflow and tool validation schemas."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from ..models import IncidentStatus, SeverityLevel, StepStatus
from .base import IncidentBaseModel, TimestampMixin


# =============================================================================
# INCIDENTS
# =============================================================================


class IncidentCreate(IncidentBaseModel):
    """Payload for recording a BI failure."""

    failure_date: datetime | None = None
    affected_tools_count: int
    affected_batch_ids: list[str]
    failure_reason: str | None = None
    severity_level: SeverityLevel = SeverityLevel.MEDIUM
    resolution_deadline: datetime | None = None
    bi_test_result_id: UUID | None = None
    estimated_impact: dict[str, Any] | None = None
    detected_by_operator_id: UUID | None = Field(
        default=None,
        description="Defaults to the operator making the request",
    )


class IncidentResponse(IncidentBaseModel, TimestampMixin):
    """Full incident record."""

    id: UUID
    facility_id: UUID
    incident_number: str
    bi_test_result_id: UUID | None = None
    failure_date: datetime
    detected_by_operator_id: UUID
    affected_tools_count: int
    affected_batch_ids: list[str]
    failure_reason: str | None = None
    severity_level: SeverityLevel
    status: IncidentStatus
    estimated_impact: dict[str, Any] | None = None
    regulatory_notification_required: bool
    regulatory_notification_sent: bool
    regulatory_notification_date: datetime | None = None
    resolution_deadline: datetime | None = None
    resolution_notes: str | None = None
    resolved_by_operator_id: UUID | None = None
    resolved_at: datetime | None = None
    updated_by_operator_id: UUID | None = None
    version: int


class IncidentResolve(IncidentBaseModel):
    notes: str = Field(..., min_length=1)


class IncidentStatusUpdate(IncidentBaseModel):
    status: IncidentStatus


class OperationResult(IncidentBaseModel):
    """Boolean outcome of a mutation."""

    success: bool
    message: str | None = None


# =============================================================================
# WORKFLOW
# =============================================================================


class WorkflowStepResponse(IncidentBaseModel):
    id: UUID
    incident_id: UUID
    step_name: str
    position: int
    status: StepStatus
    assigned_operator_id: UUID | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    notes: str | None = None
    version: int


class WorkflowStatusResponse(IncidentBaseModel):
    """Aggregate progress of an incident's remediation workflow."""

    current_step: WorkflowStepResponse | None = None
    overall_status: Literal["active", "paused", "completed", "cancelled"]
    completed_steps: int
    total_steps: int
    progress: float
    estimated_completion: datetime | None = None


class AdvanceStepRequest(IncidentBaseModel):
    step_id: UUID
    notes: str | None = None
    expected_version: int | None = Field(
        default=None,
        description="Incident version the caller last saw; mismatches are rejected",
    )


class FailStepRequest(IncidentBaseModel):
    step_id: UUID
    notes: str = Field(..., min_length=1)


class CancelWorkflowRequest(IncidentBaseModel):
    reason: str = Field(..., min_length=1)


class ResetWorkflowRequest(IncidentBaseModel):
    reason: str | None = None


# =============================================================================
# TOOLS
# =============================================================================


class ToolValidationResponse(IncidentBaseModel):
    tool_id: str
    can_use: bool
    requires_immediate_action: bool
    validation_result: Literal[
        "approved", "quarantine_breach", "exposure_window", "pending_review"
    ]


class ToolCanUseResponse(IncidentBaseModel):
    tool_id: str
    can_use: bool


# =============================================================================
# ACTIVITY
# =============================================================================


class ActivityLogResponse(IncidentBaseModel):
    id: UUID
    facility_id: UUID
    incident_id: UUID | None = None
    operator_id: UUID | None = None
    activity_type: str
    message: str
    details: dict[str, Any] = {}
    created_at: datetime
