"""
Workflow Engine: the remediation state machine for one incident.

Step lifecycle:
    pending -> in_progress -> completed
    pending | in_progress -> failed   (workflow paused)
    pending | in_progress -> skipped  (workflow cancelled)

Steps are strictly ordered by position. A step can only be completed once
every step before it is completed, so at most one step is ever in progress.

Every mutation touches the owning incident, which bumps its version
column. Two operators advancing the same incident concurrently therefore
collide on flush instead of silently overwriting each other.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import Settings, get_settings
from ..core.errors import ConcurrencyError, NotFoundError, ValidationError, with_retry
from ..models import Incident, IncidentStatus, StepStatus, WorkflowStep
from .audit import AuditService
from .incident_store import IncidentStore

logger = logging.getLogger(__name__)

OverallStatus = Literal["active", "paused", "completed", "cancelled"]

OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.IN_PROGRESS)
TERMINAL_INCIDENT_STATUSES = (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)


@dataclass
class WorkflowStatusInfo:
    """Aggregate progress of an incident's workflow."""
    incident_id: UUID
    current_step: WorkflowStep | None
    overall_status: OverallStatus
    completed_steps: int
    total_steps: int
    progress: float
    estimated_completion: datetime | None = None


def derive_overall_status(steps: Sequence[WorkflowStep]) -> OverallStatus:
    statuses = [s.status for s in steps]
    if statuses and all(s == StepStatus.COMPLETED for s in statuses):
        return "completed"
    if StepStatus.SKIPPED in statuses:
        return "cancelled"
    if StepStatus.FAILED in statuses:
        return "paused"
    return "active"


class WorkflowEngine:
    """Drives WorkflowStep state for incidents."""

    def __init__(
        self,
        session: AsyncSession,
        store: IncidentStore | None = None,
        audit: AuditService | None = None,
        settings: Settings | None = None,
    ):
        self._session = session
        self._settings = settings or get_settings()
        self._store = store or IncidentStore(session, self._settings)
        self._audit = audit or AuditService(session)

    # =========================================================================
    # STEP ACCESS
    # =========================================================================

    async def list_steps(self, incident_id: UUID) -> list[WorkflowStep]:
        """Steps in workflow order; empty when not initialized."""

        async def operation() -> list[WorkflowStep]:
            result = await self._session.execute(
                select(WorkflowStep)
                .where(WorkflowStep.incident_id == incident_id)
                .order_by(WorkflowStep.position)
            )
            return list(result.scalars().all())

        return await with_retry(
            operation,
            "get workflow steps",
            attempts=self._settings.store_retry_attempts,
            delay=self._settings.store_retry_delay_seconds,
        )

    async def _steps_or_raise(self, incident_id: UUID) -> list[WorkflowStep]:
        steps = await self.list_steps(incident_id)
        if not steps:
            raise NotFoundError(
                "No workflow steps found for incident",
                severity="high",
                context={"incident_id": str(incident_id)},
            )
        return steps

    async def initialize_workflow(self, incident_id: UUID) -> list[WorkflowStep]:
        """Create the configured step sequence; existing steps are returned as is."""
        existing = await self.list_steps(incident_id)
        if existing:
            return existing

        await self._store.get_incident_or_raise(incident_id)

        steps = [
            WorkflowStep(
                incident_id=incident_id,
                step_name=name,
                position=position,
                status=StepStatus.PENDING,
            )
            for position, name in enumerate(self._settings.workflow_step_names)
        ]
        self._session.add_all(steps)
        await self._flush("initialize workflow")

        logger.info(f"Initialized {len(steps)} workflow steps for incident {incident_id}")
        return steps

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def advance_step(
        self,
        incident_id: UUID,
        current_step_id: UUID,
        operator_id: UUID,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> bool:
        """
        Complete the current step and start the next one.

        On the last step only the completion happens. The first advance
        moves the incident from active to in_resolution; finishing the last
        step leaves resolution to an explicit resolve call.
        """
        incident = await self._store.get_incident_or_raise(incident_id)

        if expected_version is not None and incident.version != expected_version:
            raise ConcurrencyError(
                f"Version mismatch: expected v{expected_version}, "
                f"but incident is at v{incident.version}. "
                "The workflow was modified by another operator.",
                context={"incident_id": str(incident_id)},
            )

        steps = await self._steps_or_raise(incident_id)
        index = next((i for i, s in enumerate(steps) if s.id == current_step_id), None)
        if index is None:
            raise ValidationError(
                "Current step not found in workflow",
                severity="high",
                context={"step_id": str(current_step_id)},
            )

        if incident.status in TERMINAL_INCIDENT_STATUSES:
            raise ValidationError(
                f"Cannot advance workflow of a {incident.status.value} incident",
                code="INVALID_STATUS_TRANSITION",
            )

        current = steps[index]
        if current.status not in OPEN_STEP_STATUSES:
            raise ValidationError(
                f"Step '{current.step_name}' is already {current.status.value}",
                code="INVALID_STATUS_TRANSITION",
            )

        blocking = [s for s in steps[:index] if s.status != StepStatus.COMPLETED]
        if blocking:
            raise ValidationError(
                f"Step '{blocking[0].step_name}' must be completed before "
                f"'{current.step_name}'",
                code="STEP_OUT_OF_ORDER",
            )

        now = datetime.now(timezone.utc)
        current.status = StepStatus.COMPLETED
        current.started_at = current.started_at or now
        current.completed_at = now
        current.assigned_operator_id = operator_id
        if notes is not None:
            current.notes = notes

        next_step = steps[index + 1] if index + 1 < len(steps) else None
        if next_step and next_step.status == StepStatus.PENDING:
            next_step.status = StepStatus.IN_PROGRESS
            next_step.started_at = now
            next_step.assigned_operator_id = operator_id

        if incident.status == IncidentStatus.ACTIVE:
            incident.status = IncidentStatus.IN_RESOLUTION
        self._touch(incident, operator_id, now)

        await self._audit.log_activity(
            facility_id=incident.facility_id,
            incident_id=incident_id,
            operator_id=operator_id,
            activity_type="workflow_step_completed",
            message=f"Completed workflow step '{current.step_name}'",
            details={
                "step_id": str(current.id),
                "next_step": next_step.step_name if next_step else None,
            },
        )
        await self._flush("advance workflow step")

        logger.info(
            f"Incident {incident.incident_number}: step '{current.step_name}' "
            f"completed by {operator_id}"
        )
        return True

    async def fail_step(
        self,
        incident_id: UUID,
        step_id: UUID,
        operator_id: UUID,
        notes: str,
    ) -> bool:
        """Mark a step failed; the workflow is paused until reset."""
        incident = await self._store.get_incident_or_raise(incident_id)
        steps = await self._steps_or_raise(incident_id)

        step = next((s for s in steps if s.id == step_id), None)
        if step is None:
            raise ValidationError("Step not found in workflow", severity="high")
        if step.status not in OPEN_STEP_STATUSES:
            raise ValidationError(
                f"Step '{step.step_name}' is already {step.status.value}",
                code="INVALID_STATUS_TRANSITION",
            )

        now = datetime.now(timezone.utc)
        step.status = StepStatus.FAILED
        step.assigned_operator_id = operator_id
        step.notes = notes
        self._touch(incident, operator_id, now)

        await self._audit.log_activity(
            facility_id=incident.facility_id,
            incident_id=incident_id,
            operator_id=operator_id,
            activity_type="workflow_step_failed",
            message=f"Workflow step '{step.step_name}' failed: {notes}",
            details={"step_id": str(step.id)},
        )
        await self._flush("fail workflow step")

        logger.warning(
            f"Incident {incident.incident_number}: step '{step.step_name}' failed"
        )
        return True

    async def cancel_workflow(
        self,
        incident_id: UUID,
        cancelled_by: UUID,
        reason: str,
    ) -> bool:
        """
        Skip every open step and move the incident to `investigating`.

        This is the only way back out of in_resolution short of a reset.
        """
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")

        incident = await self._store.get_incident_or_raise(incident_id)
        if incident.status in TERMINAL_INCIDENT_STATUSES:
            raise ValidationError(
                f"Cannot cancel workflow of a {incident.status.value} incident",
                code="INVALID_STATUS_TRANSITION",
            )

        steps = await self._steps_or_raise(incident_id)
        open_steps = [s for s in steps if s.status in OPEN_STEP_STATUSES]
        if not open_steps:
            raise ValidationError("Workflow has no pending steps to cancel")

        for step in open_steps:
            step.status = StepStatus.SKIPPED
            step.notes = f"Workflow cancelled: {reason}"
            step.assigned_operator_id = cancelled_by

        now = datetime.now(timezone.utc)
        incident.status = IncidentStatus.INVESTIGATING
        incident.resolution_notes = (
            f"Workflow cancelled by operator {cancelled_by}. Reason: {reason}"
        )
        self._touch(incident, cancelled_by, now)

        await self._audit.log_activity(
            facility_id=incident.facility_id,
            incident_id=incident_id,
            operator_id=cancelled_by,
            activity_type="workflow_cancelled",
            message=f"Workflow cancelled: {reason}",
            details={"skipped_steps": len(open_steps)},
        )
        await self._flush("cancel workflow")

        logger.info(f"Workflow for incident {incident.incident_number} cancelled")
        return True

    async def reset_workflow(
        self,
        incident_id: UUID,
        reset_by: UUID,
        reason: str | None = None,
    ) -> bool:
        """Return every step to pending and the incident to active."""
        incident = await self._store.get_incident_or_raise(incident_id)
        if incident.status == IncidentStatus.CLOSED:
            raise ValidationError(
                "Cannot reset workflow of a closed incident",
                code="INVALID_STATUS_TRANSITION",
            )

        steps = await self._steps_or_raise(incident_id)
        step_notes = f"Workflow reset: {reason}" if reason else "Workflow reset"
        for step in steps:
            step.status = StepStatus.PENDING
            step.started_at = None
            step.completed_at = None
            step.assigned_operator_id = None
            step.notes = step_notes

        now = datetime.now(timezone.utc)
        incident.status = IncidentStatus.ACTIVE
        incident.resolution_notes = f"Workflow reset by operator {reset_by}. {reason or ''}".strip()
        incident.resolved_by_operator_id = None
        incident.resolved_at = None
        self._touch(incident, reset_by, now)

        await self._audit.log_activity(
            facility_id=incident.facility_id,
            incident_id=incident_id,
            operator_id=reset_by,
            activity_type="workflow_reset",
            message=step_notes,
        )
        await self._flush("reset workflow")

        logger.info(f"Workflow for incident {incident.incident_number} reset")
        return True

    # =========================================================================
    # STATUS
    # =========================================================================

    async def get_workflow_status(self, incident_id: UUID) -> WorkflowStatusInfo:
        steps = await self._steps_or_raise(incident_id)

        total = len(steps)
        completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
        overall = derive_overall_status(steps)

        current = next((s for s in steps if s.status == StepStatus.IN_PROGRESS), None)
        if current is None:
            current = next((s for s in steps if s.status == StepStatus.PENDING), steps[0])

        estimated = None
        if overall == "active" and current.started_at:
            estimated = current.started_at + timedelta(
                minutes=self._settings.workflow_step_estimate_minutes
            )

        return WorkflowStatusInfo(
            incident_id=incident_id,
            current_step=current,
            overall_status=overall,
            completed_steps=completed,
            total_steps=total,
            progress=round(completed / total * 100, 2),
            estimated_completion=estimated,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _touch(incident: Incident, operator_id: UUID, now: datetime) -> None:
        # updated_at always changes, so the version column is bumped on flush
        incident.updated_by_operator_id = operator_id
        incident.updated_at = now

    async def _flush(self, operation: str) -> None:
        try:
            await self._session.flush()
        except StaleDataError:
            raise ConcurrencyError(
                f"Workflow changed by another operator during {operation}",
                severity="high",
            )
