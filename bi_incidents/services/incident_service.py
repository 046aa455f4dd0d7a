"""
Incident Service: single entry point for the BI failure workflow.

Composes the store, workflow engine, notification routing/dispatch and the
activity log, and owns the rules that span them:
- whether a new incident needs a regulatory notice now, later, or never
- tool validation against open incidents
- bridging change events to notifications and live UI updates
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol, Sequence
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import DeliveryError, IncidentError, UnexpectedError
from ..models import ActivityLog, Incident, IncidentStatus, NotificationType, WorkflowStep
from .audit import AuditService
from .incident_store import CreateIncidentParams, IncidentStore
from .notification_dispatch import EmailSender, NotificationDispatch
from .notification_router import NotificationRouter, is_regulatory_notification_required
from .notification_service import NotificationService
from .realtime import (
    INCIDENT_CREATED,
    INCIDENT_DELETED,
    INCIDENT_UPDATED,
    EventBroadcaster,
    broadcaster as default_broadcaster,
)
from .workflow_engine import WorkflowEngine, WorkflowStatusInfo

logger = logging.getLogger(__name__)

ValidationResult = Literal["approved", "quarantine_breach", "exposure_window", "pending_review"]


# =============================================================================
# COLLABORATORS
# =============================================================================


class FacilityDirectory(Protocol):
    """Who is acting, and for which facility. Failures raise UnavailableError."""

    async def get_current_facility_id(self) -> UUID: ...

    async def get_current_user_id(self) -> UUID: ...


class StaticFacilityDirectory:
    """Fixed facility/operator context (jobs, tests, scripts)."""

    def __init__(self, facility_id: UUID, user_id: UUID):
        self._facility_id = facility_id
        self._user_id = user_id

    async def get_current_facility_id(self) -> UUID:
        return self._facility_id

    async def get_current_user_id(self) -> UUID:
        return self._user_id


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class ToolValidationResult:
    can_use: bool
    requires_immediate_action: bool
    validation_result: ValidationResult


@dataclass
class ChangeEvent:
    """A row change from the incident change feed."""
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None


def incident_snapshot(incident: Incident) -> dict[str, Any]:
    """The fields change-event consumers look at."""
    return {
        "id": str(incident.id),
        "facility_id": str(incident.facility_id),
        "incident_number": incident.incident_number,
        "status": IncidentStatus(incident.status).value,
        "severity_level": incident.severity_level.value,
        "regulatory_notification_sent": incident.regulatory_notification_sent,
        "version": incident.version,
    }


def tool_matches_batch(tool_id: str, batch_id: str) -> bool:
    return tool_id in batch_id or batch_id in tool_id


# =============================================================================
# INCIDENT SERVICE
# =============================================================================


class IncidentService:
    """Facade over incident storage, workflow and notifications."""

    def __init__(
        self,
        session: AsyncSession,
        directory: FacilityDirectory,
        settings: Settings | None = None,
        email_sender: EmailSender | None = None,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
        broadcaster: EventBroadcaster | None = None,
    ):
        self._session = session
        self._directory = directory
        self._settings = settings or get_settings()
        self.broadcaster = broadcaster or default_broadcaster

        self.audit = AuditService(session)
        self.store = IncidentStore(session, self._settings)
        self.workflow = WorkflowEngine(session, self.store, self.audit, self._settings)
        self.router = NotificationRouter(session, self._settings)
        self.dispatch = NotificationDispatch(
            session,
            self._settings,
            email_sender=email_sender,
            webhook_transport=webhook_transport,
            router=self.router,
            store=self.store,
            audit=self.audit,
        )
        self.notifications = NotificationService(
            session, self.router, self.dispatch, self.store, self._settings
        )

    async def _facility_id(self, facility_id: UUID | None = None) -> UUID:
        return facility_id or await self._directory.get_current_facility_id()

    async def _operator_id(self, operator_id: UUID | None = None) -> UUID:
        return operator_id or await self._directory.get_current_user_id()

    # =========================================================================
    # INCIDENTS
    # =========================================================================

    async def create_incident(self, params: CreateIncidentParams) -> Incident:
        """
        Record a BI failure.

        Flow:
        1. Persist the incident (numbered, status active)
        2. Initialize its remediation workflow
        3. Log activity
        4. Route notifications and publish incident-created

        Step 4 never fails the call: delivery problems are logged and left
        in the notification history for retry.
        """
        incident = await self.store.create_incident(params)
        await self.workflow.initialize_workflow(incident.id)

        await self.audit.log_activity(
            facility_id=incident.facility_id,
            incident_id=incident.id,
            operator_id=params.detected_by_operator_id,
            activity_type="incident_created",
            message=f"BI failure incident {incident.incident_number} created",
            details={
                "severity": incident.severity_level.value,
                "affected_tools_count": incident.affected_tools_count,
                "regulatory_notification_required": incident.regulatory_notification_required,
            },
        )

        await self.handle_change_event(ChangeEvent("INSERT", new=incident_snapshot(incident)))
        return incident

    async def get_incident(self, incident_id: UUID, facility_id: UUID | None = None) -> Incident:
        return await self.store.get_incident_or_raise(
            incident_id, await self._facility_id(facility_id)
        )

    async def get_active_incidents(self, facility_id: UUID | None = None) -> Sequence[Incident]:
        return await self.store.get_active_incidents(await self._facility_id(facility_id))

    async def get_incident_history(
        self,
        facility_id: UUID | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
    ) -> Sequence[Incident]:
        return await self.store.get_incident_history(
            await self._facility_id(facility_id), start_date, end_date, limit
        )

    async def resolve_incident(
        self,
        incident_id: UUID,
        notes: str,
        resolved_by: UUID | None = None,
    ) -> bool:
        facility_id = await self._facility_id()
        operator_id = await self._operator_id(resolved_by)
        incident = await self.store.get_incident_or_raise(incident_id, facility_id)
        before = incident_snapshot(incident)

        await self.store.resolve_incident(incident_id, operator_id, notes, facility_id)
        await self.audit.log_activity(
            facility_id=facility_id,
            incident_id=incident_id,
            operator_id=operator_id,
            activity_type="incident_resolved",
            message=f"Incident {incident.incident_number} resolved",
        )
        await self.handle_change_event(
            ChangeEvent("UPDATE", new=incident_snapshot(incident), old=before)
        )
        return True

    async def update_status(
        self,
        incident_id: UUID,
        new_status: IncidentStatus,
        notes: str | None = None,
    ) -> bool:
        facility_id = await self._facility_id()
        operator_id = await self._operator_id()
        incident = await self.store.get_incident_or_raise(incident_id, facility_id)
        before = incident_snapshot(incident)

        await self.store.update_status(
            incident_id, IncidentStatus(new_status), operator_id, notes, facility_id
        )
        await self.audit.log_activity(
            facility_id=facility_id,
            incident_id=incident_id,
            operator_id=operator_id,
            activity_type="status_changed",
            message=f"Status changed from {before['status']} to {IncidentStatus(new_status).value}",
        )
        await self.handle_change_event(
            ChangeEvent("UPDATE", new=incident_snapshot(incident), old=before)
        )
        return True

    async def close_incident(self, incident_id: UUID) -> bool:
        facility_id = await self._facility_id()
        operator_id = await self._operator_id()
        incident = await self.store.get_incident_or_raise(incident_id, facility_id)
        before = incident_snapshot(incident)

        await self.store.close_incident(incident_id, operator_id, facility_id)
        await self.audit.log_activity(
            facility_id=facility_id,
            incident_id=incident_id,
            operator_id=operator_id,
            activity_type="incident_closed",
            message=f"Incident {incident.incident_number} closed",
        )
        await self.handle_change_event(
            ChangeEvent("UPDATE", new=incident_snapshot(incident), old=before)
        )
        return True

    async def get_activity_log(
        self,
        facility_id: UUID | None = None,
        incident_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[ActivityLog]:
        return await self.audit.get_activity_log(
            await self._facility_id(facility_id), incident_id, limit, offset
        )

    # =========================================================================
    # WORKFLOW
    # =========================================================================

    async def _workflow_change(self, incident_id: UUID, mutate) -> bool:
        incident = await self.get_incident(incident_id)
        before = incident_snapshot(incident)
        result = await mutate()
        await self.handle_change_event(
            ChangeEvent("UPDATE", new=incident_snapshot(incident), old=before)
        )
        return result

    async def list_steps(self, incident_id: UUID) -> list[WorkflowStep]:
        await self.get_incident(incident_id)
        return await self.workflow.list_steps(incident_id)

    async def get_workflow_status(self, incident_id: UUID) -> WorkflowStatusInfo:
        await self.get_incident(incident_id)
        return await self.workflow.get_workflow_status(incident_id)

    async def advance_step(
        self,
        incident_id: UUID,
        step_id: UUID,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> bool:
        operator_id = await self._operator_id()
        return await self._workflow_change(
            incident_id,
            lambda: self.workflow.advance_step(
                incident_id, step_id, operator_id, notes, expected_version
            ),
        )

    async def fail_step(self, incident_id: UUID, step_id: UUID, notes: str) -> bool:
        operator_id = await self._operator_id()
        return await self._workflow_change(
            incident_id,
            lambda: self.workflow.fail_step(incident_id, step_id, operator_id, notes),
        )

    async def cancel_workflow(self, incident_id: UUID, reason: str) -> bool:
        operator_id = await self._operator_id()
        return await self._workflow_change(
            incident_id,
            lambda: self.workflow.cancel_workflow(incident_id, operator_id, reason),
        )

    async def reset_workflow(self, incident_id: UUID, reason: str | None = None) -> bool:
        operator_id = await self._operator_id()
        return await self._workflow_change(
            incident_id,
            lambda: self.workflow.reset_workflow(incident_id, operator_id, reason),
        )

    # =========================================================================
    # TOOL VALIDATION
    # =========================================================================

    async def validate_tool_for_use(self, tool_id: str, facility_id: UUID | None = None) -> bool:
        """
        Facility-wide lock: no tool may be used while any incident is open.

        Kept alongside validate_tool_use, which is tool specific; callers
        rely on either behavior.
        """
        active = await self.get_active_incidents(facility_id)
        if active:
            logger.info(
                f"Tool {tool_id} blocked: {len(active)} open BI failure incident(s)"
            )
        return not active

    async def validate_tool_use(self, tool_id: str) -> ToolValidationResult:
        """
        Classify a tool against open incidents.

        A tool id that overlaps an affected batch id (either contains the
        other) is a quarantine breach. Any other tool at a facility with an
        open incident is in the exposure window.
        """
        try:
            active = await self.get_active_incidents()

            if not active:
                return ToolValidationResult(True, False, "approved")

            if any(
                tool_matches_batch(tool_id, batch_id)
                for incident in active
                for batch_id in incident.affected_batch_ids
            ):
                return ToolValidationResult(False, True, "quarantine_breach")

            return ToolValidationResult(False, False, "exposure_window")

        except Exception as e:
            if isinstance(e, IncidentError) and not isinstance(e, UnexpectedError):
                raise
            logger.error(f"Tool validation for {tool_id} failed unexpectedly: {e}")

        # Fail safe: the tool cannot be used until someone reviews it
        return ToolValidationResult(False, True, "pending_review")

    # =========================================================================
    # CHANGE EVENTS
    # =========================================================================

    async def handle_change_event(self, event: ChangeEvent) -> None:
        """
        React to an incident row change.

        INSERT triggers new-incident notifications, an UPDATE into resolved
        triggers the resolution notice, and every event is republished for
        live UI updates. Errors are logged and never reach the event source.
        """
        try:
            if event.event_type == "INSERT" and event.new:
                await self._on_incident_created(event.new)
                await self.broadcaster.publish(INCIDENT_CREATED, event.new)
            elif event.event_type == "UPDATE" and event.new:
                await self._on_incident_updated(event.new, event.old or {})
                await self.broadcaster.publish(INCIDENT_UPDATED, event.new)
            elif event.event_type == "DELETE":
                await self.broadcaster.publish(INCIDENT_DELETED, event.old or {})
            else:
                logger.warning(f"Ignoring malformed change event: {event.event_type}")
        except Exception as e:
            logger.error(f"Error handling {event.event_type} change event: {e}")

    async def _on_incident_created(self, row: dict[str, Any]) -> None:
        incident = await self.store.get_incident_by_id(UUID(str(row["id"])))
        if incident is None:
            logger.warning(f"Change event for unknown incident {row.get('id')}")
            return
        await self._notify_new_incident(incident)

    async def _on_incident_updated(self, new: dict[str, Any], old: dict[str, Any]) -> None:
        became_resolved = (
            new.get("status") == IncidentStatus.RESOLVED.value
            and old.get("status") != IncidentStatus.RESOLVED.value
        )
        if not became_resolved:
            return
        try:
            await self.notifications.send_resolution_notification(UUID(str(new["id"])))
        except DeliveryError as e:
            logger.error(f"Resolution notification for {new.get('incident_number')} failed: {e}")

    async def _notify_new_incident(self, incident: Incident) -> None:
        """Regulatory notice now, or scheduled, plus the clinic manager notice."""
        config = await self.router.get_notification_config(incident.facility_id)

        try:
            already_notified = incident.regulatory_notification_sent or (
                await self.dispatch.has_notification(incident.id, NotificationType.REGULATORY)
            )
            if already_notified:
                logger.debug(f"Regulatory notice for {incident.incident_number} already handled")
            elif is_regulatory_notification_required(incident.severity_level, config):
                await self.notifications.notify_regulator(incident.id)
            elif (
                incident.regulatory_notification_required
                and config.auto_notification_enabled
                and not await self.dispatch.has_scheduled(
                    incident.id, NotificationType.REGULATORY
                )
            ):
                await self.dispatch.schedule_delayed_notification(
                    incident.id, incident.facility_id, config.notification_delay_minutes
                )
        except DeliveryError as e:
            logger.error(f"Regulatory notification for {incident.incident_number} failed: {e}")

        try:
            if not await self.dispatch.has_notification(
                incident.id, NotificationType.CLINIC_MANAGER
            ):
                await self.notifications.notify_clinic_manager(incident.id)
        except DeliveryError as e:
            logger.error(f"Clinic manager notification for {incident.incident_number} failed: {e}")
