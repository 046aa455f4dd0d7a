"""
Incident Store: durable CRUD for BI failure incidents.

Every operation runs inside the store retry policy. Validation happens
before the retried block, so invalid input fails immediately and is never
retried. Transient storage failures are retried with linear backoff; each
write attempt runs in a savepoint so a failed flush can be retried.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import ConcurrencyError, NotFoundError, ValidationError, with_retry
from ..models import Incident, IncidentStatus, SeverityLevel
from .numbering import IncidentNumbering

logger = logging.getLogger(__name__)


MAX_AFFECTED_TOOLS = 10_000
MAX_FAILURE_REASON_LENGTH = 2_000
MAX_RESOLUTION_NOTES_LENGTH = 10_000
REGULATORY_TOOL_THRESHOLD = 10
HISTORY_MAX_YEARS = 5

OPEN_STATUSES = (IncidentStatus.ACTIVE, IncidentStatus.IN_RESOLUTION)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class CreateIncidentParams:
    """Input for recording a BI failure."""
    facility_id: UUID
    detected_by_operator_id: UUID
    affected_tools_count: int
    affected_batch_ids: list[str]
    failure_date: datetime | None = None
    failure_reason: str | None = None
    severity_level: SeverityLevel = SeverityLevel.MEDIUM
    resolution_deadline: datetime | None = None
    bi_test_result_id: UUID | None = None
    estimated_impact: dict[str, Any] | None = field(default=None)

    def __post_init__(self):
        try:
            self.severity_level = SeverityLevel(self.severity_level)
        except ValueError:
            raise ValidationError(f"Invalid severity level: {self.severity_level}")


def requires_regulatory_notification(
    severity: SeverityLevel, affected_tools_count: int
) -> bool:
    """High-impact failures must be disclosed to the health authority."""
    return (
        severity in (SeverityLevel.HIGH, SeverityLevel.CRITICAL)
        or affected_tools_count > REGULATORY_TOOL_THRESHOLD
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# VALIDATION
# =============================================================================


def validate_facility_id(facility_id: UUID | None) -> None:
    if not facility_id:
        raise ValidationError("Facility ID is required", code="MISSING_FACILITY_ID")


def validate_create_params(params: CreateIncidentParams) -> list[str]:
    """Validate creation input and return the normalized batch ids."""
    validate_facility_id(params.facility_id)

    if not params.detected_by_operator_id:
        raise ValidationError("Detecting operator is required")

    count = params.affected_tools_count
    if not isinstance(count, int) or isinstance(count, bool) or count <= 0:
        raise ValidationError(
            "Affected tools count must be a positive integer",
            context={"affected_tools_count": count},
        )
    if count > MAX_AFFECTED_TOOLS:
        raise ValidationError(
            f"Affected tools count cannot exceed {MAX_AFFECTED_TOOLS}",
            context={"affected_tools_count": count},
        )

    if not params.affected_batch_ids:
        raise ValidationError("At least one affected batch ID is required")

    batch_ids = []
    for batch_id in params.affected_batch_ids:
        if not isinstance(batch_id, str) or not batch_id.strip():
            raise ValidationError("Batch IDs must be non-empty strings")
        batch_ids.append(batch_id.strip())
    if len(set(batch_ids)) != len(batch_ids):
        raise ValidationError("Duplicate batch IDs are not allowed")

    if params.failure_reason and len(params.failure_reason) > MAX_FAILURE_REASON_LENGTH:
        raise ValidationError(
            f"Failure reason cannot exceed {MAX_FAILURE_REASON_LENGTH} characters"
        )

    return batch_ids


def validate_resolution_notes(notes: str | None) -> None:
    if notes and len(notes) > MAX_RESOLUTION_NOTES_LENGTH:
        raise ValidationError(
            f"Resolution notes cannot exceed {MAX_RESOLUTION_NOTES_LENGTH} characters"
        )


def validate_date_range(start: datetime | None, end: datetime | None) -> None:
    if start and end and _as_utc(start) > _as_utc(end):
        raise ValidationError("Start date must be before end date")

    if start:
        earliest = datetime.now(timezone.utc) - timedelta(days=365 * HISTORY_MAX_YEARS)
        if _as_utc(start) < earliest:
            raise ValidationError(
                f"Start date cannot be more than {HISTORY_MAX_YEARS} years in the past"
            )


# =============================================================================
# INCIDENT STORE
# =============================================================================


class IncidentStore:
    """Persistence for Incident rows, always scoped by facility."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        numbering: IncidentNumbering | None = None,
    ):
        self._session = session
        self._settings = settings or get_settings()
        self._numbering = numbering or IncidentNumbering(
            session, style=self._settings.incident_number_style
        )

    async def _retry(self, operation, operation_name: str):
        return await with_retry(
            operation,
            operation_name,
            attempts=self._settings.store_retry_attempts,
            delay=self._settings.store_retry_delay_seconds,
            backoff="linear",
        )

    async def _retry_write(self, operation, operation_name: str):
        """
        Retry a write with each attempt in its own savepoint.

        A failed flush rolls back only that attempt, so the session stays
        usable for the next one. Entering the savepoint flushes whatever the
        caller already had pending.
        """

        async def attempt():
            async with self._session.begin_nested():
                return await operation()

        return await self._retry(attempt, operation_name)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_incident(self, params: CreateIncidentParams) -> Incident:
        """
        Persist a new incident in `active` status.

        The regulatory flag is derived here; whether a notice is sent right
        away is decided by the notification policy in the service layer.
        """
        batch_ids = validate_create_params(params)

        incident = Incident(
            facility_id=params.facility_id,
            bi_test_result_id=params.bi_test_result_id,
            failure_date=_as_utc(params.failure_date or datetime.now(timezone.utc)),
            detected_by_operator_id=params.detected_by_operator_id,
            affected_tools_count=params.affected_tools_count,
            affected_batch_ids=batch_ids,
            failure_reason=params.failure_reason,
            severity_level=params.severity_level,
            status=IncidentStatus.ACTIVE,
            estimated_impact=params.estimated_impact,
            regulatory_notification_required=requires_regulatory_notification(
                params.severity_level, params.affected_tools_count
            ),
            regulatory_notification_sent=False,
            resolution_deadline=params.resolution_deadline,
        )

        async def operation() -> Incident:
            # Renumbered on every attempt since a rolled back savepoint frees the number
            incident.incident_number = await self._numbering.next_number(params.facility_id)
            self._session.add(incident)
            try:
                await self._session.flush()
            except IntegrityError as e:
                # Another writer took the same incident number
                raise ConcurrencyError(f"Failed to create incident: {e.orig}")
            return incident

        await self._retry_write(operation, "create incident")
        logger.info(
            f"Created BI failure incident {incident.incident_number} "
            f"for facility {params.facility_id} (severity={params.severity_level.value})"
        )
        return incident

    # =========================================================================
    # READ
    # =========================================================================

    async def get_active_incidents(self, facility_id: UUID) -> Sequence[Incident]:
        """Open incidents, most recent failure first."""
        validate_facility_id(facility_id)

        async def operation() -> Sequence[Incident]:
            result = await self._session.execute(
                select(Incident)
                .where(
                    Incident.facility_id == facility_id,
                    Incident.status.in_(OPEN_STATUSES),
                )
                .order_by(Incident.failure_date.desc(), Incident.created_at.desc())
            )
            return result.scalars().all()

        return await self._retry(operation, "get active incidents")

    async def get_incident_by_id(
        self, incident_id: UUID, facility_id: UUID | None = None
    ) -> Incident | None:
        """Returns None when the incident does not exist."""
        return await self._retry(
            lambda: self._load(incident_id, facility_id), "get incident"
        )

    async def get_incident_or_raise(
        self, incident_id: UUID, facility_id: UUID | None = None
    ) -> Incident:
        incident = await self.get_incident_by_id(incident_id, facility_id)
        return self._require(incident, incident_id)

    async def _load(
        self, incident_id: UUID, facility_id: UUID | None = None
    ) -> Incident | None:
        query = select(Incident).where(Incident.id == incident_id)
        if facility_id:
            query = query.where(Incident.facility_id == facility_id)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _require(incident: Incident | None, incident_id: UUID) -> Incident:
        if not incident:
            raise NotFoundError(
                f"Incident {incident_id} not found",
                context={"incident_id": str(incident_id)},
            )
        return incident

    async def get_incident_history(
        self,
        facility_id: UUID,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
    ) -> Sequence[Incident]:
        """All incidents for a facility in a date window, newest first."""
        validate_facility_id(facility_id)
        validate_date_range(start_date, end_date)

        async def operation() -> Sequence[Incident]:
            query = select(Incident).where(Incident.facility_id == facility_id)
            if start_date:
                query = query.where(Incident.failure_date >= _as_utc(start_date))
            if end_date:
                query = query.where(Incident.failure_date <= _as_utc(end_date))
            query = query.order_by(Incident.failure_date.desc()).limit(limit)
            result = await self._session.execute(query)
            return result.scalars().all()

        return await self._retry(operation, "get incident history")

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def resolve_incident(
        self,
        incident_id: UUID,
        resolved_by: UUID,
        notes: str,
        facility_id: UUID | None = None,
    ) -> bool:
        """Mark an open incident resolved."""
        validate_resolution_notes(notes)

        async def operation() -> bool:
            incident = self._require(await self._load(incident_id, facility_id), incident_id)
            if not incident.is_open:
                raise ValidationError(
                    f"Cannot resolve incident in status '{incident.status.value}'",
                    code="INVALID_STATUS_TRANSITION",
                )

            incident.status = IncidentStatus.RESOLVED
            incident.resolved_by_operator_id = resolved_by
            incident.updated_by_operator_id = resolved_by
            incident.resolution_notes = notes
            incident.resolved_at = datetime.now(timezone.utc)
            await self._session.flush()
            return True

        resolved = await self._retry_write(operation, "resolve incident")
        logger.info(f"Incident {incident_id} resolved by {resolved_by}")
        return resolved

    async def update_status(
        self,
        incident_id: UUID,
        new_status: IncidentStatus,
        updated_by: UUID | None = None,
        notes: str | None = None,
        facility_id: UUID | None = None,
    ) -> bool:
        """
        Write a status directly.

        Ordering of transitions is the workflow engine's job; this only
        guarantees the incident exists.
        """
        validate_resolution_notes(notes)

        async def operation() -> bool:
            incident = self._require(await self._load(incident_id, facility_id), incident_id)
            incident.status = new_status
            if updated_by:
                incident.updated_by_operator_id = updated_by
            if notes is not None:
                incident.resolution_notes = notes
            if new_status == IncidentStatus.RESOLVED and incident.resolved_at is None:
                incident.resolved_at = datetime.now(timezone.utc)
            await self._session.flush()
            return True

        updated = await self._retry_write(operation, "update incident status")
        logger.info(f"Incident {incident_id} status set to {new_status.value}")
        return updated

    async def close_incident(
        self,
        incident_id: UUID,
        closed_by: UUID,
        facility_id: UUID | None = None,
    ) -> bool:
        """Move a resolved incident to its terminal `closed` status."""

        async def operation() -> bool:
            incident = self._require(await self._load(incident_id, facility_id), incident_id)
            if incident.status != IncidentStatus.RESOLVED:
                raise ValidationError(
                    "Only resolved incidents can be closed",
                    code="INVALID_STATUS_TRANSITION",
                    context={"status": incident.status.value},
                )
            incident.status = IncidentStatus.CLOSED
            incident.updated_by_operator_id = closed_by
            await self._session.flush()
            return True

        closed = await self._retry_write(operation, "close incident")
        logger.info(f"Incident {incident_id} closed by {closed_by}")
        return closed

    async def mark_regulatory_notification_sent(
        self, incident_id: UUID, sent_at: datetime | None = None
    ) -> bool:
        """Only called after a successful regulatory dispatch."""

        async def operation() -> bool:
            incident = self._require(await self._load(incident_id), incident_id)
            incident.regulatory_notification_sent = True
            incident.regulatory_notification_date = sent_at or datetime.now(timezone.utc)
            await self._session.flush()
            return True

        return await self._retry_write(operation, "mark regulatory notification sent")
