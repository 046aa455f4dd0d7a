"""
Incident API Routes: recording and closing out BI failures.

1. POST /incidents - Record a BI failure (workflow + notifications follow)
2. GET /incidents/active - Open incidents for the facility
3. POST /incidents/{id}/resolve - Resolve with notes
4. POST /incidents/{id}/close - Close a resolved incident
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from ..core.dependencies import DirectoryDep, IncidentServiceDep
from ..schemas import (
    ActivityLogResponse,
    IncidentCreate,
    IncidentResolve,
    IncidentResponse,
    IncidentStatusUpdate,
    OperationResult,
)
from ..services import CreateIncidentParams

router = APIRouter(prefix="/incidents", tags=["incidents"])


@router.post(
    "",
    response_model=IncidentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a BI failure incident",
    description="""
    Record a biological indicator failure for the current facility.

    This creates:
    - The incident, numbered and in `active` status
    - Its remediation workflow, every step pending
    - An activity log entry

    Regulatory and clinic manager notifications are routed afterwards;
    delivery failures never fail this request.
    """,
)
async def create_incident(
    request: IncidentCreate,
    directory: DirectoryDep,
    service: IncidentServiceDep,
):
    facility_id = await directory.get_current_facility_id()
    operator_id = request.detected_by_operator_id or await directory.get_current_user_id()

    incident = await service.create_incident(
        CreateIncidentParams(
            facility_id=facility_id,
            detected_by_operator_id=operator_id,
            affected_tools_count=request.affected_tools_count,
            affected_batch_ids=request.affected_batch_ids,
            failure_date=request.failure_date,
            failure_reason=request.failure_reason,
            severity_level=request.severity_level,
            resolution_deadline=request.resolution_deadline,
            bi_test_result_id=request.bi_test_result_id,
            estimated_impact=request.estimated_impact,
        )
    )
    return incident


@router.get(
    "/active",
    response_model=list[IncidentResponse],
    summary="List open incidents",
)
async def get_active_incidents(service: IncidentServiceDep):
    """Active and in-resolution incidents, newest failure first."""
    return await service.get_active_incidents()


@router.get(
    "/history",
    response_model=list[IncidentResponse],
    summary="Incident history",
    description="Incidents by failure date, newest first. Defaults to the last 5 years.",
)
async def get_incident_history(
    service: IncidentServiceDep,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    return await service.get_incident_history(
        start_date=start_date, end_date=end_date, limit=limit
    )


@router.get(
    "/{incident_id}",
    response_model=IncidentResponse,
    summary="Get an incident",
)
async def get_incident(incident_id: UUID, service: IncidentServiceDep):
    return await service.get_incident(incident_id)


@router.post(
    "/{incident_id}/resolve",
    response_model=OperationResult,
    summary="Resolve an incident",
)
async def resolve_incident(
    incident_id: UUID,
    request: IncidentResolve,
    service: IncidentServiceDep,
):
    await service.resolve_incident(incident_id, request.notes)
    return OperationResult(success=True, message="Incident resolved")


@router.post(
    "/{incident_id}/close",
    response_model=OperationResult,
    summary="Close a resolved incident",
)
async def close_incident(incident_id: UUID, service: IncidentServiceDep):
    await service.close_incident(incident_id)
    return OperationResult(success=True, message="Incident closed")


@router.patch(
    "/{incident_id}/status",
    response_model=OperationResult,
    summary="Change incident status",
)
async def update_incident_status(
    incident_id: UUID,
    request: IncidentStatusUpdate,
    service: IncidentServiceDep,
):
    await service.update_status(incident_id, request.status)
    return OperationResult(success=True, message=f"Status changed to {request.status}")


@router.get(
    "/{incident_id}/activity",
    response_model=list[ActivityLogResponse],
    summary="Activity log for an incident",
)
async def get_incident_activity(
    incident_id: UUID,
    service: IncidentServiceDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    await service.get_incident(incident_id)
    return await service.get_activity_log(incident_id=incident_id, limit=limit, offset=offset)
