"""Workflow API Routes: step-by-step remediation of an incident."""

from uuid import UUID

from fastapi import APIRouter

from ..core.dependencies import IncidentServiceDep
from ..schemas import (
    AdvanceStepRequest,
    CancelWorkflowRequest,
    FailStepRequest,
    OperationResult,
    ResetWorkflowRequest,
    WorkflowStatusResponse,
    WorkflowStepResponse,
)

router = APIRouter(prefix="/incidents/{incident_id}/workflow", tags=["workflow"])


@router.get(
    "",
    response_model=WorkflowStatusResponse,
    summary="Workflow progress",
)
async def get_workflow_status(incident_id: UUID, service: IncidentServiceDep):
    info = await service.get_workflow_status(incident_id)
    return WorkflowStatusResponse.model_validate(info)


@router.get(
    "/steps",
    response_model=list[WorkflowStepResponse],
    summary="Workflow steps in order",
)
async def list_workflow_steps(incident_id: UUID, service: IncidentServiceDep):
    return await service.list_steps(incident_id)


@router.post(
    "/advance",
    response_model=OperationResult,
    summary="Complete the current step",
    description="""
    Complete a step and start the next pending one.

    Steps must be completed in order. Pass `expected_version` to reject
    the change if the incident was modified since it was last read.
    """,
)
async def advance_step(
    incident_id: UUID,
    request: AdvanceStepRequest,
    service: IncidentServiceDep,
):
    await service.advance_step(
        incident_id, request.step_id, request.notes, request.expected_version
    )
    return OperationResult(success=True, message="Step completed")


@router.post(
    "/fail",
    response_model=OperationResult,
    summary="Mark a step as failed",
)
async def fail_step(
    incident_id: UUID,
    request: FailStepRequest,
    service: IncidentServiceDep,
):
    await service.fail_step(incident_id, request.step_id, request.notes)
    return OperationResult(success=True, message="Step marked as failed")


@router.post(
    "/cancel",
    response_model=OperationResult,
    summary="Cancel the workflow",
)
async def cancel_workflow(
    incident_id: UUID,
    request: CancelWorkflowRequest,
    service: IncidentServiceDep,
):
    await service.cancel_workflow(incident_id, request.reason)
    return OperationResult(success=True, message="Workflow cancelled")


@router.post(
    "/reset",
    response_model=OperationResult,
    summary="Reset every step to pending",
)
async def reset_workflow(
    incident_id: UUID,
    request: ResetWorkflowRequest,
    service: IncidentServiceDep,
):
    await service.reset_workflow(incident_id, request.reason)
    return OperationResult(success=True, message="Workflow reset")
