"""Tool validation routes used at the point of use."""

from fastapi import APIRouter

from ..core.dependencies import IncidentServiceDep
from ..schemas import ToolCanUseResponse, ToolValidationResponse

router = APIRouter(prefix="/tools", tags=["tools"])


@router.post(
    "/{tool_id}/validate",
    response_model=ToolValidationResponse,
    summary="Classify a tool against open incidents",
    description="""
    - `approved`: no open incidents
    - `quarantine_breach`: the tool overlaps an affected batch
    - `exposure_window`: another incident is open at the facility
    - `pending_review`: validation could not complete; do not use the tool
    """,
)
async def validate_tool(tool_id: str, service: IncidentServiceDep):
    result = await service.validate_tool_use(tool_id)
    return ToolValidationResponse(
        tool_id=tool_id,
        can_use=result.can_use,
        requires_immediate_action=result.requires_immediate_action,
        validation_result=result.validation_result,
    )


@router.get(
    "/{tool_id}/can-use",
    response_model=ToolCanUseResponse,
    summary="Facility-wide lock check",
)
async def can_use_tool(tool_id: str, service: IncidentServiceDep):
    """False while any incident is open at the facility."""
    return ToolCanUseResponse(
        tool_id=tool_id,
        can_use=await service.validate_tool_for_use(tool_id),
    )
