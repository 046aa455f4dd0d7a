"""API routes for BI Incidents."""

from fastapi import APIRouter

from .incidents import router as incidents_router
from .notifications import router as notifications_router
from .tools import router as tools_router
from .workflow import router as workflow_router

# Main API router
api_router = APIRouter()

api_router.include_router(incidents_router)
api_router.include_router(workflow_router)
api_router.include_router(tools_router)

# Notification history, retry, email queue and stats
api_router.include_router(notifications_router)

__all__ = ["api_router"]
