"""FastAPI dependencies for facility context and services."""

import logging
from typing import Annotated
from uuid import UUID

import httpx
from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.incident_service import IncidentService
from ..services.notification_dispatch import EmailSender
from .config import get_settings
from .database import get_session
from .errors import UnavailableError, ValidationError

logger = logging.getLogger(__name__)


def _parse_uuid(value: str | None, header: str) -> UUID:
    if not value:
        raise UnavailableError(
            f"{header} header is required to resolve the facility context",
            context={"header": header},
        )
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid {header} header: {value}", context={"header": header})


class HeaderFacilityDirectory:
    """Facility and operator taken from request headers."""

    def __init__(self, facility_id: str | None, operator_id: str | None):
        self._facility_id = facility_id
        self._operator_id = operator_id

    async def get_current_facility_id(self) -> UUID:
        return _parse_uuid(self._facility_id, "X-Facility-ID")

    async def get_current_user_id(self) -> UUID:
        return _parse_uuid(self._operator_id, "X-Operator-ID")


async def get_facility_directory(
    x_facility_id: Annotated[str | None, Header()] = None,
    x_operator_id: Annotated[str | None, Header()] = None,
) -> HeaderFacilityDirectory:
    return HeaderFacilityDirectory(x_facility_id, x_operator_id)


def get_email_sender() -> EmailSender | None:
    """None selects the sender from settings (SMTP or logging)."""
    return None


def get_webhook_transport() -> httpx.AsyncBaseTransport | None:
    return None


async def get_incident_service(
    session: Annotated[AsyncSession, Depends(get_session)],
    directory: Annotated[HeaderFacilityDirectory, Depends(get_facility_directory)],
    email_sender: Annotated[EmailSender | None, Depends(get_email_sender)],
    webhook_transport: Annotated[
        httpx.AsyncBaseTransport | None, Depends(get_webhook_transport)
    ],
) -> IncidentService:
    return IncidentService(
        session,
        directory,
        settings=get_settings(),
        email_sender=email_sender,
        webhook_transport=webhook_transport,
    )


# Type aliases for cleaner route signatures
SessionDep = Annotated[AsyncSession, Depends(get_session)]
DirectoryDep = Annotated[HeaderFacilityDirectory, Depends(get_facility_directory)]
IncidentServiceDep = Annotated[IncidentService, Depends(get_incident_service)]
