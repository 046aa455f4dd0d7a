"""
Notification Service: routing decisions turned into deliveries.

Combines NotificationRouter (who and what) with NotificationDispatch (how)
for each kind of incident notice.
"""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import ValidationError
from ..models import Incident
from .incident_store import IncidentStore
from .notification_dispatch import NotificationDispatch
from .notification_router import (
    ESCALATION_LEVELS,
    NotificationRouter,
    is_regulatory_notification_required,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Sends regulatory, manager, internal, escalation and resolution notices."""

    def __init__(
        self,
        session: AsyncSession,
        router: NotificationRouter,
        dispatch: NotificationDispatch,
        store: IncidentStore,
        settings: Settings | None = None,
    ):
        self._session = session
        self._settings = settings or get_settings()
        self.router = router
        self.dispatch = dispatch
        self._store = store

    async def _incident(self, incident_id: UUID, facility_id: UUID | None) -> Incident:
        return await self._store.get_incident_or_raise(incident_id, facility_id)

    async def notify_regulator(
        self,
        incident_id: UUID,
        facility_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> bool:
        """
        Send the regulatory notice if policy requires it.

        Returns False when automatic notification is disabled or the
        severity does not call for it. The incident is only flagged as
        notified after a successful dispatch.
        """
        incident = await self._incident(incident_id, facility_id)
        config = await self.router.get_notification_config(incident.facility_id)

        if not is_regulatory_notification_required(incident.severity_level, config):
            logger.info(
                f"Regulatory notice not required for {incident.incident_number} "
                f"(auto={config.auto_notification_enabled}, "
                f"severity={incident.severity_level.value})"
            )
            return False

        message = self.router.build_regulatory_message(incident, config)
        await self.dispatch.send_notification(message, user_id)
        await self._store.mark_regulatory_notification_sent(incident.id, message.sent_at)
        return True

    async def notify_clinic_manager(
        self,
        incident_id: UUID,
        facility_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> bool:
        incident = await self._incident(incident_id, facility_id)
        config = await self.router.get_notification_config(incident.facility_id)

        message = self.router.build_clinic_manager_message(incident, config)
        if message is None:
            logger.debug(f"No clinic manager configured for facility {incident.facility_id}")
            return False

        await self.dispatch.send_notification(message, user_id)
        return True

    async def send_internal_notification(
        self,
        incident_id: UUID,
        facility_id: UUID | None = None,
        recipients: list[str] | None = None,
        custom_message: str | None = None,
        user_id: UUID | None = None,
    ) -> bool:
        incident = await self._incident(incident_id, facility_id)
        config = await self.router.get_notification_config(incident.facility_id)

        message = self.router.build_internal_message(
            incident, config, recipients=recipients, custom_message=custom_message
        )
        await self.dispatch.send_notification(message, user_id)
        return True

    async def send_escalation_notification(
        self,
        incident_id: UUID,
        level: str,
        facility_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> bool:
        """False when nobody is configured for the escalation level."""
        if level not in ESCALATION_LEVELS:
            raise ValidationError(
                f"Invalid escalation level: {level}",
                context={"allowed": list(ESCALATION_LEVELS)},
            )

        incident = await self._incident(incident_id, facility_id)
        config = await self.router.get_notification_config(incident.facility_id)

        message = self.router.build_escalation_message(incident, config, level)
        if message is None:
            return False

        await self.dispatch.send_notification(message, user_id)
        return True

    async def send_resolution_notification(
        self,
        incident_id: UUID,
        facility_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> bool:
        incident = await self._incident(incident_id, facility_id)
        config = await self.router.get_notification_config(incident.facility_id)

        message = self.router.build_resolution_message(incident, config)
        await self.dispatch.send_notification(message, user_id)
        return True
