"""
Notification Router: who gets told about an incident, and what they read.

Responsibilities:
1. Load per-facility notification configuration (with a safe default)
2. Decide whether a regulatory notice is mandatory
3. Resolve escalation recipients by severity tier
4. Render subject/body text per message type

Nothing here delivers anything; NotificationDispatch does that.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..models import (
    FacilityNotificationConfig,
    Incident,
    NotificationStatus,
    NotificationType,
    SeverityLevel,
)

logger = logging.getLogger(__name__)

EscalationLevel = Literal["supervisor", "manager", "director", "executive"]

ESCALATION_LEVELS: tuple[EscalationLevel, ...] = (
    "supervisor",
    "manager",
    "director",
    "executive",
)

# Each severity pulls in its own tier and every tier below it
SEVERITY_ESCALATION: dict[SeverityLevel, tuple[EscalationLevel, ...]] = {
    SeverityLevel.LOW: ESCALATION_LEVELS[:1],
    SeverityLevel.MEDIUM: ESCALATION_LEVELS[:2],
    SeverityLevel.HIGH: ESCALATION_LEVELS[:3],
    SeverityLevel.CRITICAL: ESCALATION_LEVELS,
}

URGENCY_LABELS = {
    SeverityLevel.CRITICAL: "immediate action",
    SeverityLevel.HIGH: "urgent",
    SeverityLevel.MEDIUM: "attention required",
    SeverityLevel.LOW: "for your information",
}

DEFAULT_REGULATORY_BODIES = ["regulatory-notifications@health-authority.gov"]
DEFAULT_INTERNAL_RECIPIENTS = ["admin@facility.com", "supervisor@facility.com"]
DEFAULT_ESCALATION_RECIPIENTS = {
    "supervisor": ["supervisor@facility.com"],
    "manager": ["manager@facility.com"],
    "director": ["director@facility.com"],
    "executive": ["executive@facility.com"],
}
DEFAULT_CHANNELS = ["email", "webhook"]


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class NotificationConfig:
    """Notification routing configuration of one facility."""
    facility_id: UUID | None
    auto_notification_enabled: bool = True
    regulatory_bodies: list[str] = field(default_factory=lambda: list(DEFAULT_REGULATORY_BODIES))
    notification_channels: list[str] = field(default_factory=lambda: list(DEFAULT_CHANNELS))
    notification_delay_minutes: int = 30
    escalation_levels: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_ESCALATION_RECIPIENTS.items()}
    )
    webhook_url: str | None = None
    clinic_manager_name: str | None = None
    clinic_manager_email: str | None = None
    is_default: bool = False

    @classmethod
    def default(
        cls, facility_id: UUID | None = None, settings: Settings | None = None
    ) -> "NotificationConfig":
        settings = settings or get_settings()
        return cls(
            facility_id=facility_id,
            notification_delay_minutes=settings.notification_delay_minutes,
            webhook_url=settings.default_webhook_url,
            is_default=True,
        )

    @classmethod
    def from_model(
        cls, row: FacilityNotificationConfig, settings: Settings | None = None
    ) -> "NotificationConfig":
        settings = settings or get_settings()
        return cls(
            facility_id=row.facility_id,
            auto_notification_enabled=row.auto_notification_enabled,
            regulatory_bodies=list(row.regulatory_bodies or DEFAULT_REGULATORY_BODIES),
            notification_channels=list(row.notification_channels or DEFAULT_CHANNELS),
            notification_delay_minutes=row.notification_delay_minutes,
            escalation_levels=dict(row.escalation_levels or DEFAULT_ESCALATION_RECIPIENTS),
            webhook_url=row.webhook_url or settings.default_webhook_url,
            clinic_manager_name=row.clinic_manager_name,
            clinic_manager_email=row.clinic_manager_email,
        )


@dataclass
class NotificationMessage:
    """A rendered notification, before or after delivery."""
    incident_id: UUID
    facility_id: UUID
    severity: SeverityLevel
    message_type: NotificationType
    recipients: list[str]
    subject: str
    body: str
    channels: list[str] = field(default_factory=lambda: list(DEFAULT_CHANNELS))
    webhook_url: str | None = None
    max_retries: int = 3
    retry_count: int = 0
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: datetime | None = None
    id: UUID | None = None
    # Email recipients already reached; retries skip them
    delivered_to: set[str] = field(default_factory=set)


@dataclass
class IncidentDetails:
    """The incident facts interpolated into notification text."""
    incident_number: str
    failure_date: datetime
    affected_tools_count: int
    failure_reason: str | None = None

    @classmethod
    def from_incident(cls, incident: Incident) -> "IncidentDetails":
        return cls(
            incident_number=incident.incident_number,
            failure_date=incident.failure_date,
            affected_tools_count=incident.affected_tools_count,
            failure_reason=incident.failure_reason,
        )


# =============================================================================
# POLICY
# =============================================================================


def is_regulatory_notification_required(
    severity: SeverityLevel, config: NotificationConfig
) -> bool:
    return config.auto_notification_enabled and severity in (
        SeverityLevel.HIGH,
        SeverityLevel.CRITICAL,
    )


def urgency_label(severity: SeverityLevel) -> str:
    return URGENCY_LABELS[SeverityLevel(severity)]


def escalation_levels_for(severity: SeverityLevel) -> tuple[EscalationLevel, ...]:
    return SEVERITY_ESCALATION[SeverityLevel(severity)]


def escalation_recipients(level: str, config: NotificationConfig) -> list[str]:
    return list(config.escalation_levels.get(level, []))


def recipients_for_severity(severity: SeverityLevel, config: NotificationConfig) -> list[str]:
    """Union of every escalation tier the severity reaches, in tier order."""
    recipients: list[str] = []
    for level in escalation_levels_for(severity):
        for address in escalation_recipients(level, config):
            if address not in recipients:
                recipients.append(address)
    return recipients


# =============================================================================
# RENDERING
# =============================================================================


def _describe(details: IncidentDetails) -> str:
    lines = [
        f"Incident number: {details.incident_number}",
        f"Failure date: {details.failure_date:%Y-%m-%d %H:%M UTC}",
        f"Affected tools: {details.affected_tools_count}",
    ]
    if details.failure_reason:
        lines.append(f"Failure reason: {details.failure_reason}")
    return "\n".join(lines)


def render_regulatory(details: IncidentDetails, severity: SeverityLevel) -> tuple[str, str]:
    label = urgency_label(severity)
    subject = (
        f"[{label.upper()}] Regulatory notice: BI sterilization failure "
        f"{details.incident_number}"
    )
    body = (
        "This notice reports a biological indicator failure recorded at our "
        f"facility, classified as {SeverityLevel(severity).value} severity ({label}).\n\n"
        f"{_describe(details)}\n\n"
        "All affected tools have been quarantined and remediation is in progress. "
        "A follow-up report will be provided once the incident is resolved."
    )
    return subject, body


def render_clinic_manager(
    details: IncidentDetails, severity: SeverityLevel, manager_name: str | None
) -> tuple[str, str]:
    label = urgency_label(severity)
    subject = f"BI failure {details.incident_number}: {label}"
    greeting = f"Dear {manager_name}," if manager_name else "Dear Clinic Manager,"
    body = (
        f"{greeting}\n\n"
        "A biological indicator test failed during sterilization monitoring. "
        f"This incident requires {label}.\n\n"
        f"{_describe(details)}\n\n"
        "Tools from the affected batches must not be used until the incident "
        "is resolved."
    )
    return subject, body


def render_internal(
    details: IncidentDetails, severity: SeverityLevel, custom_message: str | None = None
) -> tuple[str, str]:
    label = urgency_label(severity)
    subject = f"BI failure {details.incident_number} ({label})"
    body = custom_message or "A BI failure incident was recorded for your facility."
    body = f"{body}\n\n{_describe(details)}"
    return subject, body


def render_escalation(details: IncidentDetails, level: str) -> tuple[str, str]:
    subject = f"Escalation: BI failure {details.incident_number} requires {level} attention"
    body = (
        f"BI Failure incident {details.incident_number} requires {level} attention.\n\n"
        f"{_describe(details)}"
    )
    return subject, body


def render_resolution(details: IncidentDetails) -> tuple[str, str]:
    subject = f"Resolved: BI failure {details.incident_number}"
    body = f"BI Failure incident {details.incident_number} has been resolved.\n\n{_describe(details)}"
    return subject, body


# =============================================================================
# ROUTER
# =============================================================================


class NotificationRouter:
    """Builds NotificationMessages for incidents from facility configuration."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._session = session
        self._settings = settings or get_settings()

    async def get_notification_config(self, facility_id: UUID) -> NotificationConfig:
        """Facility configuration, or the built-in default when none is stored."""
        try:
            result = await self._session.execute(
                select(FacilityNotificationConfig).where(
                    FacilityNotificationConfig.facility_id == facility_id
                )
            )
            row = result.scalar_one_or_none()
        except Exception as e:
            logger.warning(
                f"Could not load notification config for facility {facility_id}, "
                f"using defaults: {e}"
            )
            return NotificationConfig.default(facility_id, self._settings)

        if row is None:
            return NotificationConfig.default(facility_id, self._settings)
        return NotificationConfig.from_model(row, self._settings)

    def _message(
        self,
        incident: Incident,
        config: NotificationConfig,
        message_type: NotificationType,
        recipients: list[str],
        rendered: tuple[str, str],
        severity: SeverityLevel | None = None,
    ) -> NotificationMessage:
        subject, body = rendered
        return NotificationMessage(
            incident_id=incident.id,
            facility_id=incident.facility_id,
            severity=SeverityLevel(severity or incident.severity_level),
            message_type=message_type,
            recipients=recipients,
            subject=subject,
            body=body,
            channels=list(config.notification_channels),
            webhook_url=config.webhook_url,
            max_retries=self._settings.notification_max_retries,
        )

    def build_regulatory_message(
        self, incident: Incident, config: NotificationConfig
    ) -> NotificationMessage:
        details = IncidentDetails.from_incident(incident)
        return self._message(
            incident,
            config,
            NotificationType.REGULATORY,
            list(config.regulatory_bodies),
            render_regulatory(details, incident.severity_level),
        )

    def build_clinic_manager_message(
        self, incident: Incident, config: NotificationConfig
    ) -> NotificationMessage | None:
        """None when the facility has no clinic manager on file."""
        if not config.clinic_manager_email:
            return None
        details = IncidentDetails.from_incident(incident)
        return self._message(
            incident,
            config,
            NotificationType.CLINIC_MANAGER,
            [config.clinic_manager_email],
            render_clinic_manager(
                details, incident.severity_level, config.clinic_manager_name
            ),
        )

    def build_internal_message(
        self,
        incident: Incident,
        config: NotificationConfig,
        recipients: list[str] | None = None,
        custom_message: str | None = None,
    ) -> NotificationMessage:
        details = IncidentDetails.from_incident(incident)
        return self._message(
            incident,
            config,
            NotificationType.INTERNAL,
            recipients or recipients_for_severity(incident.severity_level, config)
            or list(DEFAULT_INTERNAL_RECIPIENTS),
            render_internal(details, incident.severity_level, custom_message),
        )

    def build_escalation_message(
        self, incident: Incident, config: NotificationConfig, level: EscalationLevel
    ) -> NotificationMessage | None:
        """None when nobody is configured for the level."""
        recipients = escalation_recipients(level, config)
        if not recipients:
            return None
        details = IncidentDetails.from_incident(incident)
        # Escalations always go out as high priority
        return self._message(
            incident,
            config,
            NotificationType.ESCALATION,
            recipients,
            render_escalation(details, level),
            severity=SeverityLevel.HIGH,
        )

    def build_resolution_message(
        self, incident: Incident, config: NotificationConfig
    ) -> NotificationMessage:
        details = IncidentDetails.from_incident(incident)
        return self._message(
            incident,
            config,
            NotificationType.INTERNAL,
            list(DEFAULT_INTERNAL_RECIPIENTS),
            render_resolution(details),
        )
