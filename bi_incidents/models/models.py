"""SQLAlchemy ORM models for BI failure incidents.

Tables mirror the incident, workflow and notification records of the
sterilization compliance module. Every row is scoped by facility_id.
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UUIDMixin, utcnow


# =============================================================================
# ENUMS
# =============================================================================


class SeverityLevel(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, PyEnum):
    ACTIVE = "active"
    IN_RESOLUTION = "in_resolution"
    INVESTIGATING = "investigating"  # Workflow cancelled, awaiting review
    RESOLVED = "resolved"
    CLOSED = "closed"


class StepStatus(str, PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationType(str, PyEnum):
    REGULATORY = "regulatory"
    CLINIC_MANAGER = "clinic_manager"
    INTERNAL = "internal"
    ESCALATION = "escalation"


class NotificationStatus(str, PyEnum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class QueueStatus(str, PyEnum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class QueuePriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RecipientType(str, PyEnum):
    REGULATOR = "regulator"
    CLINIC_MANAGER = "clinic_manager"
    OPERATOR = "operator"
    SUPERVISOR = "supervisor"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# INCIDENTS
# =============================================================================


class Incident(Base, UUIDMixin, TimestampMixin):
    """One recorded BI failure and its remediation lifecycle."""

    __tablename__ = "bi_failure_incidents"

    facility_id: Mapped[UUID] = mapped_column(nullable=False)
    incident_number: Mapped[str] = mapped_column(String(64), nullable=False)
    bi_test_result_id: Mapped[UUID | None] = mapped_column(nullable=True)

    failure_date: Mapped[datetime] = mapped_column(nullable=False)
    detected_by_operator_id: Mapped[UUID] = mapped_column(nullable=False)
    affected_tools_count: Mapped[int] = mapped_column(Integer, nullable=False)
    affected_batch_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity_level: Mapped[SeverityLevel] = mapped_column(
        _enum(SeverityLevel, "severity_level"),
        default=SeverityLevel.MEDIUM,
        nullable=False,
    )
    status: Mapped[IncidentStatus] = mapped_column(
        _enum(IncidentStatus, "incident_status"),
        default=IncidentStatus.ACTIVE,
        nullable=False,
    )
    estimated_impact: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Regulatory
    regulatory_notification_required: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    regulatory_notification_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    regulatory_notification_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Resolution
    resolution_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by_operator_id: Mapped[UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_by_operator_id: Mapped[UUID | None] = mapped_column(nullable=True)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("facility_id", "incident_number", name="uq_incident_number"),
        CheckConstraint("affected_tools_count > 0", name="positive_tools_count"),
        Index("idx_incidents_facility_status", "facility_id", "status"),
        Index("idx_incidents_failure_date", "facility_id", "failure_date"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in (IncidentStatus.ACTIVE, IncidentStatus.IN_RESOLUTION)


class WorkflowStep(Base, UUIDMixin, TimestampMixin):
    """One ordered remediation stage of an incident."""

    __tablename__ = "bi_resolution_workflow_steps"

    incident_id: Mapped[UUID] = mapped_column(
        ForeignKey("bi_failure_incidents.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        _enum(StepStatus, "workflow_step_status"),
        default=StepStatus.PENDING,
        nullable=False,
    )
    assigned_operator_id: Mapped[UUID | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("incident_id", "position", name="uq_workflow_step_position"),
        Index("idx_workflow_steps_incident", "incident_id", "position"),
    )


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class NotificationRecord(Base, UUIDMixin, TimestampMixin):
    """Persisted delivery state of one notification message."""

    __tablename__ = "bi_notifications"

    incident_id: Mapped[UUID] = mapped_column(
        ForeignKey("bi_failure_incidents.id", ondelete="CASCADE"),
        nullable=False,
    )
    facility_id: Mapped[UUID] = mapped_column(nullable=False)
    message_type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=False
    )
    severity: Mapped[SeverityLevel] = mapped_column(
        _enum(SeverityLevel, "severity_level"), nullable=False
    )
    recipients: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    channels: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    delivered_recipients: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        _enum(NotificationStatus, "notification_status"),
        default=NotificationStatus.PENDING,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("retry_count <= max_retries", name="retry_budget"),
        Index("idx_notifications_incident", "incident_id", "created_at"),
        Index("idx_notifications_status", "status"),
    )


class EmailAlertQueueEntry(Base, UUIDMixin, TimestampMixin):
    """Scheduled email alert processed by the background sweep.

    Entries with a message_type are rendered at send time from the incident
    (delayed regulatory notices); the rest carry their own subject and body.
    """

    __tablename__ = "email_alert_queue"

    facility_id: Mapped[UUID] = mapped_column(nullable=False)
    incident_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("bi_failure_incidents.id", ondelete="CASCADE"),
        nullable=True,
    )
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_type: Mapped[RecipientType] = mapped_column(
        _enum(RecipientType, "recipient_type"), nullable=False
    )
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[QueuePriority] = mapped_column(
        _enum(QueuePriority, "queue_priority"),
        default=QueuePriority.MEDIUM,
        nullable=False,
    )
    status: Mapped[QueueStatus] = mapped_column(
        _enum(QueueStatus, "queue_status"),
        default=QueueStatus.QUEUED,
        nullable=False,
    )
    message_type: Mapped[NotificationType | None] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=True
    )
    scheduled_for: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_email_queue_due", "status", "scheduled_for"),
    )


class NotificationAuditLog(Base, UUIDMixin):
    """Append-only audit trail of delivery attempts."""

    __tablename__ = "notification_audit_log"

    # References bi_notifications or email_alert_queue
    notification_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    timestamp: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notification_audit_notification", "notification_id", "timestamp"),
    )


class FacilityNotificationConfig(Base, UUIDMixin, TimestampMixin):
    """Per-facility notification routing configuration."""

    __tablename__ = "facility_notification_config"

    facility_id: Mapped[UUID] = mapped_column(unique=True, nullable=False)
    auto_notification_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    regulatory_bodies: Mapped[list[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    notification_channels: Mapped[list[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    notification_delay_minutes: Mapped[int] = mapped_column(
        Integer, default=30, nullable=False
    )
    # {"supervisor": ["a@x"], "manager": [...], "director": [...], "executive": [...]}
    escalation_levels: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    webhook_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    clinic_manager_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clinic_manager_email: Mapped[str | None] = mapped_column(String(320), nullable=True)


# =============================================================================
# ACTIVITY
# =============================================================================


class ActivityLog(Base, UUIDMixin):
    """Operator-facing activity feed for incidents."""

    __tablename__ = "bi_activity_log"

    facility_id: Mapped[UUID] = mapped_column(nullable=False)
    incident_id: Mapped[UUID | None] = mapped_column(nullable=True)
    operator_id: Mapped[UUID | None] = mapped_column(nullable=True)
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_activity_facility_time", "facility_id", "created_at"),
        Index("idx_activity_incident", "incident_id", "created_at"),
    )
