"""Audit service: incident activity feed and notification audit trail."""

from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ActivityLog, NotificationAuditLog


class AuditService:
    """Append-only logging of incident activity and delivery attempts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_activity(
        self,
        facility_id: UUID,
        activity_type: str,
        message: str,
        incident_id: UUID | None = None,
        operator_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActivityLog:
        """Record an operator-visible activity entry."""
        entry = ActivityLog(
            facility_id=facility_id,
            incident_id=incident_id,
            operator_id=operator_id,
            activity_type=activity_type,
            message=message,
            details=details or {},
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_activity_log(
        self,
        facility_id: UUID,
        incident_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[ActivityLog]:
        """Activity entries for a facility, newest first."""
        query = select(ActivityLog).where(ActivityLog.facility_id == facility_id)
        if incident_id:
            query = query.where(ActivityLog.incident_id == incident_id)

        query = query.order_by(ActivityLog.created_at.desc()).offset(offset).limit(limit)
        result = await self.session.execute(query)
        return result.scalars().all()

    async def log_notification_event(
        self,
        notification_id: UUID,
        action: str,
        details: str | None = None,
        user_id: UUID | None = None,
    ) -> NotificationAuditLog:
        """Record one delivery attempt or state change for a notification."""
        entry = NotificationAuditLog(
            notification_id=notification_id,
            action=action,
            details=details,
            user_id=user_id,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_notification_audit_log(
        self, notification_id: UUID
    ) -> Sequence[NotificationAuditLog]:
        """Audit trail for one notification, oldest first."""
        result = await self.session.execute(
            select(NotificationAuditLog)
            .where(NotificationAuditLog.notification_id == notification_id)
            .order_by(NotificationAuditLog.timestamp)
        )
        return result.scalars().all()
