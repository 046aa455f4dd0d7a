"""
Notification API Routes.

Email alerts are queued here and sent by the sweep job
(bi-incidents-sweep) or by POST /notifications/sweep.
"""

from uuid import UUID

from fastapi import APIRouter, status

from ..core.dependencies import DirectoryDep, IncidentServiceDep
from ..schemas import (
    EmailAlertCreate,
    EmailAlertQueued,
    NotificationAuditResponse,
    NotificationResponse,
    NotificationStatsResponse,
    RetryResponse,
    SweepResponse,
)

router = APIRouter(tags=["notifications"])


@router.post(
    "/notifications/email-alerts",
    response_model=EmailAlertQueued,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue an email alert",
)
async def queue_email_alert(
    request: EmailAlertCreate,
    directory: DirectoryDep,
    service: IncidentServiceDep,
):
    entry = await service.dispatch.queue_email_alert(
        facility_id=await directory.get_current_facility_id(),
        recipient_email=str(request.recipient_email),
        recipient_type=request.recipient_type,
        subject=request.subject,
        body=request.body,
        priority=request.priority,
        incident_id=request.incident_id,
        scheduled_for=request.scheduled_for,
    )
    return EmailAlertQueued(id=entry.id, scheduled_for=entry.scheduled_for)


@router.get(
    "/incidents/{incident_id}/notifications",
    response_model=list[NotificationResponse],
    summary="Notification history for an incident",
)
async def get_notification_history(incident_id: UUID, service: IncidentServiceDep):
    await service.get_incident(incident_id)
    return await service.dispatch.get_notification_history(incident_id)


@router.post(
    "/incidents/{incident_id}/notifications/retry",
    response_model=RetryResponse,
    summary="Retry failed notifications",
)
async def retry_failed_notifications(
    incident_id: UUID,
    directory: DirectoryDep,
    service: IncidentServiceDep,
):
    await service.get_incident(incident_id)
    retried = await service.dispatch.retry_failed_notifications(
        incident_id, await directory.get_current_user_id()
    )
    return RetryResponse(retried=retried)


@router.get(
    "/notifications/stats",
    response_model=NotificationStatsResponse,
    summary="Delivery statistics for the facility",
)
async def get_notification_stats(directory: DirectoryDep, service: IncidentServiceDep):
    stats = await service.dispatch.get_notification_stats(
        await directory.get_current_facility_id()
    )
    return NotificationStatsResponse(
        total_sent=stats.total_sent,
        total_failed=stats.total_failed,
        total_queued=stats.total_queued,
        success_rate=stats.success_rate,
    )


@router.get(
    "/notifications/{notification_id}/audit",
    response_model=list[NotificationAuditResponse],
    summary="Audit trail of a notification",
)
async def get_notification_audit(notification_id: UUID, service: IncidentServiceDep):
    return await service.dispatch.get_notification_audit_log(notification_id)


@router.post(
    "/notifications/sweep",
    response_model=SweepResponse,
    summary="Send due queued alerts now",
)
async def run_sweep(service: IncidentServiceDep):
    alerts = await service.dispatch.process_email_alerts()
    scheduled = await service.dispatch.process_scheduled_notifications()
    return SweepResponse(
        processed=alerts.processed + scheduled.processed,
        sent=alerts.sent + scheduled.sent,
        failed=alerts.failed + scheduled.failed,
        requeued=alerts.requeued + scheduled.requeued,
    )
