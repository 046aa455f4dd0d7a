"""
Notification Dispatch: delivery of notifications and the email alert queue.

This module is responsible for:
1. Sending messages through email and webhook channels
2. Persisting delivery state and an audit trail of every attempt
3. Queuing scheduled email alerts and sweeping them when due

Retry policies:
- a message makes one send per channel per attempt; an attempt where every
  channel failed counts against max_retries and is re-attempted with
  exponential backoff until retry_count reaches max_retries
- queued plain alerts are retried in-call (notification_retry_attempts,
  linear) and then requeued until the entry's own max_retries is spent
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Protocol, Sequence
from uuid import UUID

import aiosmtplib
import httpx
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import (
    DeliveryError,
    IncidentError,
    NotFoundError,
    ValidationError,
    backoff_delay,
    with_retry,
)
from ..models import (
    EmailAlertQueueEntry,
    Incident,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    QueuePriority,
    QueueStatus,
    RecipientType,
    SeverityLevel,
)
from .audit import AuditService
from .incident_store import IncidentStore
from .notification_router import NotificationMessage, NotificationRouter

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PRIORITY_RANK = {
    QueuePriority.URGENT: 4,
    QueuePriority.HIGH: 3,
    QueuePriority.MEDIUM: 2,
    QueuePriority.LOW: 1,
}


def is_valid_email(address: str) -> bool:
    return bool(address) and EMAIL_PATTERN.match(address) is not None


def classify_delivery_error(exc: BaseException, operation: str) -> IncidentError:
    """Map transport failures onto DeliveryError."""
    if isinstance(exc, IncidentError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return DeliveryError(
            f"{operation} rejected with HTTP {status}",
            retryable=status >= 500 or status == 429,
            context={"status_code": status},
        )

    if isinstance(exc, (httpx.TransportError, aiosmtplib.SMTPException, OSError)):
        return DeliveryError(f"{operation} failed: {exc}", retryable=True)

    return DeliveryError(f"{operation} failed: {exc}", retryable=False)


# =============================================================================
# EMAIL SENDERS
# =============================================================================


class EmailSender(Protocol):
    """Provider-pluggable email capability."""

    async def send_email(self, to: str, subject: str, body: str) -> None: ...


class LoggingEmailSender:
    """Used when no SMTP server is configured."""

    async def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info(f"[EMAIL] To: {to}, Subject: {subject}")


class SmtpEmailSender:
    """Email delivery over SMTP."""

    def __init__(self, settings: Settings):
        self._settings = settings

    async def send_email(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self._settings.email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        await aiosmtplib.send(
            message,
            hostname=self._settings.smtp_host,
            port=self._settings.smtp_port,
            username=self._settings.smtp_user,
            password=self._settings.smtp_password,
            start_tls=self._settings.smtp_use_tls,
            timeout=self._settings.smtp_timeout_seconds,
        )


def default_email_sender(settings: Settings) -> EmailSender:
    if settings.smtp_enabled:
        return SmtpEmailSender(settings)
    return LoggingEmailSender()


# =============================================================================
# NOTIFICATION CHANNELS
# =============================================================================


class NotificationChannel(ABC):
    """Abstract base for notification delivery channels."""

    name: str

    def is_configured(self, message: NotificationMessage) -> bool:
        return True

    @abstractmethod
    async def send(self, message: NotificationMessage) -> None:
        """Deliver the message; raise on failure."""


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(self, sender: EmailSender):
        self._sender = sender

    def is_configured(self, message: NotificationMessage) -> bool:
        return bool(message.recipients)

    async def send(self, message: NotificationMessage) -> None:
        """Send to every recipient not yet reached; raise if any of them failed."""
        errors: list[IncidentError] = []
        for recipient in message.recipients:
            if recipient in message.delivered_to:
                continue
            try:
                await self.send_to(recipient, message.subject, message.body)
            except Exception as e:
                errors.append(classify_delivery_error(e, f"email to {recipient}"))
                continue
            message.delivered_to.add(recipient)

        if errors:
            raise DeliveryError(
                "; ".join(error.message for error in errors),
                retryable=any(error.retryable for error in errors),
                context={"failed_recipients": len(errors)},
            )

    async def send_to(self, recipient: str, subject: str, body: str) -> None:
        if not is_valid_email(recipient):
            raise DeliveryError(f"Invalid recipient address: {recipient}", retryable=False)
        await self._sender.send_email(recipient, subject, body)


class WebhookChannel(NotificationChannel):
    """POSTs a JSON payload to the facility webhook."""

    name = "webhook"

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout_seconds
        self._transport = transport

    def is_configured(self, message: NotificationMessage) -> bool:
        return bool(message.webhook_url)

    async def send(self, message: NotificationMessage) -> None:
        payload = {
            "incident_id": str(message.incident_id),
            "facility_id": str(message.facility_id),
            "severity": SeverityLevel(message.severity).value,
            "message_type": NotificationType(message.message_type).value,
            "subject": message.subject,
            "body": message.body,
            "recipients": message.recipients,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            response = await client.post(message.webhook_url, json=payload)
            response.raise_for_status()


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class SweepResult:
    """Outcome of one pass over the email alert queue."""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    requeued: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class NotificationStats:
    total_sent: int
    total_failed: int
    total_queued: int
    success_rate: float


# =============================================================================
# NOTIFICATION DISPATCH
# =============================================================================


class NotificationDispatch:
    """Delivers notifications and processes the email alert queue."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        email_sender: EmailSender | None = None,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
        router: NotificationRouter | None = None,
        store: IncidentStore | None = None,
        audit: AuditService | None = None,
    ):
        self._session = session
        self._settings = settings or get_settings()
        self._email = EmailChannel(email_sender or default_email_sender(self._settings))
        self._webhook = WebhookChannel(
            timeout_seconds=self._settings.webhook_timeout_seconds,
            transport=webhook_transport,
        )
        self._channels: dict[str, NotificationChannel] = {
            self._email.name: self._email,
            self._webhook.name: self._webhook,
        }
        self._router = router or NotificationRouter(session, self._settings)
        self._store = store or IncidentStore(session, self._settings)
        self._audit = audit or AuditService(session)

    # =========================================================================
    # IMMEDIATE DELIVERY
    # =========================================================================

    async def send_notification(
        self,
        message: NotificationMessage,
        user_id: UUID | None = None,
    ) -> NotificationMessage:
        """
        Deliver a message through every configured channel.

        One channel succeeding is enough for the message to count as sent.
        When every channel fails the attempt counts against max_retries and
        the message is re-attempted after an exponential delay. Exhausting
        the budget marks it failed and raises DeliveryError.
        """
        record = await self._persist(message)

        channels = [
            self._channels[name]
            for name in message.channels
            if name in self._channels and self._channels[name].is_configured(message)
        ]
        if not channels:
            message.status = NotificationStatus.FAILED
            self._sync(record, message, "No configured delivery channel")
            await self._audit.log_notification_event(
                record.id, "failed", "No configured delivery channel", user_id
            )
            await self._session.flush()
            raise DeliveryError(
                "No configured delivery channel",
                retryable=False,
                context={"notification_id": str(record.id)},
            )

        while True:
            delivered, failures = await self._attempt(message, channels)

            if delivered:
                message.status = NotificationStatus.SENT
                message.sent_at = datetime.now(timezone.utc)
                self._sync(record, message, "; ".join(failures) or None)
                detail = f"Delivered via {', '.join(delivered)}"
                if failures:
                    detail += f"; failed: {'; '.join(failures)}"
                await self._audit.log_notification_event(record.id, "sent", detail, user_id)
                await self._session.flush()
                logger.info(
                    f"Notification {record.id} ({NotificationType(message.message_type).value}) sent "
                    f"to {len(message.recipients)} recipients"
                )
                return message

            message.retry_count += 1
            message.status = NotificationStatus.FAILED
            error_text = "; ".join(failures)
            self._sync(record, message, error_text)
            await self._audit.log_notification_event(
                record.id,
                "attempt_failed",
                f"Attempt {message.retry_count}/{message.max_retries}: {error_text}",
                user_id,
            )
            await self._session.flush()

            if message.retry_count >= message.max_retries:
                logger.error(
                    f"Notification {record.id} permanently failed after "
                    f"{message.retry_count} attempts: {error_text}"
                )
                await self._audit.log_notification_event(
                    record.id,
                    "permanently_failed",
                    f"Retries exhausted: {error_text}",
                    user_id,
                )
                await self._session.flush()
                raise DeliveryError(
                    f"Notification delivery failed after {message.retry_count} attempts",
                    severity="high",
                    retryable=False,
                    context={"notification_id": str(record.id), "error": error_text},
                )

            wait_time = backoff_delay(
                message.retry_count,
                self._settings.notification_retry_delay_seconds,
                "exponential",
            )
            logger.warning(
                f"Notification {record.id} attempt {message.retry_count} failed, "
                f"retrying in {wait_time:.2f}s"
            )
            await asyncio.sleep(wait_time)

    async def _attempt(
        self,
        message: NotificationMessage,
        channels: list[NotificationChannel],
    ) -> tuple[list[str], list[str]]:
        """One send per channel; a failing channel never stops the others."""
        delivered: list[str] = []
        failures: list[str] = []
        for channel in channels:
            try:
                await channel.send(message)
                delivered.append(channel.name)
            except Exception as e:
                error = classify_delivery_error(e, f"{channel.name} delivery")
                failures.append(f"{channel.name}: {error.message}")
        return delivered, failures

    async def _send_with_retry(self, operation, channel_name: str) -> None:
        await with_retry(
            operation,
            f"{channel_name} delivery",
            attempts=self._settings.notification_retry_attempts,
            delay=self._settings.notification_retry_delay_seconds,
            backoff="linear",
            classify=classify_delivery_error,
        )

    async def _persist(self, message: NotificationMessage) -> NotificationRecord:
        if message.id is not None:
            record = await self._session.get(NotificationRecord, message.id)
            if record is not None:
                return record

        record = NotificationRecord(
            incident_id=message.incident_id,
            facility_id=message.facility_id,
            message_type=message.message_type,
            severity=message.severity,
            recipients=list(message.recipients),
            channels=list(message.channels),
            subject=message.subject,
            body=message.body,
            status=NotificationStatus.PENDING,
            retry_count=message.retry_count,
            max_retries=message.max_retries,
        )
        self._session.add(record)
        await self._session.flush()
        message.id = record.id
        return record

    @staticmethod
    def _sync(
        record: NotificationRecord, message: NotificationMessage, error: str | None
    ) -> None:
        record.status = message.status
        record.retry_count = message.retry_count
        record.last_error = error
        record.delivered_recipients = sorted(message.delivered_to)
        if message.sent_at and record.sent_at is None:
            record.sent_at = message.sent_at

    # =========================================================================
    # HISTORY & RETRY
    # =========================================================================

    async def get_notification_history(
        self, incident_id: UUID
    ) -> Sequence[NotificationRecord]:
        """Notifications for an incident, newest first."""
        result = await self._session.execute(
            select(NotificationRecord)
            .where(NotificationRecord.incident_id == incident_id)
            .order_by(NotificationRecord.created_at.desc())
        )
        return result.scalars().all()

    async def retry_failed_notifications(
        self, incident_id: UUID, user_id: UUID | None = None
    ) -> int:
        """Re-send failed notifications that still have retry budget."""
        result = await self._session.execute(
            select(NotificationRecord).where(
                NotificationRecord.incident_id == incident_id,
                NotificationRecord.status == NotificationStatus.FAILED,
                NotificationRecord.retry_count < NotificationRecord.max_retries,
            )
        )
        records = result.scalars().all()

        retried = 0
        for record in records:
            await self._audit.log_notification_event(
                record.id, "retried", f"Manual retry after {record.retry_count} attempts", user_id
            )
            config = await self._router.get_notification_config(record.facility_id)
            message = NotificationMessage(
                id=record.id,
                incident_id=record.incident_id,
                facility_id=record.facility_id,
                severity=record.severity,
                message_type=record.message_type,
                recipients=list(record.recipients),
                subject=record.subject,
                body=record.body,
                channels=list(record.channels),
                webhook_url=config.webhook_url,
                max_retries=record.max_retries,
                retry_count=record.retry_count,
                delivered_to=set(record.delivered_recipients or []),
            )
            try:
                await self.send_notification(message, user_id)
                retried += 1
            except DeliveryError as e:
                await self._audit.log_notification_event(
                    record.id, "retry_failed", e.message, user_id
                )

        logger.info(f"Retried {retried}/{len(records)} failed notifications for {incident_id}")
        return retried

    async def has_notification(
        self, incident_id: UUID, message_type: NotificationType
    ) -> bool:
        """Whether a notification of this type was already recorded."""
        result = await self._session.execute(
            select(NotificationRecord.id).where(
                NotificationRecord.incident_id == incident_id,
                NotificationRecord.message_type == message_type,
            )
        )
        return result.first() is not None

    async def has_scheduled(
        self, incident_id: UUID, message_type: NotificationType
    ) -> bool:
        """Whether a queued entry of this type is still waiting to be sent."""
        result = await self._session.execute(
            select(EmailAlertQueueEntry.id).where(
                EmailAlertQueueEntry.incident_id == incident_id,
                EmailAlertQueueEntry.message_type == message_type,
                EmailAlertQueueEntry.status.in_((QueueStatus.QUEUED, QueueStatus.SENDING)),
            )
        )
        return result.first() is not None

    async def get_notification_stats(self, facility_id: UUID | None = None) -> NotificationStats:
        query = select(NotificationRecord.status, func.count(NotificationRecord.id)).group_by(
            NotificationRecord.status
        )
        queue_query = select(func.count(EmailAlertQueueEntry.id)).where(
            EmailAlertQueueEntry.status == QueueStatus.QUEUED
        )
        if facility_id:
            query = query.where(NotificationRecord.facility_id == facility_id)
            queue_query = queue_query.where(EmailAlertQueueEntry.facility_id == facility_id)

        counts = {status: count for status, count in (await self._session.execute(query)).all()}
        queued_entries = (await self._session.execute(queue_query)).scalar_one()

        sent = counts.get(NotificationStatus.SENT, 0) + counts.get(NotificationStatus.DELIVERED, 0)
        failed = counts.get(NotificationStatus.FAILED, 0)
        queued = (
            counts.get(NotificationStatus.PENDING, 0)
            + counts.get(NotificationStatus.QUEUED, 0)
            + queued_entries
        )
        attempted = sent + failed

        return NotificationStats(
            total_sent=sent,
            total_failed=failed,
            total_queued=queued,
            success_rate=round(sent / attempted * 100, 2) if attempted else 0.0,
        )

    async def get_notification_audit_log(self, notification_id: UUID):
        return await self._audit.get_notification_audit_log(notification_id)

    # =========================================================================
    # EMAIL ALERT QUEUE
    # =========================================================================

    async def queue_email_alert(
        self,
        facility_id: UUID,
        recipient_email: str,
        recipient_type: RecipientType | str,
        subject: str,
        body: str,
        priority: QueuePriority | str = QueuePriority.MEDIUM,
        incident_id: UUID | None = None,
        scheduled_for: datetime | None = None,
        message_type: NotificationType | None = None,
    ) -> EmailAlertQueueEntry:
        """Validate and queue an alert; it goes out when the sweep finds it due."""
        if not facility_id:
            raise ValidationError("Facility ID is required", code="MISSING_FACILITY_ID")
        if not is_valid_email(recipient_email or ""):
            raise ValidationError(
                f"Invalid email address: {recipient_email}",
                context={"field": "recipient_email"},
            )
        if not subject or not subject.strip():
            raise ValidationError("Subject is required", context={"field": "subject"})
        if not body or not body.strip():
            raise ValidationError("Body is required", context={"field": "body"})
        try:
            recipient_type = RecipientType(recipient_type)
            priority = QueuePriority(priority)
        except ValueError as e:
            raise ValidationError(str(e))

        if scheduled_for is None:
            scheduled_for = datetime.now(timezone.utc) + timedelta(
                minutes=self._settings.notification_delay_minutes
            )

        entry = EmailAlertQueueEntry(
            facility_id=facility_id,
            incident_id=incident_id,
            recipient_email=recipient_email,
            recipient_type=recipient_type,
            subject=subject,
            body=body,
            priority=priority,
            status=QueueStatus.QUEUED,
            message_type=message_type,
            scheduled_for=scheduled_for,
            max_retries=self._settings.notification_max_retries,
        )
        self._session.add(entry)
        await self._session.flush()

        logger.info(
            f"Queued {priority.value} email alert {entry.id} for {recipient_type.value} "
            f"at {scheduled_for.isoformat()}"
        )
        return entry

    async def schedule_delayed_notification(
        self,
        incident_id: UUID,
        facility_id: UUID,
        delay_minutes: int | None = None,
    ) -> UUID:
        """Queue a regulatory notice that the sweep renders and sends later."""
        incident = await self._store.get_incident_by_id(incident_id, facility_id)
        if not incident:
            raise NotFoundError(f"Incident {incident_id} not found")

        config = await self._router.get_notification_config(facility_id)
        if delay_minutes is None:
            delay_minutes = config.notification_delay_minutes

        critical = incident.severity_level == SeverityLevel.CRITICAL
        entry = await self.queue_email_alert(
            facility_id=facility_id,
            incident_id=incident_id,
            recipient_email=config.regulatory_bodies[0],
            recipient_type=RecipientType.REGULATOR,
            subject=f"Scheduled regulatory notice for {incident.incident_number}",
            body="Rendered from the incident record when sent.",
            priority=QueuePriority.URGENT if critical else QueuePriority.HIGH,
            scheduled_for=datetime.now(timezone.utc) + timedelta(minutes=delay_minutes),
            message_type=NotificationType.REGULATORY,
        )
        return entry.id

    async def _due_entries(self, limit: int, scheduled: bool) -> Sequence[EmailAlertQueueEntry]:
        priority_rank = case(PRIORITY_RANK, value=EmailAlertQueueEntry.priority, else_=0)
        query = select(EmailAlertQueueEntry).where(
            EmailAlertQueueEntry.status == QueueStatus.QUEUED,
            EmailAlertQueueEntry.scheduled_for <= datetime.now(timezone.utc),
        )
        if scheduled:
            query = query.where(EmailAlertQueueEntry.message_type.is_not(None))
        else:
            query = query.where(EmailAlertQueueEntry.message_type.is_(None))

        result = await self._session.execute(
            query.order_by(priority_rank.desc(), EmailAlertQueueEntry.created_at.asc()).limit(limit)
        )
        return result.scalars().all()

    async def _claim(self, entry: EmailAlertQueueEntry) -> bool:
        """queued -> sending; False if another sweep claimed it first."""
        result = await self._session.execute(
            update(EmailAlertQueueEntry)
            .where(
                EmailAlertQueueEntry.id == entry.id,
                EmailAlertQueueEntry.status == QueueStatus.QUEUED,
            )
            .values(status=QueueStatus.SENDING)
        )
        return result.rowcount == 1

    async def process_email_alerts(self, batch_size: int | None = None) -> SweepResult:
        """Send due plain email alerts, highest priority first."""
        sweep = SweepResult()
        entries = await self._due_entries(batch_size or self._settings.sweep_batch_size, False)

        for entry in entries:
            if not await self._claim(entry):
                continue
            sweep.processed += 1
            try:
                await self._send_with_retry(
                    lambda: self._email.send_to(entry.recipient_email, entry.subject, entry.body),
                    "email",
                )
                await self._mark_entry_sent(entry)
                sweep.sent += 1
            except Exception as e:
                await self._handle_entry_failure(entry, e, sweep)

        await self._session.flush()
        logger.info(
            f"Email alert sweep: {sweep.processed} processed, {sweep.sent} sent, "
            f"{sweep.requeued} requeued, {sweep.failed} failed"
        )
        return sweep

    async def process_scheduled_notifications(self, batch_size: int | None = None) -> SweepResult:
        """
        Render and send due scheduled incident notifications.

        Delivery goes through send_notification, which spends the message's
        own retry budget. A message that exhausts it is terminal, so its
        DeliveryError is not retryable and the entry fails on that sweep
        instead of being requeued. Retryable failures, such as a transient
        store error while loading the incident, requeue under the entry's
        max_retries.
        """
        sweep = SweepResult()
        entries = await self._due_entries(batch_size or self._settings.sweep_batch_size, True)

        for entry in entries:
            if not await self._claim(entry):
                continue
            sweep.processed += 1
            try:
                await self._send_scheduled(entry)
                await self._mark_entry_sent(entry)
                sweep.sent += 1
            except Exception as e:
                await self._handle_entry_failure(entry, e, sweep)

        await self._session.flush()
        logger.info(
            f"Scheduled notification sweep: {sweep.processed} processed, "
            f"{sweep.sent} sent, {sweep.failed} failed"
        )
        return sweep

    async def _send_scheduled(self, entry: EmailAlertQueueEntry) -> None:
        incident = await self._store.get_incident_by_id(entry.incident_id)
        if incident is None:
            raise NotFoundError(f"Incident {entry.incident_id} not found", retryable=False)

        if entry.message_type == NotificationType.REGULATORY:
            if incident.regulatory_notification_sent:
                logger.info(
                    f"Regulatory notice for {incident.incident_number} already sent, "
                    f"skipping queued entry {entry.id}"
                )
                return
            config = await self._router.get_notification_config(incident.facility_id)
            await self.send_notification(self._router.build_regulatory_message(incident, config))
            await self._store.mark_regulatory_notification_sent(incident.id)
            return

        config = await self._router.get_notification_config(incident.facility_id)
        message = self._build_scheduled(incident, config, entry)
        await self.send_notification(message)

    def _build_scheduled(
        self, incident: Incident, config, entry: EmailAlertQueueEntry
    ) -> NotificationMessage:
        if entry.message_type == NotificationType.CLINIC_MANAGER:
            message = self._router.build_clinic_manager_message(incident, config)
            if message is not None:
                return message
        return self._router.build_internal_message(
            incident, config, recipients=[entry.recipient_email], custom_message=entry.body
        )

    async def _mark_entry_sent(self, entry: EmailAlertQueueEntry) -> None:
        entry.status = QueueStatus.SENT
        entry.sent_at = datetime.now(timezone.utc)
        entry.error_message = None
        await self._audit.log_notification_event(entry.id, "sent", f"Sent to {entry.recipient_email}")

    async def _handle_entry_failure(
        self, entry: EmailAlertQueueEntry, exc: Exception, sweep: SweepResult
    ) -> None:
        """Requeue with backoff, or fail the entry once its budget is spent."""
        retryable = exc.retryable if isinstance(exc, IncidentError) else True
        if not isinstance(exc, IncidentError):
            logger.exception(f"Unexpected error processing queue entry {entry.id}")

        entry.retry_count += 1
        entry.error_message = str(exc)
        sweep.errors.append(f"Entry {entry.id}: {exc}")

        if retryable and entry.retry_count < entry.max_retries:
            wait_time = backoff_delay(
                entry.retry_count, self._settings.notification_retry_delay_seconds, "exponential"
            )
            entry.status = QueueStatus.QUEUED
            entry.scheduled_for = datetime.now(timezone.utc) + timedelta(seconds=wait_time)
            sweep.requeued += 1
            await self._audit.log_notification_event(
                entry.id, "retry_scheduled", f"Attempt {entry.retry_count} failed: {exc}"
            )
        else:
            entry.status = QueueStatus.FAILED
            sweep.failed += 1
            logger.error(f"Queue entry {entry.id} failed permanently: {exc}")
            await self._audit.log_notification_event(entry.id, "failed", str(exc))
