"""Tests for the notification sweep job against a file-backed SQLite database."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine

from bi_incidents.core.database import build_session_factory
from bi_incidents.jobs.notification_sweep import run_notification_sweep
from bi_incidents.models import (
    Base,
    EmailAlertQueueEntry,
    QueuePriority,
    QueueStatus,
    RecipientType,
)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'sweep.db'}"


async def _seed(database_url: str, *recipients: str) -> None:
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = build_session_factory(engine)
    async with factory() as session:
        async with session.begin():
            for recipient in recipients:
                session.add(
                    EmailAlertQueueEntry(
                        facility_id=uuid4(),
                        recipient_email=recipient,
                        recipient_type=RecipientType.SUPERVISOR,
                        subject="Weekly BI summary",
                        body="No open incidents",
                        priority=QueuePriority.MEDIUM,
                        status=QueueStatus.QUEUED,
                        scheduled_for=datetime.now(timezone.utc) - timedelta(minutes=5),
                    )
                )
    await engine.dispose()


async def _statuses(database_url: str) -> dict[str, QueueStatus]:
    engine = create_async_engine(database_url)
    factory = build_session_factory(engine)
    async with factory() as session:
        entries = (await session.execute(select(EmailAlertQueueEntry))).scalars().all()
        statuses = {entry.recipient_email: entry.status for entry in entries}
    await engine.dispose()
    return statuses


class TestNotificationSweep:
    async def test_sends_due_alerts_and_commits(self, database_url, settings, email_sender):
        await _seed(database_url, "lead@clinic.test", "qa@clinic.test")

        results = await run_notification_sweep(
            database_url, email_sender=email_sender, settings=settings
        )

        assert results["alerts_sent"] == 2
        assert results["scheduled_sent"] == 0
        assert results["completed_at"] is not None
        assert sorted(email_sender.recipients()) == ["lead@clinic.test", "qa@clinic.test"]
        assert await _statuses(database_url) == {
            "lead@clinic.test": QueueStatus.SENT,
            "qa@clinic.test": QueueStatus.SENT,
        }

    async def test_failures_are_requeued_and_alerted(
        self, database_url, settings, email_sender, webhook
    ):
        settings.alert_webhook_url = "https://alerts.clinic.test/hook"
        email_sender.failing.add("qa@clinic.test")
        await _seed(database_url, "qa@clinic.test")

        results = await run_notification_sweep(
            database_url,
            email_sender=email_sender,
            settings=settings,
            webhook_transport=webhook.transport,
        )

        assert results["alerts_requeued"] == 1
        assert results["errors"]
        assert await _statuses(database_url) == {"qa@clinic.test": QueueStatus.QUEUED}
        # Requeues are not permanent failures, so no operator alert yet
        assert webhook.requests == []

    async def test_crash_alerts_and_reraises(self, database_url, settings, webhook):
        settings.alert_webhook_url = "https://alerts.clinic.test/hook"

        # No tables: the first query fails
        with pytest.raises(OperationalError):
            await run_notification_sweep(
                database_url, settings=settings, webhook_transport=webhook.transport
            )

        assert len(webhook.requests) == 1
        assert webhook.requests[0].url.host == "alerts.clinic.test"
