"""Shared fixtures: an in-memory SQLite database and a wired IncidentService."""

import os

# Must be set before bi_incidents builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from bi_incidents.core.config import Settings
from bi_incidents.core.database import build_session_factory
from bi_incidents.models import Base
from bi_incidents.services import (
    CreateIncidentParams,
    EventBroadcaster,
    IncidentService,
    StaticFacilityDirectory,
)


class FakeEmailSender:
    """
    Records sent mail.

    Addresses in `failing` always raise ConnectionError. `fail_next` fails
    that many upcoming calls, and `fail_counts` fails an address that many
    more times.
    """

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.fail_all = False
        self.fail_next = 0
        self.fail_counts: dict[str, int] = {}

    async def send_email(self, to: str, subject: str, body: str) -> None:
        self.calls.append(to)
        if self.fail_all or to in self.failing:
            raise ConnectionError(f"SMTP unreachable for {to}")
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError(f"SMTP unreachable for {to}")
        if self.fail_counts.get(to):
            self.fail_counts[to] -= 1
            raise ConnectionError(f"SMTP unreachable for {to}")
        self.sent.append((to, subject, body))

    def recipients(self) -> list[str]:
        return [to for to, _, _ in self.sent]


class WebhookRecorder:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine) -> AsyncSession:
    factory = build_session_factory(engine)
    async with factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        store_retry_delay_seconds=0,
        notification_retry_delay_seconds=0,
    )


@pytest.fixture
def facility_id() -> UUID:
    return uuid4()


@pytest.fixture
def operator_id() -> UUID:
    return uuid4()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def service(
    session, settings, facility_id, operator_id, email_sender, webhook, broadcaster
) -> IncidentService:
    return IncidentService(
        session,
        StaticFacilityDirectory(facility_id, operator_id),
        settings=settings,
        email_sender=email_sender,
        webhook_transport=webhook.transport,
        broadcaster=broadcaster,
    )


@pytest.fixture
def make_params(facility_id, operator_id):
    """Factory for CreateIncidentParams with sensible defaults."""

    def make(**overrides) -> CreateIncidentParams:
        values = {
            "facility_id": facility_id,
            "detected_by_operator_id": operator_id,
            "affected_tools_count": 3,
            "affected_batch_ids": ["BATCH-001"],
            "failure_reason": "Growth observed in BI vial after 24h incubation",
        }
        values.update(overrides)
        return CreateIncidentParams(**values)

    return make
