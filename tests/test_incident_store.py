"""
Tests for the Incident Store.

These tests verify:
1. CREATE: validation, numbering and the regulatory flag
2. READ: facility scoping, active filtering and history windows
3. UPDATE: resolve/close transitions and the regulatory marker
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from bi_incidents.core.errors import NotFoundError, TransientStoreError, ValidationError
from bi_incidents.models import Incident, IncidentStatus, SeverityLevel
from bi_incidents.services.incident_store import (
    CreateIncidentParams,
    IncidentStore,
    requires_regulatory_notification,
)
from bi_incidents.services.numbering import (
    IncidentNumbering,
    format_daily_number,
    format_facility_number,
)


# =============================================================================
# TEST: CREATE INCIDENT
# =============================================================================


class TestCreateIncident:
    """Tests for IncidentStore.create_incident."""

    async def test_create_incident_starts_active(self, session: AsyncSession, settings, make_params):
        store = IncidentStore(session, settings)

        incident = await store.create_incident(make_params())

        assert incident.id is not None
        assert incident.status == IncidentStatus.ACTIVE
        assert incident.severity_level == SeverityLevel.MEDIUM
        assert incident.regulatory_notification_sent is False
        assert incident.failure_date is not None

    async def test_incident_numbers_are_sequential_per_day(
        self, session: AsyncSession, settings, make_params
    ):
        store = IncidentStore(session, settings)
        today = datetime.now(timezone.utc)

        first = await store.create_incident(make_params())
        second = await store.create_incident(make_params(affected_batch_ids=["BATCH-002"]))

        assert first.incident_number == format_daily_number(1, today)
        assert second.incident_number == format_daily_number(2, today)

    async def test_numbering_is_scoped_by_facility(
        self, session: AsyncSession, settings, make_params
    ):
        store = IncidentStore(session, settings)

        first = await store.create_incident(make_params())
        other = await store.create_incident(make_params(facility_id=uuid4()))

        assert first.incident_number == other.incident_number

    async def test_batch_ids_are_trimmed(self, session: AsyncSession, settings, make_params):
        store = IncidentStore(session, settings)

        incident = await store.create_incident(
            make_params(affected_batch_ids=["  BATCH-001 ", "BATCH-002"])
        )

        assert incident.affected_batch_ids == ["BATCH-001", "BATCH-002"]

    @pytest.mark.parametrize("count", [0, -1, 10_001])
    async def test_rejects_invalid_tool_count(
        self, session: AsyncSession, settings, make_params, count
    ):
        store = IncidentStore(session, settings)

        with pytest.raises(ValidationError):
            await store.create_incident(make_params(affected_tools_count=count))

    async def test_rejects_missing_and_duplicate_batches(
        self, session: AsyncSession, settings, make_params
    ):
        store = IncidentStore(session, settings)

        with pytest.raises(ValidationError):
            await store.create_incident(make_params(affected_batch_ids=[]))
        with pytest.raises(ValidationError, match="Duplicate"):
            await store.create_incident(make_params(affected_batch_ids=["A", "A"]))
        with pytest.raises(ValidationError):
            await store.create_incident(make_params(affected_batch_ids=["   "]))

    async def test_rejects_overlong_failure_reason(
        self, session: AsyncSession, settings, make_params
    ):
        store = IncidentStore(session, settings)

        with pytest.raises(ValidationError):
            await store.create_incident(make_params(failure_reason="x" * 2001))

    def test_invalid_severity_is_a_validation_error(self, make_params):
        with pytest.raises(ValidationError):
            make_params(severity_level="catastrophic")

    def test_severity_string_is_coerced(self, make_params):
        params = make_params(severity_level="critical")
        assert params.severity_level == SeverityLevel.CRITICAL

    @pytest.mark.parametrize(
        "severity,tools,expected",
        [
            (SeverityLevel.LOW, 3, False),
            (SeverityLevel.MEDIUM, 10, False),
            (SeverityLevel.MEDIUM, 11, True),
            (SeverityLevel.HIGH, 1, True),
            (SeverityLevel.CRITICAL, 1, True),
        ],
    )
    def test_regulatory_flag(self, severity, tools, expected):
        assert requires_regulatory_notification(severity, tools) is expected


class TestNumbering:
    """Incident number formats."""

    def test_facility_format(self):
        facility_id = uuid4()
        now = datetime(2025, 1, 14, 12, 0, tzinfo=timezone.utc)

        number = format_facility_number(facility_id, 1003, now)

        prefix = facility_id.hex[:8].upper()
        assert number == f"BI-{prefix}-{int(now.timestamp() * 1000)}-003"

    async def test_skips_numbers_already_taken(
        self, session: AsyncSession, settings, make_params, facility_id
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())
        # Simulate a gap: the count says 0 but number 001 is taken
        incident.created_at = datetime.now(timezone.utc) - timedelta(days=2)
        await session.flush()

        number = await IncidentNumbering(session).next_number(facility_id)

        assert number != incident.incident_number
        assert number.endswith("-002")


# =============================================================================
# TEST: READ
# =============================================================================


class TestReadIncidents:
    """Tests for active lists, lookups and history."""

    async def test_active_excludes_resolved_and_other_facilities(
        self, session: AsyncSession, settings, make_params, facility_id, operator_id
    ):
        store = IncidentStore(session, settings)
        open_incident = await store.create_incident(make_params())
        resolved = await store.create_incident(make_params(affected_batch_ids=["B2"]))
        await store.create_incident(make_params(facility_id=uuid4()))
        await store.resolve_incident(resolved.id, operator_id, "Reprocessed")

        active = await store.get_active_incidents(facility_id)

        assert [i.id for i in active] == [open_incident.id]

    async def test_active_is_ordered_by_failure_date(
        self, session: AsyncSession, settings, make_params, facility_id
    ):
        store = IncidentStore(session, settings)
        now = datetime.now(timezone.utc)
        older = await store.create_incident(make_params(failure_date=now - timedelta(days=1)))
        newer = await store.create_incident(
            make_params(failure_date=now, affected_batch_ids=["B2"])
        )

        active = await store.get_active_incidents(facility_id)

        assert [i.id for i in active] == [newer.id, older.id]

    async def test_get_by_id_respects_facility(
        self, session: AsyncSession, settings, make_params, facility_id
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())

        assert await store.get_incident_by_id(incident.id, facility_id) is incident
        assert await store.get_incident_by_id(incident.id, uuid4()) is None
        assert await store.get_incident_by_id(uuid4()) is None

    async def test_get_or_raise(self, session: AsyncSession, settings):
        store = IncidentStore(session, settings)

        with pytest.raises(NotFoundError):
            await store.get_incident_or_raise(uuid4())

    async def test_history_window(self, session: AsyncSession, settings, make_params, facility_id):
        store = IncidentStore(session, settings)
        now = datetime.now(timezone.utc)
        recent = await store.create_incident(make_params(failure_date=now - timedelta(days=2)))
        await store.create_incident(
            make_params(failure_date=now - timedelta(days=60), affected_batch_ids=["OLD"])
        )

        history = await store.get_incident_history(
            facility_id, start_date=now - timedelta(days=7), end_date=now
        )

        assert [i.id for i in history] == [recent.id]

    async def test_history_rejects_inverted_and_ancient_ranges(
        self, session: AsyncSession, settings, facility_id
    ):
        store = IncidentStore(session, settings)
        now = datetime.now(timezone.utc)

        with pytest.raises(ValidationError):
            await store.get_incident_history(facility_id, now, now - timedelta(days=1))
        with pytest.raises(ValidationError):
            await store.get_incident_history(facility_id, now - timedelta(days=365 * 6))

    async def test_missing_facility_is_rejected(self, session: AsyncSession, settings):
        store = IncidentStore(session, settings)

        with pytest.raises(ValidationError):
            await store.get_active_incidents(None)


# =============================================================================
# TEST: UPDATE
# =============================================================================


class TestUpdateIncident:
    """Tests for resolve, status changes and close."""

    async def test_resolve_stamps_resolution(
        self, session: AsyncSession, settings, make_params, operator_id
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())

        assert await store.resolve_incident(incident.id, operator_id, "All tools reprocessed")

        assert incident.status == IncidentStatus.RESOLVED
        assert incident.resolved_by_operator_id == operator_id
        assert incident.resolution_notes == "All tools reprocessed"
        assert incident.resolved_at is not None

    async def test_resolve_twice_fails(
        self, session: AsyncSession, settings, make_params, operator_id
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())
        await store.resolve_incident(incident.id, operator_id, "Done")

        with pytest.raises(ValidationError):
            await store.resolve_incident(incident.id, operator_id, "Again")

    async def test_resolve_unknown_incident(self, session: AsyncSession, settings, operator_id):
        store = IncidentStore(session, settings)

        with pytest.raises(NotFoundError):
            await store.resolve_incident(uuid4(), operator_id, "Done")

    async def test_close_requires_resolved(
        self, session: AsyncSession, settings, make_params, operator_id
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())

        with pytest.raises(ValidationError):
            await store.close_incident(incident.id, operator_id)

        await store.resolve_incident(incident.id, operator_id, "Done")
        await store.close_incident(incident.id, operator_id)
        assert incident.status == IncidentStatus.CLOSED

    async def test_status_change_bumps_version(
        self, session: AsyncSession, settings, make_params, operator_id
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())
        version = incident.version

        await store.update_status(incident.id, IncidentStatus.INVESTIGATING, operator_id)

        assert incident.status == IncidentStatus.INVESTIGATING
        assert incident.version == version + 1

    async def test_mark_regulatory_notification_sent(
        self, session: AsyncSession, settings, make_params
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params(severity_level=SeverityLevel.HIGH))

        await store.mark_regulatory_notification_sent(incident.id)

        assert incident.regulatory_notification_sent is True
        assert incident.regulatory_notification_date is not None


# =============================================================================
# TEST: TRANSIENT WRITE FAILURES
# =============================================================================


@pytest.fixture
def fail_once(engine):
    """Make the first statement with a given prefix raise OperationalError."""
    listeners = []

    def install(prefix: str) -> list[str]:
        failures: list[str] = []

        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith(prefix) and not failures:
                failures.append(statement)
                raise OperationalError(statement, parameters, Exception("database is locked"))

        event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
        listeners.append(before_cursor_execute)
        return failures

    yield install

    for listener in listeners:
        event.remove(engine.sync_engine, "before_cursor_execute", listener)


class TestTransientWriteFailures:
    async def test_create_succeeds_on_second_attempt(
        self, session: AsyncSession, settings, make_params, fail_once
    ):
        failures = fail_once("INSERT INTO bi_failure_incidents")
        today = datetime.now(timezone.utc)

        incident = await IncidentStore(session, settings).create_incident(make_params())

        assert len(failures) == 1
        assert incident.incident_number == format_daily_number(1, today)
        numbers = (await session.execute(select(Incident.incident_number))).scalars().all()
        assert numbers == [incident.incident_number]

    async def test_resolve_succeeds_on_second_attempt(
        self, session: AsyncSession, settings, make_params, operator_id, fail_once
    ):
        store = IncidentStore(session, settings)
        incident = await store.create_incident(make_params())
        failures = fail_once("UPDATE bi_failure_incidents")

        assert await store.resolve_incident(incident.id, operator_id, "Re-sterilized")

        assert len(failures) == 1
        assert incident.status == IncidentStatus.RESOLVED
        assert incident.resolution_notes == "Re-sterilized"
        count = await session.scalar(
            select(func.count(Incident.id)).where(Incident.status == IncidentStatus.RESOLVED)
        )
        assert count == 1

    async def test_persistent_failure_surfaces_after_budget(
        self, session: AsyncSession, settings, make_params, engine
    ):
        def always_fail(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("INSERT INTO bi_failure_incidents"):
                raise OperationalError(statement, parameters, Exception("database is locked"))

        event.listen(engine.sync_engine, "before_cursor_execute", always_fail)
        try:
            with pytest.raises(TransientStoreError):
                await IncidentStore(session, settings).create_incident(make_params())
        finally:
            event.remove(engine.sync_engine, "before_cursor_execute", always_fail)

        # The session is still usable after the failed attempts
        assert await session.scalar(select(func.count(Incident.id))) == 0
