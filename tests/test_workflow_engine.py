"""
Tests for the Workflow Engine.

These tests verify:
1. INITIALIZE: the configured steps are created once, in order
2. ADVANCE: strict ordering, optimistic concurrency, incident status
3. CANCEL / RESET: skipped steps, investigating/active incident status
4. STATUS: progress, current step and estimated completion
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from bi_incidents.core.errors import ConcurrencyError, NotFoundError, ValidationError
from bi_incidents.models import IncidentStatus, StepStatus
from bi_incidents.services.audit import AuditService
from bi_incidents.services.incident_store import IncidentStore
from bi_incidents.services.workflow_engine import WorkflowEngine


@pytest.fixture
async def incident(session: AsyncSession, settings, make_params):
    return await IncidentStore(session, settings).create_incident(make_params())


@pytest.fixture
async def engine_with_steps(session: AsyncSession, settings, incident):
    engine = WorkflowEngine(session, settings=settings)
    steps = await engine.initialize_workflow(incident.id)
    return engine, steps


# =============================================================================
# TEST: INITIALIZE
# =============================================================================


class TestInitializeWorkflow:
    async def test_creates_configured_steps_in_order(self, engine_with_steps, settings):
        engine, steps = engine_with_steps

        assert [s.step_name for s in steps] == settings.workflow_step_names
        assert [s.position for s in steps] == list(range(len(steps)))
        assert all(s.status == StepStatus.PENDING for s in steps)

    async def test_is_idempotent(self, engine_with_steps, incident):
        engine, steps = engine_with_steps

        again = await engine.initialize_workflow(incident.id)

        assert [s.id for s in again] == [s.id for s in steps]

    async def test_unknown_incident(self, session: AsyncSession, settings):
        engine = WorkflowEngine(session, settings=settings)

        with pytest.raises(NotFoundError):
            await engine.initialize_workflow(uuid4())

    async def test_missing_steps_is_not_found(self, session: AsyncSession, settings, incident):
        engine = WorkflowEngine(session, settings=settings)

        with pytest.raises(NotFoundError):
            await engine.get_workflow_status(incident.id)
        with pytest.raises(NotFoundError):
            await engine.advance_step(incident.id, uuid4(), uuid4())


# =============================================================================
# TEST: ADVANCE
# =============================================================================


class TestAdvanceStep:
    async def test_advance_completes_and_starts_next(
        self, engine_with_steps, incident, operator_id
    ):
        engine, steps = engine_with_steps

        assert await engine.advance_step(incident.id, steps[0].id, operator_id, "Tools quarantined")

        assert steps[0].status == StepStatus.COMPLETED
        assert steps[0].completed_at is not None
        assert steps[0].assigned_operator_id == operator_id
        assert steps[0].notes == "Tools quarantined"
        assert steps[1].status == StepStatus.IN_PROGRESS
        assert steps[1].started_at is not None
        assert incident.status == IncidentStatus.IN_RESOLUTION

    async def test_at_most_one_step_in_progress(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps

        for step in steps[:2]:
            await engine.advance_step(incident.id, step.id, operator_id)

        in_progress = [s for s in steps if s.status == StepStatus.IN_PROGRESS]
        assert [s.id for s in in_progress] == [steps[2].id]

    async def test_last_step_only_completes(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps

        for step in steps:
            await engine.advance_step(incident.id, step.id, operator_id)

        assert all(s.status == StepStatus.COMPLETED for s in steps)
        # Resolution stays an explicit operator action
        assert incident.status == IncidentStatus.IN_RESOLUTION

    async def test_out_of_order_is_rejected(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps

        with pytest.raises(ValidationError) as exc_info:
            await engine.advance_step(incident.id, steps[2].id, operator_id)

        assert exc_info.value.code == "STEP_OUT_OF_ORDER"
        assert steps[2].status == StepStatus.PENDING

    async def test_unknown_step(self, engine_with_steps, incident, operator_id):
        engine, _ = engine_with_steps

        with pytest.raises(ValidationError):
            await engine.advance_step(incident.id, uuid4(), operator_id)

    async def test_completed_step_cannot_advance_again(
        self, engine_with_steps, incident, operator_id
    ):
        engine, steps = engine_with_steps
        await engine.advance_step(incident.id, steps[0].id, operator_id)

        with pytest.raises(ValidationError):
            await engine.advance_step(incident.id, steps[0].id, operator_id)

    async def test_stale_version_is_a_conflict(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps
        seen_version = incident.version
        await engine.advance_step(incident.id, steps[0].id, operator_id)

        with pytest.raises(ConcurrencyError):
            await engine.advance_step(
                incident.id, steps[1].id, operator_id, expected_version=seen_version
            )

        assert steps[1].status == StepStatus.IN_PROGRESS

    async def test_current_version_is_accepted(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps

        assert await engine.advance_step(
            incident.id, steps[0].id, operator_id, expected_version=incident.version
        )

    async def test_resolved_incident_cannot_advance(
        self, session, settings, engine_with_steps, incident, operator_id
    ):
        engine, steps = engine_with_steps
        await IncidentStore(session, settings).resolve_incident(incident.id, operator_id, "Done")

        with pytest.raises(ValidationError):
            await engine.advance_step(incident.id, steps[0].id, operator_id)


# =============================================================================
# TEST: FAIL / CANCEL / RESET
# =============================================================================


class TestFailCancelReset:
    async def test_failed_step_pauses_workflow(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps
        await engine.advance_step(incident.id, steps[0].id, operator_id)

        await engine.fail_step(incident.id, steps[1].id, operator_id, "Spore test positive")

        status = await engine.get_workflow_status(incident.id)
        assert steps[1].status == StepStatus.FAILED
        assert status.overall_status == "paused"
        with pytest.raises(ValidationError):
            await engine.advance_step(incident.id, steps[2].id, operator_id)

    async def test_cancel_skips_open_steps(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps
        await engine.advance_step(incident.id, steps[0].id, operator_id)

        assert await engine.cancel_workflow(incident.id, operator_id, "False positive")

        assert steps[0].status == StepStatus.COMPLETED
        assert all(s.status == StepStatus.SKIPPED for s in steps[1:])
        assert steps[1].notes == "Workflow cancelled: False positive"
        assert incident.status == IncidentStatus.INVESTIGATING
        assert "False positive" in incident.resolution_notes

        status = await engine.get_workflow_status(incident.id)
        assert status.overall_status == "cancelled"
        assert status.completed_steps == 1
        assert status.total_steps == len(steps)

    async def test_cancel_requires_reason(self, engine_with_steps, incident, operator_id):
        engine, _ = engine_with_steps

        with pytest.raises(ValidationError):
            await engine.cancel_workflow(incident.id, operator_id, "   ")

    async def test_cancel_with_nothing_open(self, engine_with_steps, incident, operator_id):
        engine, _ = engine_with_steps
        await engine.cancel_workflow(incident.id, operator_id, "First")

        with pytest.raises(ValidationError):
            await engine.cancel_workflow(incident.id, operator_id, "Second")

    async def test_reset_returns_everything_to_pending(
        self, engine_with_steps, incident, operator_id
    ):
        engine, steps = engine_with_steps
        await engine.advance_step(incident.id, steps[0].id, operator_id)
        await engine.cancel_workflow(incident.id, operator_id, "Wrong batch")

        assert await engine.reset_workflow(incident.id, operator_id, "Restart")

        for step in steps:
            assert step.status == StepStatus.PENDING
            assert step.started_at is None
            assert step.completed_at is None
            assert step.assigned_operator_id is None
        assert incident.status == IncidentStatus.ACTIVE
        assert incident.resolved_at is None

    async def test_reset_of_closed_incident_is_rejected(
        self, session, settings, engine_with_steps, incident, operator_id
    ):
        engine, _ = engine_with_steps
        store = IncidentStore(session, settings)
        await store.resolve_incident(incident.id, operator_id, "Done")
        await store.close_incident(incident.id, operator_id)

        with pytest.raises(ValidationError):
            await engine.reset_workflow(incident.id, operator_id)

    async def test_transitions_are_logged(
        self, session, engine_with_steps, incident, operator_id, facility_id
    ):
        engine, steps = engine_with_steps
        await engine.advance_step(incident.id, steps[0].id, operator_id)
        await engine.fail_step(incident.id, steps[1].id, operator_id, "Failed")
        await engine.reset_workflow(incident.id, operator_id)

        log = await AuditService(session).get_activity_log(facility_id, incident.id)
        assert {entry.activity_type for entry in log} == {
            "workflow_step_completed",
            "workflow_step_failed",
            "workflow_reset",
        }


# =============================================================================
# TEST: STATUS
# =============================================================================


class TestWorkflowStatus:
    async def test_fresh_workflow(self, engine_with_steps, incident):
        engine, steps = engine_with_steps

        status = await engine.get_workflow_status(incident.id)

        assert status.overall_status == "active"
        assert status.current_step.id == steps[0].id
        assert status.completed_steps == 0
        assert status.progress == 0
        assert status.estimated_completion is None

    async def test_progress_and_estimate(self, engine_with_steps, incident, operator_id, settings):
        engine, steps = engine_with_steps
        await engine.advance_step(incident.id, steps[0].id, operator_id)

        status = await engine.get_workflow_status(incident.id)

        assert status.current_step.id == steps[1].id
        assert status.completed_steps == 1
        assert status.progress == 25.0
        assert status.estimated_completion == steps[1].started_at + timedelta(
            minutes=settings.workflow_step_estimate_minutes
        )

    async def test_completed_workflow(self, engine_with_steps, incident, operator_id):
        engine, steps = engine_with_steps
        for step in steps:
            await engine.advance_step(incident.id, step.id, operator_id)

        status = await engine.get_workflow_status(incident.id)

        assert status.overall_status == "completed"
        assert status.progress == 100.0
        assert status.estimated_completion is None
