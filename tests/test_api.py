"""End-to-end API tests over an in-process ASGI transport."""

from uuid import uuid4

import httpx
import pytest

from bi_incidents.core.database import get_session
from bi_incidents.core.dependencies import get_email_sender, get_webhook_transport
from bi_incidents.main import app

API = "/api/v1"


@pytest.fixture
async def client(session, email_sender, webhook, facility_id, operator_id):
    async def override_session():
        yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    app.dependency_overrides[get_webhook_transport] = lambda: webhook.transport

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Facility-ID": str(facility_id), "X-Operator-ID": str(operator_id)},
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def incident_payload() -> dict:
    return {
        "affected_tools_count": 4,
        "affected_batch_ids": ["BATCH-2025-031"],
        "failure_reason": "BI positive after steam cycle",
        "severity_level": "high",
    }


async def _create(client: httpx.AsyncClient, payload: dict) -> dict:
    response = await client.post(f"{API}/incidents", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestIncidentRoutes:
    async def test_create_incident(
        self, client, incident_payload, facility_id, operator_id, email_sender
    ):
        body = await _create(client, incident_payload)

        assert body["facility_id"] == str(facility_id)
        assert body["detected_by_operator_id"] == str(operator_id)
        assert body["status"] == "active"
        assert body["severity_level"] == "high"
        assert body["incident_number"].startswith("BI-FAIL-")
        assert body["regulatory_notification_sent"] is True
        assert len(email_sender.sent) == 1

    async def test_list_and_get(self, client, incident_payload):
        created = await _create(client, incident_payload)

        active = await client.get(f"{API}/incidents/active")
        single = await client.get(f"{API}/incidents/{created['id']}")

        assert [i["id"] for i in active.json()] == [created["id"]]
        assert single.json()["incident_number"] == created["incident_number"]

    async def test_unknown_incident_is_404(self, client):
        response = await client.get(f"{API}/incidents/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    async def test_service_validation_is_422(self, client, incident_payload):
        incident_payload["affected_batch_ids"] = ["A", "A"]

        response = await client.post(f"{API}/incidents", json=incident_payload)

        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    async def test_missing_facility_header_is_503(self, client):
        response = await client.get(
            f"{API}/incidents/active", headers={"X-Facility-ID": ""}
        )

        assert response.status_code == 503
        assert response.json()["error"] == "CONTEXT_UNAVAILABLE"

    async def test_malformed_facility_header_is_422(self, client):
        response = await client.get(
            f"{API}/incidents/active", headers={"X-Facility-ID": "facility-7"}
        )

        assert response.status_code == 422

    async def test_resolve_and_close(self, client, incident_payload):
        created = await _create(client, incident_payload)

        resolved = await client.post(
            f"{API}/incidents/{created['id']}/resolve", json={"notes": "Reprocessed"}
        )
        closed = await client.post(f"{API}/incidents/{created['id']}/close")
        again = await client.post(f"{API}/incidents/{created['id']}/close")

        assert resolved.json() == {"success": True, "message": "Incident resolved"}
        assert closed.status_code == 200
        assert again.status_code == 422

    async def test_status_and_activity(self, client, incident_payload):
        created = await _create(client, incident_payload)

        patched = await client.patch(
            f"{API}/incidents/{created['id']}/status", json={"status": "investigating"}
        )
        activity = await client.get(f"{API}/incidents/{created['id']}/activity")

        assert patched.status_code == 200
        types = {entry["activity_type"] for entry in activity.json()}
        assert types == {"incident_created", "status_changed"}


class TestWorkflowRoutes:
    async def test_advance_with_version(self, client, incident_payload):
        created = await _create(client, incident_payload)
        base = f"{API}/incidents/{created['id']}/workflow"
        steps = (await client.get(f"{base}/steps")).json()

        advanced = await client.post(
            f"{base}/advance",
            json={"step_id": steps[0]["id"], "expected_version": created["version"]},
        )
        stale = await client.post(
            f"{base}/advance",
            json={"step_id": steps[1]["id"], "expected_version": created["version"]},
        )
        status = (await client.get(base)).json()

        assert advanced.status_code == 200
        assert stale.status_code == 409
        assert stale.json()["error"] == "CONCURRENT_MODIFICATION"
        assert status["completed_steps"] == 1
        assert status["current_step"]["id"] == steps[1]["id"]
        assert status["overall_status"] == "active"

    async def test_cancel_then_reset(self, client, incident_payload):
        created = await _create(client, incident_payload)
        base = f"{API}/incidents/{created['id']}/workflow"

        cancelled = await client.post(f"{base}/cancel", json={"reason": "Mislabelled vial"})
        status = (await client.get(base)).json()
        reset = await client.post(f"{base}/reset", json={})

        assert cancelled.status_code == 200
        assert status["overall_status"] == "cancelled"
        assert reset.status_code == 200
        assert (await client.get(base)).json()["overall_status"] == "active"

    async def test_fail_requires_notes(self, client, incident_payload):
        created = await _create(client, incident_payload)
        base = f"{API}/incidents/{created['id']}/workflow"
        steps = (await client.get(f"{base}/steps")).json()

        response = await client.post(
            f"{base}/fail", json={"step_id": steps[0]["id"], "notes": ""}
        )

        assert response.status_code == 422


class TestToolRoutes:
    async def test_validate_tool(self, client, incident_payload):
        await _create(client, incident_payload)

        breach = await client.post(f"{API}/tools/BATCH-2025-031/validate")
        exposure = await client.post(f"{API}/tools/FORCEPS-7/validate")
        can_use = await client.get(f"{API}/tools/FORCEPS-7/can-use")

        assert breach.json()["validation_result"] == "quarantine_breach"
        assert exposure.json()["validation_result"] == "exposure_window"
        assert can_use.json() == {"tool_id": "FORCEPS-7", "can_use": False}


class TestNotificationRoutes:
    async def test_queue_and_sweep(self, client, email_sender):
        queued = await client.post(
            f"{API}/notifications/email-alerts",
            json={
                "recipient_email": "ops@stmarys-clinic.org",
                "recipient_type": "operator",
                "subject": "Sterilizer log review",
                "body": "Please review cycle 114",
                "priority": "high",
                "scheduled_for": "2020-01-01T00:00:00Z",
            },
        )
        sweep = await client.post(f"{API}/notifications/sweep")

        assert queued.status_code == 202
        assert sweep.json() == {"processed": 1, "sent": 1, "failed": 0, "requeued": 0}
        assert email_sender.recipients() == ["ops@stmarys-clinic.org"]

    async def test_invalid_recipient_is_rejected(self, client):
        response = await client.post(
            f"{API}/notifications/email-alerts",
            json={
                "recipient_email": "nobody",
                "recipient_type": "operator",
                "subject": "x",
                "body": "y",
            },
        )

        assert response.status_code == 422

    async def test_history_audit_and_stats(self, client, incident_payload):
        created = await _create(client, incident_payload)

        history = (await client.get(f"{API}/incidents/{created['id']}/notifications")).json()
        audit = (await client.get(f"{API}/notifications/{history[0]['id']}/audit")).json()
        stats = (await client.get(f"{API}/notifications/stats")).json()
        retry = (await client.post(f"{API}/incidents/{created['id']}/notifications/retry")).json()

        assert [n["message_type"] for n in history] == ["regulatory"]
        assert [entry["action"] for entry in audit] == ["sent"]
        assert stats["total_sent"] == 1
        assert stats["success_rate"] == 100.0
        assert retry == {"retried": 0}
