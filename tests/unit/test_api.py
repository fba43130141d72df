"""Unit tests for the HTTP API."""

import httpx
import pytest
import pytest_asyncio

from hsse_escalation.escalation.contacts import ContactDirectory
from hsse_escalation.escalation.rules import ActionDefinition, RuleDefinition
from hsse_escalation.main import app, get_services
from hsse_escalation.models.incident import IncidentSeverity
from hsse_escalation.models.rule import ActionType, NotificationChannel
from hsse_escalation.services.container import build_services
from tests.conftest import TEST_CONTACTS, FakeIncidentActions, FakeIncidentApi, make_incident

INCIDENT_JSON = {
    "id": 1,
    "severity": "critical",
    "status": "open",
    "created_at": "2024-05-01T10:00:00Z",
    "title": "Forklift collision",
    "department": "Operations",
}


@pytest.fixture
def incident_api():
    return FakeIncidentApi([make_incident(incident_id=1), make_incident(incident_id=2, severity=IncidentSeverity.LOW)])


@pytest_asyncio.fixture
async def services(session_factory, senders, incident_api):
    services = build_services(
        session_factory,
        senders=senders,
        incident_api=incident_api,
        user_directory=ContactDirectory(contacts=TEST_CONTACTS),
        incident_actions=FakeIncidentActions(),
    )
    await services.rule_repository.save_rule(RuleDefinition(
        name="Critical to safety officer",
        trigger_severities=frozenset({IncidentSeverity.CRITICAL}),
        actions=(ActionDefinition(
            action_type=ActionType.NOTIFY,
            target="SafetyOfficer",
            template_id="incident_critical",
            channels=(NotificationChannel.EMAIL,),
        ),),
    ))
    services.dispatcher.start()
    yield services
    await services.dispatcher.stop(drain=True, timeout=2)


@pytest_asyncio.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_detailed_health_checks_database(self, client):
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "healthy"
        assert body["components"]["database"]["status"] == "healthy"
        assert body["dispatcher_running"] is True


class TestIncidentEndpoints:
    """Test evaluation and history endpoints."""

    async def test_evaluate_fires_once_and_records_history(self, client, services):
        first = await client.post("/api/v1/incidents/evaluate", json=INCIDENT_JSON)
        second = await client.post("/api/v1/incidents/evaluate", json=INCIDENT_JSON)
        await services.dispatcher.join()

        assert first.status_code == 200
        [outcome] = first.json()["outcomes"]
        assert outcome["rule_name"] == "Critical to safety officer"
        assert outcome["is_successful"] is True
        assert second.json()["outcomes"] == []

        history = (await client.get("/api/v1/incidents/1/escalation-history")).json()
        assert len(history) == 1
        assert history[0]["executed_by"] == "system"

        [notification] = (await client.get("/api/v1/incidents/1/notifications")).json()
        assert notification["status"] == "sent"
        assert notification["channel"] == "email"
        assert notification["metadata"]["rule_name"] == "Critical to safety officer"

    async def test_invalid_payload_is_rejected(self, client):
        response = await client.post("/api/v1/incidents/evaluate", json={**INCIDENT_JSON, "severity": "catastrophic"})
        assert response.status_code == 422

    async def test_manual_escalation_fetches_incident(self, client):
        response = await client.post(
            "/api/v1/incidents/2/escalate",
            json={"reason": "No response from site", "escalated_by": "jane.doe", "channels": ["email"]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["rule_name"] == "Manual Escalation"
        assert body["rule_id"] is None
        assert len(body["notification_ids"]) == 2

    async def test_manual_escalation_unknown_incident(self, client):
        response = await client.post(
            "/api/v1/incidents/404/escalate",
            json={"reason": "Check", "escalated_by": "jane.doe"},
        )

        assert response.status_code == 404
        assert response.json()["path"] == "/api/v1/incidents/404/escalate"

    async def test_manual_escalation_id_mismatch(self, client):
        response = await client.post(
            "/api/v1/incidents/9/escalate",
            json={"reason": "Check", "escalated_by": "jane.doe", "incident": INCIDENT_JSON},
        )
        assert response.status_code == 400


class TestNotificationEndpoints:
    """Test delivery receipts over HTTP."""

    async def test_delivered_then_read(self, client, services):
        await client.post("/api/v1/incidents/evaluate", json=INCIDENT_JSON)
        await services.dispatcher.join()
        [notification] = await services.audit_store.get_notification_history(1)

        delivered = await client.post(f"/api/v1/notifications/{notification.id}/delivered")
        read = await client.post(f"/api/v1/notifications/{notification.id}/read")

        assert delivered.json() == {"notification_id": notification.id, "applied": True, "status": "delivered"}
        assert read.json()["status"] == "read"

    async def test_delivered_on_failed_row_is_not_applied(self, client, services):
        row = await services.audit_store.create_notification(
            recipient_id="safety_officer",
            recipient_type="user",
            template_id="incident_created",
            channel=NotificationChannel.EMAIL,
            subject="s",
            content="c",
            incident_id=3,
        )
        await services.audit_store.mark_notification_failed(row.id, "mailbox full")

        response = await client.post(f"/api/v1/notifications/{row.id}/delivered")

        assert response.status_code == 200
        assert response.json()["applied"] is False
        assert response.json()["status"] == "failed"

    async def test_unknown_notification(self, client):
        response = await client.post("/api/v1/notifications/999/delivered")
        assert response.status_code == 404

    async def test_provider_status(self, client, services):
        await client.post("/api/v1/incidents/evaluate", json=INCIDENT_JSON)
        await services.dispatcher.join()

        response = await client.post(
            "/api/v1/notifications/provider-status",
            json={"provider_message_id": "email-1", "status": "delivered"},
        )

        assert response.json() == {"provider_message_id": "email-1", "applied": True}


class TestEscalationEndpoints:
    """Test sweep and status endpoints."""

    async def test_sweep(self, client):
        response = await client.post("/api/v1/escalation/sweep")

        assert response.status_code == 200
        body = response.json()
        assert body["evaluated"] == 2
        assert body["actions"] == 1
        assert body["failed"] == 0

    async def test_status(self, client):
        body = (await client.get("/api/v1/escalation/status")).json()

        assert body["status"] == "stopped"
        assert body["dispatcher"]["running"] is True
