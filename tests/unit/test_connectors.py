"""Unit tests for external connectors."""

import json
import smtplib
from types import SimpleNamespace

import httpx
import pytest
from twilio.base.exceptions import TwilioRestException

from hsse_escalation.config import settings
from hsse_escalation.connectors import email_smtp
from hsse_escalation.connectors.email_smtp import SMTPEmailSender
from hsse_escalation.connectors.incident_api import IncidentApiClient, snapshot_from_json
from hsse_escalation.connectors.twilio_sms import TwilioSMSSender
from hsse_escalation.connectors.webhook import WebhookChannelSender
from hsse_escalation.models.incident import IncidentSeverity, IncidentStatus
from hsse_escalation.models.rule import NotificationChannel
from tests.conftest import make_incident


def webhook(handler) -> WebhookChannelSender:
    return WebhookChannelSender(
        "https://push.example.org/send",
        api_key="secret",
        service_name="push_gateway",
        transport=httpx.MockTransport(handler),
    )


class TestWebhookChannelSender:
    """Test the push/in-app webhook sender."""

    async def test_accepted_with_message_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"message_id": "push-77"})

        result = await webhook(handler).send(NotificationChannel.PUSH, "device-1", "Title", "Body")

        assert result.accepted is True
        assert result.provider_message_id == "push-77"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"channel": "push", "recipient": "device-1", "title": "Title", "body": "Body"}

    @pytest.mark.parametrize("status,retryable", [(503, True), (429, True), (400, False)])
    async def test_error_statuses(self, status, retryable):
        result = await webhook(lambda request: httpx.Response(status, text="nope")).send(
            NotificationChannel.PUSH, "device-1", "Title", "Body"
        )

        assert result.accepted is False
        assert result.retryable is retryable
        assert f"HTTP {status}" in result.error

    async def test_unreachable_gateway_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await webhook(handler).send(NotificationChannel.IN_APP, "user-1", "Title", "Body")

        assert result.accepted is False
        assert result.retryable is True

    async def test_unconfigured_endpoint(self):
        result = await WebhookChannelSender("").send(NotificationChannel.PUSH, "device-1", "T", "B")

        assert result.accepted is False
        assert "not configured" in result.error


class FakeTwilioClient:
    def __init__(self, error=None):
        self.error = error
        self.created = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.created.append(kwargs)
        return SimpleNamespace(sid="SM0001")


class TestTwilioSMSSender:
    """Test the Twilio SMS sender."""

    @pytest.fixture(autouse=True)
    def sms_enabled(self, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_SMS_ALERTS", True)

    async def test_sends_and_returns_sid(self):
        client = FakeTwilioClient()
        sender = TwilioSMSSender(client=client, from_number="+15550000000")

        result = await sender.send(NotificationChannel.SMS, "+6281100000011", "ignored", "x" * 2000)

        assert result.accepted is True
        assert result.provider_message_id == "SM0001"
        assert len(client.created[0]["body"]) == 1600
        assert client.created[0]["to"] == "+6281100000011"

    async def test_invalid_number_is_rejected(self):
        client = FakeTwilioClient()
        result = await TwilioSMSSender(client=client).send(NotificationChannel.SMS, "12", "s", "body")

        assert result.accepted is False
        assert client.created == []

    @pytest.mark.parametrize("status,retryable", [(429, True), (500, True), (400, False)])
    async def test_rest_errors(self, status, retryable):
        error = TwilioRestException(status, "https://api.twilio.com", msg="failed", code=21610)
        sender = TwilioSMSSender(client=FakeTwilioClient(error=error))

        result = await sender.send(NotificationChannel.SMS, "+6281100000011", "s", "body")

        assert result.accepted is False
        assert result.retryable is retryable

    async def test_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "ENABLE_SMS_ALERTS", False)

        result = await TwilioSMSSender(client=FakeTwilioClient()).send(
            NotificationChannel.SMS, "+6281100000011", "s", "body"
        )

        assert result.error == "SMS alerts are disabled"


class FakeSMTP:
    error = None
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        pass

    def sendmail(self, from_addr, to_addrs, message):
        if FakeSMTP.error is not None:
            raise FakeSMTP.error
        FakeSMTP.sent.append((from_addr, to_addrs, message))


class TestSMTPEmailSender:
    """Test the SMTP email sender."""

    @pytest.fixture(autouse=True)
    def fake_smtp(self, monkeypatch):
        FakeSMTP.error = None
        FakeSMTP.sent = []
        monkeypatch.setattr(email_smtp.smtplib, "SMTP", FakeSMTP)

    def sender(self) -> SMTPEmailSender:
        return SMTPEmailSender(host="smtp.example.org", port=25, username="", use_tls=False)

    async def test_sends_with_message_id(self):
        result = await self.sender().send(NotificationChannel.EMAIL, "a@example.org", "Subject", "Body")

        assert result.accepted is True
        assert result.provider_message_id.startswith("<")
        assert FakeSMTP.sent[0][1] == ["a@example.org"]

    async def test_refused_recipient_is_permanent(self):
        FakeSMTP.error = smtplib.SMTPRecipientsRefused({"a@example.org": (550, b"no such user")})

        result = await self.sender().send(NotificationChannel.EMAIL, "a@example.org", "Subject", "Body")

        assert result.accepted is False
        assert result.retryable is False

    async def test_temporary_failure_is_retryable(self):
        FakeSMTP.error = smtplib.SMTPResponseException(451, b"try again later")

        result = await self.sender().send(NotificationChannel.EMAIL, "a@example.org", "Subject", "Body")

        assert result.retryable is True
        assert result.error == "SMTP 451: try again later"

    async def test_unconfigured(self):
        result = await SMTPEmailSender(host="").send(NotificationChannel.EMAIL, "a@example.org", "S", "B")
        assert result.error == "SMTP is not configured"


class TestSnapshotFromJson:
    """Test incident payload parsing."""

    def test_camel_case_payload(self):
        snapshot = snapshot_from_json({
            "id": "17",
            "severity": "Critical",
            "status": "InProgress",
            "createdAt": "2024-05-01T08:30:00Z",
            "lastResponseAt": None,
            "department": "Operations",
            "reporterName": "Ayu",
        })

        assert snapshot.id == 17
        assert snapshot.severity == IncidentSeverity.CRITICAL
        assert snapshot.status == IncidentStatus.IN_PROGRESS
        assert snapshot.created_at.tzinfo is not None
        assert snapshot.reporter_name == "Ayu"

    @pytest.mark.parametrize("raw", ["IN_PROGRESS", "in-progress", "in_progress"])
    def test_status_spellings(self, raw):
        snapshot = snapshot_from_json(
            {"id": 1, "severity": "low", "status": raw, "created_at": "2024-05-01T08:30:00+00:00"}
        )
        assert snapshot.status == IncidentStatus.IN_PROGRESS

    def test_missing_created_at(self):
        with pytest.raises(ValueError):
            snapshot_from_json({"id": 1, "severity": "low", "status": "open"})


class TestIncidentApiClient:
    """Test the incident API client."""

    def client(self, handler) -> IncidentApiClient:
        return IncidentApiClient("https://hsse.example.org/api", token="t", transport=httpx.MockTransport(handler))

    async def test_open_incidents_skip_bad_records(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/incidents"
            assert request.url.params["open"] == "true"
            return httpx.Response(200, json={"items": [
                {"id": 1, "severity": "high", "status": "Open", "createdAt": "2024-05-01T08:00:00Z"},
                {"id": 2, "severity": "unknown", "status": "Open", "createdAt": "2024-05-01T08:00:00Z"},
                {"id": 3, "severity": "low", "status": "Closed", "createdAt": "2024-05-01T08:00:00Z"},
            ]})

        snapshots = await self.client(handler).get_open_incident_snapshots()

        assert [s.id for s in snapshots] == [1]

    async def test_single_incident_not_found(self):
        snapshot = await self.client(lambda request: httpx.Response(404)).get_incident_snapshot(99)
        assert snapshot is None

    async def test_apply_posts_action(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"details": "Assigned to safety_officer"})

        details = await self.client(handler).apply(
            make_incident(incident_id=5), "assign", "safety_officer", {"note": "urgent"}
        )

        assert details == "Assigned to safety_officer"
        assert seen["path"] == "/api/incidents/5/escalation-actions"
        assert seen["body"] == {"action_type": "assign", "target": "safety_officer", "parameters": {"note": "urgent"}}

    async def test_apply_failure_raises(self):
        client = self.client(lambda request: httpx.Response(500))

        with pytest.raises(httpx.HTTPStatusError):
            await client.apply(make_incident(), "escalate", "department_manager", {})
