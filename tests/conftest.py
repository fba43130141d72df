"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import pytest
import pytest_asyncio

from hsse_escalation.escalation.contacts import ContactDirectory
from hsse_escalation.escalation.engine import EscalationEngine
from hsse_escalation.escalation.rules import RuleRepository, SqlRuleSource
from hsse_escalation.interfaces import SendResult
from hsse_escalation.models.database import build_engine, build_session_factory, create_tables
from hsse_escalation.models.incident import IncidentSeverity, IncidentSnapshot, IncidentStatus
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.notifications.dispatcher import NotificationDispatcher
from hsse_escalation.notifications.templates import YamlTemplateResolver
from hsse_escalation.storage.audit_store import AuditStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeChannelSender:
    """Records sends and answers with a fixed result."""

    def __init__(
        self,
        result: Optional[SendResult] = None,
        delay: float = 0,
        error: Optional[Exception] = None,
    ):
        self.result = result or SendResult(accepted=True)
        self.delay = delay
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, channel, recipient_contact, subject, content) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append({
            "channel": channel,
            "contact": recipient_contact,
            "subject": subject,
            "content": content,
        })
        if self.result.accepted and self.result.provider_message_id is None:
            return SendResult(accepted=True, provider_message_id=f"{channel.value}-{len(self.sent)}")
        return self.result


class FakeIncidentActions:
    """Incident mutation collaborator that records calls."""

    def __init__(self, fail_targets: Optional[set] = None):
        self.fail_targets = fail_targets or set()
        self.calls: List[Dict[str, Any]] = []

    async def apply(self, incident, action_type: str, target: str, parameters: Mapping[str, str]):
        self.calls.append({
            "incident_id": incident.id,
            "action_type": action_type,
            "target": target,
            "parameters": dict(parameters),
        })
        if target in self.fail_targets:
            raise RuntimeError(f"Could not {action_type} to {target}")
        return f"{action_type} -> {target}"


class FakeActionScheduler:
    """Keeps delayed jobs in memory until a test runs them."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}

    def schedule(self, job_id, run_at, func, *args, on_cancel=None) -> bool:
        if job_id in self.jobs:
            return False
        self.jobs[job_id] = {"run_at": run_at, "func": func, "args": args, "on_cancel": on_cancel}
        return True

    async def run_all(self) -> list:
        results = []
        for job_id in list(self.jobs):
            job = self.jobs.pop(job_id)
            results.append(await job["func"](*job["args"]))
        return results

    async def cancel_all(self, reason: str) -> list:
        results = []
        for job_id in list(self.jobs):
            job = self.jobs.pop(job_id)
            results.append(await job["on_cancel"](*job["args"], reason=reason))
        return results


class FakeIncidentApi:
    """Incident provider serving a fixed list of snapshots."""

    def __init__(self, incidents: Optional[List[IncidentSnapshot]] = None):
        self.incidents = list(incidents or [])
        self.applied: List[Dict[str, Any]] = []

    async def get_open_incident_snapshots(self) -> List[IncidentSnapshot]:
        return [i for i in self.incidents if i.is_open]

    async def get_incident_snapshot(self, incident_id: int) -> Optional[IncidentSnapshot]:
        for incident in self.incidents:
            if incident.id == incident_id:
                return incident
        return None

    async def apply(self, incident, action_type, target, parameters):
        self.applied.append({"incident_id": incident.id, "action_type": action_type, "target": target})
        return None


TEST_CONTACTS = {
    "users": {
        "safety_officer": {
            "name": "Safety Officer",
            "email": "safety.officer@harmoni360.com",
            "phone": "+6281100000011",
            "device_token": "device-safety-1",
        },
        "hse_manager": {
            "name": "HSE Manager",
            "email": "hse.manager@harmoni360.com",
            "phone": "+6281100000001",
        },
        "site_manager": {
            "name": "Site Manager",
            "email": "site.manager@harmoni360.com",
        },
    },
    "roles": {
        "SafetyOfficer": ["safety_officer"],
        "HSE_Manager": ["hse_manager"],
        "management": ["site_manager", "hse_manager"],
    },
    "departments": {
        "Operations": ["hse_manager", "safety_officer"],
    },
}


def make_incident(
    incident_id: int = 1,
    severity: IncidentSeverity = IncidentSeverity.CRITICAL,
    status: IncidentStatus = IncidentStatus.OPEN,
    age: timedelta = timedelta(hours=2),
    now: datetime = NOW,
    **kwargs: Any,
) -> IncidentSnapshot:
    return IncidentSnapshot(
        id=incident_id,
        severity=severity,
        status=status,
        created_at=now - age,
        title=kwargs.pop("title", f"Incident {incident_id}"),
        **kwargs,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Per-test SQLite database."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escalation_test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def audit_store(session_factory):
    return AuditStore(session_factory)


@pytest.fixture
def rule_repository(session_factory):
    return RuleRepository(session_factory)


@pytest.fixture
def email_sender():
    return FakeChannelSender()


@pytest.fixture
def sms_sender():
    return FakeChannelSender()


@pytest.fixture
def push_sender():
    return FakeChannelSender()


@pytest.fixture
def senders(email_sender, sms_sender, push_sender):
    return {
        NotificationChannel.EMAIL: email_sender,
        NotificationChannel.SMS: sms_sender,
        NotificationChannel.PUSH: push_sender,
        NotificationChannel.IN_APP: push_sender,
    }


@pytest.fixture
def templates():
    return YamlTemplateResolver()


@pytest_asyncio.fixture
async def dispatcher(audit_store, templates, senders):
    dispatcher = NotificationDispatcher(
        audit_store,
        templates,
        senders,
        workers=2,
        queue_size=50,
        send_timeout=1.0,
    )
    yield dispatcher
    await dispatcher.stop(drain=True, timeout=2)


@pytest.fixture
def contact_directory():
    return ContactDirectory(contacts=TEST_CONTACTS)


@pytest.fixture
def incident_actions():
    return FakeIncidentActions()


@pytest.fixture
def action_scheduler():
    return FakeActionScheduler()


@pytest.fixture
def escalation_engine(
    session_factory,
    audit_store,
    dispatcher,
    contact_directory,
    incident_actions,
    action_scheduler,
):
    return EscalationEngine(
        rule_source=SqlRuleSource(session_factory),
        audit_store=audit_store,
        dispatcher=dispatcher,
        user_directory=contact_directory,
        incident_actions=incident_actions,
        action_scheduler=action_scheduler,
        clock=lambda: NOW,
    )
