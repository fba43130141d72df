"""Wiring of the escalation core's services."""

from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hsse_escalation.config import settings
from hsse_escalation.connectors.email_smtp import SMTPEmailSender
from hsse_escalation.connectors.incident_api import IncidentApiClient
from hsse_escalation.connectors.twilio_sms import TwilioSMSSender
from hsse_escalation.connectors.webhook import WebhookChannelSender
from hsse_escalation.escalation.contacts import ContactDirectory
from hsse_escalation.escalation.engine import EscalationEngine
from hsse_escalation.escalation.rules import (
    RuleRepository,
    SqlRuleSource,
    default_rule_definitions,
    load_rules_file,
)
from hsse_escalation.escalation.scheduler import EscalationScheduler
from hsse_escalation.interfaces import (
    ChannelSender,
    IncidentActionHandler,
    IncidentSnapshotProvider,
    UserDirectory,
)
from hsse_escalation.models.database import SessionLocal
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.notifications.dispatcher import NotificationDispatcher
from hsse_escalation.notifications.templates import YamlTemplateResolver
from hsse_escalation.storage.audit_store import AuditStore
from hsse_escalation.utils.logging import get_logger

logger = get_logger(__name__)


def default_senders() -> Dict[NotificationChannel, ChannelSender]:
    """Production channel senders built from settings."""
    return {
        NotificationChannel.EMAIL: SMTPEmailSender(),
        NotificationChannel.SMS: TwilioSMSSender(),
        NotificationChannel.PUSH: WebhookChannelSender.for_push(),
        NotificationChannel.IN_APP: WebhookChannelSender.for_in_app(),
    }


@dataclass
class EscalationServices:
    """Everything the API and jobs need, built once per process."""

    audit_store: AuditStore
    rule_repository: RuleRepository
    dispatcher: NotificationDispatcher
    engine: EscalationEngine
    scheduler: EscalationScheduler
    incident_provider: IncidentSnapshotProvider

    async def start(self, run_scheduler: bool = True) -> None:
        self.dispatcher.start()
        if run_scheduler:
            await self.scheduler.start()

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        await self.scheduler.stop()
        await self.dispatcher.stop(drain=True, timeout=drain_timeout)


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    senders: Optional[Dict[NotificationChannel, ChannelSender]] = None,
    incident_api: Optional[IncidentApiClient] = None,
    user_directory: Optional[UserDirectory] = None,
    incident_actions: Optional[IncidentActionHandler] = None,
) -> EscalationServices:
    """Build the service graph. Collaborators default to the production adapters."""
    session_factory = session_factory or SessionLocal
    incident_api = incident_api or IncidentApiClient()

    audit_store = AuditStore(session_factory)
    dispatcher = NotificationDispatcher(
        audit_store,
        YamlTemplateResolver(settings.TEMPLATES_FILE),
        senders if senders is not None else default_senders(),
    )
    scheduler = EscalationScheduler(incident_api)
    engine = EscalationEngine(
        rule_source=SqlRuleSource(session_factory),
        audit_store=audit_store,
        dispatcher=dispatcher,
        user_directory=user_directory or ContactDirectory(settings.CONTACTS_FILE),
        incident_actions=incident_actions or incident_api,
        action_scheduler=scheduler,
        incident_provider=incident_api,
    )
    scheduler.engine = engine

    return EscalationServices(
        audit_store=audit_store,
        rule_repository=RuleRepository(session_factory),
        dispatcher=dispatcher,
        engine=engine,
        scheduler=scheduler,
        incident_provider=incident_api,
    )


async def seed_rules(repository: RuleRepository) -> int:
    """Seed the rule table from ESCALATION_RULES_FILE or the built-in rules."""
    if settings.ESCALATION_RULES_FILE:
        definitions = load_rules_file(settings.ESCALATION_RULES_FILE)
    elif settings.SEED_DEFAULT_RULES:
        definitions = default_rule_definitions()
    else:
        return 0
    return await repository.seed(definitions, saved_by=settings.SYSTEM_ACTOR)
