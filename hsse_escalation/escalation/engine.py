"""Escalation engine: matches rules against incidents and executes their actions."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from hsse_escalation.config import settings
from hsse_escalation.errors import InfrastructureError
from hsse_escalation.escalation.conditions import matches, state_signature
from hsse_escalation.escalation.rules import ActionDefinition, RuleDefinition, RuleSource
from hsse_escalation.interfaces import (
    ActionScheduler,
    IncidentActionHandler,
    IncidentSnapshotProvider,
    UserDirectory,
)
from hsse_escalation.models.history import NotificationPriority
from hsse_escalation.models.incident import IncidentSnapshot
from hsse_escalation.models.rule import ActionType, NotificationChannel
from hsse_escalation.notifications.dispatcher import NotificationDispatcher
from hsse_escalation.storage.audit_store import AuditStore
from hsse_escalation.utils.logging import get_logger, log_escalation_event

logger = get_logger(__name__)

MANUAL_ESCALATION_RULE_NAME = "Manual Escalation"
MANUAL_ESCALATION_TEMPLATE = "escalation_overdue"
DEFAULT_NOTIFY_TEMPLATE = "escalation_overdue"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EscalationOutcome:
    """Result of one action attempt during an evaluation."""

    incident_id: int
    rule_id: Optional[int]
    rule_name: str
    action_type: ActionType
    action_target: str
    is_successful: bool
    deferred: bool = False
    history_id: Optional[int] = None
    details: Optional[str] = None
    error_message: Optional[str] = None
    notification_ids: List[int] = field(default_factory=list)


@dataclass
class SweepResult:
    """Summary of evaluating a batch of incidents."""

    evaluated: int = 0
    failed: int = 0
    outcomes: List[EscalationOutcome] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def fired(self) -> int:
        return len(self.outcomes)


class EscalationEngine:
    """Evaluates incidents against the active escalation rules.

    Every action attempt, successful or not, is written to the escalation
    history exactly once. A failing action never stops the remaining actions
    of its rule or later rules; only an InfrastructureError from the rule
    source or audit store aborts an evaluation.
    """

    def __init__(
        self,
        rule_source: RuleSource,
        audit_store: AuditStore,
        dispatcher: NotificationDispatcher,
        user_directory: UserDirectory,
        incident_actions: Optional[IncidentActionHandler] = None,
        action_scheduler: Optional[ActionScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
        concurrency: Optional[int] = None,
        incident_provider: Optional[IncidentSnapshotProvider] = None,
    ):
        self.rule_source = rule_source
        self.audit_store = audit_store
        self.dispatcher = dispatcher
        self.user_directory = user_directory
        self.incident_actions = incident_actions
        self.action_scheduler = action_scheduler
        self.incident_provider = incident_provider
        self.clock = clock or _utcnow
        self.concurrency = concurrency or settings.SWEEP_CONCURRENCY

    def _now(self, now: Optional[datetime]) -> datetime:
        now = now or self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    async def _load_rules(self) -> List[RuleDefinition]:
        rules = await self.rule_source.get_active_rules()
        return sorted((r for r in rules if r.is_active), key=lambda r: r.sort_key)

    async def evaluate(
        self,
        incident: IncidentSnapshot,
        now: Optional[datetime] = None,
    ) -> List[EscalationOutcome]:
        """Fire every matching rule that has not fired for this state yet."""
        rules = await self._load_rules()
        return await self._evaluate_rules(incident, rules, self._now(now))

    async def evaluate_many(
        self,
        incidents: Iterable[IncidentSnapshot],
        now: Optional[datetime] = None,
    ) -> SweepResult:
        """Evaluate incidents concurrently. One incident's failure never affects another."""
        now = self._now(now)
        rules = await self._load_rules()
        semaphore = asyncio.Semaphore(self.concurrency)
        result = SweepResult()

        async def _evaluate_one(incident: IncidentSnapshot) -> None:
            async with semaphore:
                try:
                    outcomes = await self._evaluate_rules(incident, rules, now)
                except Exception as e:
                    logger.error(
                        "Incident evaluation failed",
                        incident_id=incident.id,
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    result.failed += 1
                    result.errors[incident.id] = str(e)
                    return
                result.evaluated += 1
                result.outcomes.extend(outcomes)

        await asyncio.gather(*(_evaluate_one(incident) for incident in incidents))

        logger.info(
            "Escalation sweep evaluated incidents",
            evaluated=result.evaluated,
            failed=result.failed,
            actions=result.fired,
            rule_count=len(rules)
        )
        return result

    async def _evaluate_rules(
        self,
        incident: IncidentSnapshot,
        rules: List[RuleDefinition],
        now: datetime,
    ) -> List[EscalationOutcome]:
        outcomes: List[EscalationOutcome] = []

        for rule in rules:
            if not matches(rule, incident, now):
                continue

            signature = state_signature(rule, incident)
            if await self.audit_store.has_fired(incident.id, rule.id, signature):
                logger.debug(
                    "Rule already fired for incident state",
                    incident_id=incident.id,
                    rule_id=rule.id,
                    signature=signature
                )
                continue
            if not await self.audit_store.claim_fire(incident.id, rule.id, signature, now):
                continue

            logger.info(
                "Escalation rule matched",
                incident_id=incident.id,
                rule_id=rule.id,
                rule_name=rule.name,
                priority=rule.priority
            )
            for index, action in enumerate(rule.actions):
                outcomes.append(
                    await self._run_action(incident, rule, action, index, signature, now)
                )

        return outcomes

    async def _run_action(
        self,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
        index: int,
        signature: str,
        now: datetime,
    ) -> EscalationOutcome:
        if not action.delay:
            return await self.run_deferred_action(incident, rule, action)

        if self.action_scheduler is None:
            return await self._record(
                incident, rule, action,
                is_successful=False,
                error_message="No scheduler available for delayed action",
            )
        try:
            return self._defer_action(
                self.action_scheduler, incident, rule, action, now + action.delay, index, signature
            )
        except Exception as e:
            logger.error(
                "Could not schedule delayed action",
                incident_id=incident.id,
                rule_name=rule.name,
                error=str(e)
            )
            return await self._record(
                incident, rule, action,
                is_successful=False,
                error_message=f"Scheduling failed: {e}",
            )

    def _defer_action(
        self,
        scheduler: ActionScheduler,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
        run_at: datetime,
        index: int,
        signature: str,
    ) -> EscalationOutcome:
        job_id = f"escalation:{incident.id}:{rule.id}:{signature}:{index}"
        scheduled = scheduler.schedule(
            job_id, run_at, self.run_delayed_action, incident, rule, action,
            on_cancel=self.record_dropped_action,
        )
        log_escalation_event(
            logger,
            incident.id,
            rule.name,
            action.action_type.value,
            "deferred",
            run_at=run_at.isoformat(),
            job_id=job_id,
            newly_scheduled=scheduled
        )
        return EscalationOutcome(
            incident_id=incident.id,
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=action.action_type,
            action_target=action.target,
            is_successful=True,
            deferred=True,
            details=f"Scheduled for {run_at.isoformat()}",
        )

    async def run_delayed_action(
        self,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
    ) -> EscalationOutcome:
        """Run an action whose delay has elapsed.

        The incident is re-read first; if it has been resolved or closed in
        the meantime the action is skipped and recorded as not executed.
        When the incident cannot be re-read the snapshot from fire time is used.
        """
        current = await self._refresh_incident(incident)
        if not current.is_open:
            return await self._record(
                current, rule, action,
                is_successful=False,
                error_message=f"Skipped: incident was {current.status.value} when the delayed action ran",
            )
        return await self.run_deferred_action(current, rule, action)

    async def record_dropped_action(
        self,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
        reason: str,
    ) -> EscalationOutcome:
        """Record a delayed action that will never run."""
        return await self._record(incident, rule, action, is_successful=False, error_message=reason)

    async def _refresh_incident(self, incident: IncidentSnapshot) -> IncidentSnapshot:
        if self.incident_provider is None:
            return incident
        try:
            current = await self.incident_provider.get_incident_snapshot(incident.id)
        except Exception as e:
            logger.warning("Could not re-read incident for delayed action", incident_id=incident.id, error=str(e))
            return incident
        if current is None:
            logger.warning("Incident not found for delayed action", incident_id=incident.id)
            return incident
        return current

    async def run_deferred_action(
        self,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
    ) -> EscalationOutcome:
        """Execute one action now and write its history row."""
        notification_ids: List[int] = []
        try:
            if action.action_type == ActionType.NOTIFY:
                details = await self._notify(incident, rule, action, notification_ids)
            else:
                details = await self._apply_incident_action(incident, action)
        except InfrastructureError:
            raise
        except asyncio.CancelledError:
            logger.warning(
                "Escalation action interrupted",
                incident_id=incident.id,
                rule_name=rule.name,
                action_type=action.action_type.value
            )
            await self._record(
                incident, rule, action,
                is_successful=False,
                error_message="Interrupted before completion",
                notification_ids=notification_ids,
            )
            raise
        except Exception as e:
            logger.error(
                "Escalation action failed",
                incident_id=incident.id,
                rule_name=rule.name,
                action_type=action.action_type.value,
                error=str(e)
            )
            return await self._record(
                incident, rule, action,
                is_successful=False,
                error_message=str(e) or type(e).__name__,
                notification_ids=notification_ids,
            )

        return await self._record(
            incident, rule, action,
            is_successful=True,
            details=details,
            notification_ids=notification_ids,
        )

    async def _notify(
        self,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
        notification_ids: List[int],
    ) -> str:
        recipients = await self.user_directory.resolve(action.target)
        if not recipients:
            raise LookupError(f"No recipients resolved for target {action.target!r}")

        template_id = action.template_id or DEFAULT_NOTIFY_TEMPLATE
        parameters = self.build_notification_data(incident, action.parameters)
        parameters.setdefault("escalated_by", rule.name)
        priority = _notification_priority(action.parameters)
        language = action.parameters.get("language") or settings.NOTIFICATION_LANGUAGE

        for recipient in recipients:
            for channel in action.channels:
                row = await self.dispatcher.submit(
                    recipient,
                    template_id,
                    channel,
                    parameters,
                    incident_id=incident.id,
                    priority=priority,
                    metadata={"escalation_rule_id": rule.id, "rule_name": rule.name},
                    language=language,
                )
                notification_ids.append(row.id)

        channels = ", ".join(c.value for c in action.channels)
        return (
            f"Queued {len(notification_ids)} notification(s) for "
            f"{len(recipients)} recipient(s) via {channels}"
        )

    async def _apply_incident_action(
        self,
        incident: IncidentSnapshot,
        action: ActionDefinition,
    ) -> str:
        if self.incident_actions is None:
            raise RuntimeError("No incident action handler configured")
        details = await self.incident_actions.apply(
            incident, action.action_type.value, action.target, action.parameters
        )
        return details or f"{action.action_type.value} applied for {action.target}"

    async def _record(
        self,
        incident: IncidentSnapshot,
        rule: RuleDefinition,
        action: ActionDefinition,
        is_successful: bool,
        details: Optional[str] = None,
        error_message: Optional[str] = None,
        notification_ids: Optional[List[int]] = None,
    ) -> EscalationOutcome:
        row = await self.audit_store.record_escalation(
            incident_id=incident.id,
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=action.action_type,
            action_target=action.target,
            is_successful=is_successful,
            action_details=details,
            error_message=error_message,
            executed_by=settings.SYSTEM_ACTOR,
        )
        log_escalation_event(
            logger,
            incident.id,
            rule.name,
            action.action_type.value,
            "succeeded" if is_successful else "failed",
            target=action.target,
            history_id=row.id,
            error=error_message
        )
        return EscalationOutcome(
            incident_id=incident.id,
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=action.action_type,
            action_target=action.target,
            is_successful=is_successful,
            history_id=row.id,
            details=details,
            error_message=error_message,
            notification_ids=list(notification_ids or []),
        )

    async def trigger_manual_escalation(
        self,
        incident: IncidentSnapshot,
        reason: str,
        escalated_by: str,
        channels: Optional[List[NotificationChannel]] = None,
    ) -> EscalationOutcome:
        """Notify management about an incident outside of any rule."""
        target = settings.MANAGEMENT_ESCALATION_TARGET
        action = ActionDefinition(
            action_type=ActionType.ESCALATE,
            target=target,
            template_id=MANUAL_ESCALATION_TEMPLATE,
            parameters={
                "escalation_reason": reason,
                "escalated_by": escalated_by,
                "priority": NotificationPriority.HIGH.value,
            },
            channels=tuple(channels or (NotificationChannel.EMAIL, NotificationChannel.PUSH)),
        )
        manual_rule = RuleDefinition(name=MANUAL_ESCALATION_RULE_NAME, actions=(action,))

        notification_ids: List[int] = []
        try:
            details = await self._notify(incident, manual_rule, action, notification_ids)
        except InfrastructureError:
            raise
        except Exception as e:
            logger.error("Manual escalation failed", incident_id=incident.id, error=str(e))
            outcome = await self._record_manual(
                incident, action, escalated_by, False, None, str(e), notification_ids
            )
        else:
            outcome = await self._record_manual(
                incident, action, escalated_by, True,
                f"Manual escalation: {reason}. {details}", None, notification_ids
            )
        return outcome

    async def _record_manual(
        self,
        incident: IncidentSnapshot,
        action: ActionDefinition,
        escalated_by: str,
        is_successful: bool,
        details: Optional[str],
        error_message: Optional[str],
        notification_ids: List[int],
    ) -> EscalationOutcome:
        row = await self.audit_store.record_escalation(
            incident_id=incident.id,
            rule_id=None,
            rule_name=MANUAL_ESCALATION_RULE_NAME,
            action_type=action.action_type,
            action_target=action.target,
            is_successful=is_successful,
            action_details=details,
            error_message=error_message,
            executed_by=escalated_by,
        )
        log_escalation_event(
            logger,
            incident.id,
            MANUAL_ESCALATION_RULE_NAME,
            action.action_type.value,
            "succeeded" if is_successful else "failed",
            escalated_by=escalated_by,
            history_id=row.id
        )
        return EscalationOutcome(
            incident_id=incident.id,
            rule_id=None,
            rule_name=MANUAL_ESCALATION_RULE_NAME,
            action_type=action.action_type,
            action_target=action.target,
            is_successful=is_successful,
            history_id=row.id,
            details=details,
            error_message=error_message,
            notification_ids=notification_ids,
        )

    def build_notification_data(
        self,
        incident: IncidentSnapshot,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Template variables for an incident, overlaid with action parameters."""
        data: Dict[str, Any] = {
            "incident_id": incident.id,
            "incident_title": incident.title or f"Incident #{incident.id}",
            "incident_description": incident.description or "",
            "incident_severity": incident.severity.value,
            "incident_status": incident.status.value,
            "incident_location": incident.location or "Not specified",
            "incident_department": incident.department or "Not specified",
            "incident_created_at": incident.created_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            "reporter_name": incident.reporter_name or "Not specified",
            "url": f"{settings.INCIDENT_URL_BASE.rstrip('/')}/{incident.id}",
        }
        data.update(parameters or {})
        return data


def _notification_priority(parameters: Mapping[str, str]) -> NotificationPriority:
    raw = parameters.get("priority")
    if raw:
        try:
            return NotificationPriority(str(raw).strip().lower())
        except ValueError:
            logger.warning("Unknown notification priority", priority=raw)
    return NotificationPriority.HIGH
