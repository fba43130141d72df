"""Escalation rule definitions, validation and the rule source."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol, Tuple

import yaml
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from hsse_escalation.errors import RuleValidationError
from hsse_escalation.models.incident import IncidentSeverity, IncidentStatus
from hsse_escalation.models.rule import (
    ActionType,
    EscalationAction,
    EscalationRule,
    NotificationChannel,
)
from hsse_escalation.storage.retry import db_retry, infrastructure_errors
from hsse_escalation.utils.logging import get_logger

logger = get_logger(__name__)

MAX_NAME_LENGTH = 200
MAX_TARGET_LENGTH = 200
MAX_TEMPLATE_ID_LENGTH = 100


@dataclass(frozen=True)
class ActionDefinition:
    """One step of a rule, in execution order."""

    action_type: ActionType
    target: str
    template_id: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    delay: Optional[timedelta] = None
    channels: Tuple[NotificationChannel, ...] = ()
    id: Optional[int] = None
    rule_id: Optional[int] = None
    sequence: int = 0


@dataclass(frozen=True)
class RuleDefinition:
    """Immutable view of an escalation rule used on the evaluation path."""

    name: str
    actions: Tuple[ActionDefinition, ...]
    priority: int = 100
    description: Optional[str] = None
    is_active: bool = True
    trigger_severities: FrozenSet[IncidentSeverity] = frozenset()
    trigger_statuses: FrozenSet[IncidentStatus] = frozenset()
    trigger_departments: FrozenSet[str] = frozenset()
    trigger_locations: FrozenSet[str] = frozenset()
    trigger_after: Optional[timedelta] = None
    id: Optional[int] = None
    created_by: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.priority, self.id if self.id is not None else 0)


class RuleSource(Protocol):
    async def get_active_rules(self) -> List[RuleDefinition]:
        ...


def validate_rule(rule: RuleDefinition) -> None:
    """Check a rule before it is saved. Raises RuleValidationError."""
    problems: List[str] = []

    if not rule.name or not rule.name.strip():
        problems.append("name is required")
    elif len(rule.name) > MAX_NAME_LENGTH:
        problems.append(f"name exceeds {MAX_NAME_LENGTH} characters")

    if not isinstance(rule.priority, int) or isinstance(rule.priority, bool):
        problems.append("priority must be an integer")

    if rule.trigger_after is not None and rule.trigger_after <= timedelta(0):
        problems.append("trigger_after must be positive")

    if not rule.actions:
        problems.append("at least one action is required")

    for index, action in enumerate(rule.actions, start=1):
        prefix = f"action {index}"
        if not action.target or not action.target.strip():
            problems.append(f"{prefix}: target is required")
        elif len(action.target) > MAX_TARGET_LENGTH:
            problems.append(f"{prefix}: target exceeds {MAX_TARGET_LENGTH} characters")
        if action.template_id and len(action.template_id) > MAX_TEMPLATE_ID_LENGTH:
            problems.append(f"{prefix}: template_id exceeds {MAX_TEMPLATE_ID_LENGTH} characters")
        if action.delay is not None and action.delay < timedelta(0):
            problems.append(f"{prefix}: delay cannot be negative")
        if action.action_type == ActionType.NOTIFY and not action.channels:
            problems.append(f"{prefix}: notify actions need at least one channel")

    if problems:
        raise RuleValidationError(rule.name, problems)


def _parse_enum(enum_cls, value: Any, what: str, problems: List[str]):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        problems.append(f"unknown {what}: {value!r}")
        return None


def _parse_duration(mapping: Mapping[str, Any], prefix: str) -> Optional[timedelta]:
    total = 0.0
    found = False
    for suffix, factor in (("seconds", 1), ("minutes", 60), ("hours", 3600), ("days", 86400)):
        value = mapping.get(f"{prefix}_{suffix}")
        if value is not None:
            total += float(value) * factor
            found = True
    return timedelta(seconds=total) if found else None


def rule_from_mapping(data: Mapping[str, Any]) -> RuleDefinition:
    """Build a rule definition from a YAML/JSON style mapping."""
    problems: List[str] = []

    severities = frozenset(
        s for s in (
            _parse_enum(IncidentSeverity, v, "severity", problems)
            for v in data.get("trigger_severities") or []
        ) if s is not None
    )
    statuses = frozenset(
        s for s in (
            _parse_enum(IncidentStatus, v, "status", problems)
            for v in data.get("trigger_statuses") or []
        ) if s is not None
    )

    actions: List[ActionDefinition] = []
    for sequence, raw in enumerate(data.get("actions") or []):
        action_type = _parse_enum(ActionType, raw.get("type", ""), "action type", problems)
        channels = tuple(
            c for c in (
                _parse_enum(NotificationChannel, v, "channel", problems)
                for v in raw.get("channels") or []
            ) if c is not None
        )
        if action_type is None:
            continue
        actions.append(ActionDefinition(
            action_type=action_type,
            target=str(raw.get("target", "")),
            template_id=raw.get("template_id"),
            parameters={str(k): str(v) for k, v in (raw.get("parameters") or {}).items()},
            delay=_parse_duration(raw, "delay"),
            channels=channels,
            sequence=sequence,
        ))

    if problems:
        raise RuleValidationError(data.get("name"), problems)

    return RuleDefinition(
        name=str(data.get("name", "")),
        description=data.get("description"),
        is_active=bool(data.get("is_active", True)),
        priority=data.get("priority", 100),
        trigger_severities=severities,
        trigger_statuses=statuses,
        trigger_departments=frozenset(data.get("trigger_departments") or []),
        trigger_locations=frozenset(data.get("trigger_locations") or []),
        trigger_after=_parse_duration(data, "trigger_after"),
        actions=tuple(actions),
    )


def load_rules_file(path: str) -> List[RuleDefinition]:
    """Load rule definitions from a YAML file with a top-level ``rules`` list."""
    with open(Path(path), "r", encoding="utf-8") as f:
        content = yaml.safe_load(f) or {}
    definitions = [rule_from_mapping(item) for item in content.get("rules", [])]
    logger.info("Loaded escalation rules file", file=path, rule_count=len(definitions))
    return definitions


def default_rule_definitions() -> List[RuleDefinition]:
    """Built-in rules seeded into an empty rule table."""
    return [
        rule_from_mapping(item) for item in (
            {
                "name": "Critical Incident Immediate Escalation",
                "description": "Immediately escalate critical and emergency incidents",
                "priority": 1,
                "trigger_severities": ["critical", "emergency"],
                "actions": [
                    {
                        "type": "notify",
                        "target": "HSE_Manager",
                        "template_id": "incident_critical",
                        "channels": ["email", "sms", "push"],
                    },
                    {
                        "type": "notify",
                        "target": "emergency_team",
                        "template_id": "emergency_alert",
                        "channels": ["email", "sms", "push"],
                    },
                ],
            },
            {
                "name": "24-Hour Response Escalation",
                "description": "Escalate incidents without response within 24 hours",
                "priority": 50,
                "trigger_statuses": ["open", "in_progress"],
                "trigger_after_hours": 24,
                "actions": [
                    {
                        "type": "escalate",
                        "target": "department_manager",
                        "parameters": {"escalation_reason": "24-hour response threshold exceeded"},
                    },
                    {
                        "type": "notify",
                        "target": "Department_Manager",
                        "template_id": "escalation_overdue",
                        "parameters": {"escalation_reason": "24-hour response threshold exceeded"},
                        "channels": ["email", "push"],
                    },
                ],
            },
            {
                "name": "Regulatory Reporting",
                "description": "Trigger regulatory reporting for major incidents",
                "priority": 75,
                "trigger_severities": ["major", "critical", "emergency"],
                "actions": [
                    {
                        "type": "notify",
                        "target": "regulatory_team",
                        "template_id": "incident_regulatory",
                        "channels": ["email"],
                        "delay_hours": 2,
                    },
                ],
            },
        )
    ]


def _to_definition(row: EscalationRule) -> RuleDefinition:
    actions = tuple(
        ActionDefinition(
            id=a.id,
            rule_id=row.id,
            sequence=a.sequence,
            action_type=a.action_type,
            target=a.target,
            template_id=a.template_id,
            parameters=dict(a.parameters or {}),
            delay=timedelta(seconds=a.delay_seconds) if a.delay_seconds else None,
            channels=tuple(NotificationChannel(c) for c in a.channels or []),
        )
        for a in sorted(row.actions, key=lambda a: (a.sequence, a.id))
    )
    return RuleDefinition(
        id=row.id,
        name=row.name,
        description=row.description,
        is_active=row.is_active,
        priority=row.priority,
        trigger_severities=frozenset(IncidentSeverity(s) for s in row.trigger_severities or []),
        trigger_statuses=frozenset(IncidentStatus(s) for s in row.trigger_statuses or []),
        trigger_departments=frozenset(row.trigger_departments or []),
        trigger_locations=frozenset(row.trigger_locations or []),
        trigger_after=(
            timedelta(seconds=row.trigger_after_seconds)
            if row.trigger_after_seconds else None
        ),
        actions=actions,
        created_by=row.created_by,
    )


class SqlRuleSource:
    """Reads active rules ordered by priority, then id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_active_rules(self) -> List[RuleDefinition]:
        with infrastructure_errors("load active escalation rules"):
            return await self._load_active_rules()

    @db_retry
    async def _load_active_rules(self) -> List[RuleDefinition]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EscalationRule)
                .where(EscalationRule.is_active.is_(True))
                .options(selectinload(EscalationRule.actions))
                .order_by(EscalationRule.priority, EscalationRule.id)
            )
            return [_to_definition(row) for row in result.scalars().all()]


class RuleRepository:
    """Admin write path for rules. Not used during evaluation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save_rule(
        self,
        definition: RuleDefinition,
        saved_by: Optional[str] = None,
    ) -> RuleDefinition:
        """Validate and persist a new rule, returning it with ids assigned."""
        validate_rule(definition)

        row = EscalationRule(
            name=definition.name.strip(),
            description=definition.description,
            is_active=definition.is_active,
            priority=definition.priority,
            trigger_severities=sorted(s.value for s in definition.trigger_severities),
            trigger_statuses=sorted(s.value for s in definition.trigger_statuses),
            trigger_departments=sorted(definition.trigger_departments),
            trigger_locations=sorted(definition.trigger_locations),
            trigger_after_seconds=(
                int(definition.trigger_after.total_seconds())
                if definition.trigger_after else None
            ),
            created_by=saved_by,
            actions=[
                EscalationAction(
                    sequence=sequence,
                    action_type=action.action_type,
                    target=action.target.strip(),
                    template_id=action.template_id,
                    parameters=dict(action.parameters),
                    delay_seconds=(
                        int(action.delay.total_seconds()) if action.delay else None
                    ),
                    channels=[c.value for c in action.channels],
                )
                for sequence, action in enumerate(definition.actions)
            ],
        )

        with infrastructure_errors("save escalation rule"):
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
                result = await session.execute(
                    select(EscalationRule)
                    .where(EscalationRule.id == row.id)
                    .options(selectinload(EscalationRule.actions))
                )
                saved = _to_definition(result.scalar_one())

        logger.info("Saved escalation rule", rule_id=saved.id, rule_name=saved.name, saved_by=saved_by)
        return saved

    async def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule; its history rows keep their rule_name snapshot."""
        with infrastructure_errors("delete escalation rule"):
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(EscalationRule).where(EscalationRule.id == rule_id)
                )
                await session.commit()
        deleted = result.rowcount > 0
        logger.info("Deleted escalation rule", rule_id=rule_id, deleted=deleted)
        return deleted

    async def set_active(self, rule_id: int, is_active: bool, modified_by: Optional[str] = None) -> bool:
        with infrastructure_errors("update escalation rule"):
            async with self.session_factory() as session:
                result = await session.execute(
                    update(EscalationRule)
                    .where(EscalationRule.id == rule_id)
                    .values(
                        is_active=is_active,
                        last_modified_at=datetime.now(timezone.utc),
                        last_modified_by=modified_by,
                    )
                )
                await session.commit()
        return result.rowcount > 0

    async def count_rules(self) -> int:
        with infrastructure_errors("count escalation rules"):
            async with self.session_factory() as session:
                result = await session.execute(select(func.count(EscalationRule.id)))
                return int(result.scalar_one())

    async def seed(self, definitions: List[RuleDefinition], saved_by: str = "system") -> int:
        """Save the given rules if the rule table is empty."""
        if await self.count_rules() > 0:
            return 0
        for definition in definitions:
            await self.save_rule(definition, saved_by=saved_by)
        logger.info("Seeded escalation rules", rule_count=len(definitions))
        return len(definitions)
