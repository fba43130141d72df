"""Unit tests for rule definitions, validation and the rule tables."""

from datetime import timedelta

import pytest

from hsse_escalation.errors import RuleValidationError
from hsse_escalation.escalation.rules import (
    ActionDefinition,
    RuleDefinition,
    SqlRuleSource,
    default_rule_definitions,
    load_rules_file,
    rule_from_mapping,
    validate_rule,
)
from hsse_escalation.models.incident import IncidentSeverity, IncidentStatus
from hsse_escalation.models.rule import ActionType, NotificationChannel


def notify(target: str = "HSE_Manager", **kwargs) -> ActionDefinition:
    kwargs.setdefault("channels", (NotificationChannel.EMAIL,))
    return ActionDefinition(
        action_type=ActionType.NOTIFY,
        target=target,
        template_id=kwargs.pop("template_id", "incident_created"),
        **kwargs,
    )


class TestValidateRule:
    """Test rule validation at save time."""

    def test_valid_rule_passes(self):
        validate_rule(RuleDefinition(name="Valid", actions=(notify(),)))

    def test_missing_name_and_actions(self):
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(RuleDefinition(name="  ", actions=()))

        problems = exc_info.value.problems
        assert "name is required" in problems
        assert "at least one action is required" in problems

    def test_notify_requires_channel(self):
        with pytest.raises(RuleValidationError, match="at least one channel"):
            validate_rule(RuleDefinition(name="No channels", actions=(notify(channels=()),)))

    def test_length_limits(self):
        rule = RuleDefinition(
            name="x" * 201,
            actions=(notify(target="t" * 201, template_id="y" * 101),),
        )
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(rule)

        assert len(exc_info.value.problems) == 3

    def test_negative_delay_and_zero_duration(self):
        rule = RuleDefinition(
            name="Bad timing",
            trigger_after=timedelta(0),
            actions=(notify(delay=timedelta(minutes=-5)),),
        )
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(rule)

        assert "trigger_after must be positive" in exc_info.value.problems
        assert "action 1: delay cannot be negative" in exc_info.value.problems


class TestRuleFromMapping:
    """Test parsing of YAML style rule definitions."""

    def test_parses_triggers_and_durations(self):
        rule = rule_from_mapping({
            "name": "Overdue majors",
            "priority": 20,
            "trigger_severities": ["Major", "critical"],
            "trigger_statuses": ["open"],
            "trigger_after_hours": 24,
            "actions": [
                {"type": "escalate", "target": "department_manager"},
                {
                    "type": "notify",
                    "target": "HSE_Manager",
                    "template_id": "escalation_overdue",
                    "channels": ["email", "sms"],
                    "delay_minutes": 30,
                },
            ],
        })

        assert rule.priority == 20
        assert rule.trigger_severities == {IncidentSeverity.MAJOR, IncidentSeverity.CRITICAL}
        assert rule.trigger_statuses == {IncidentStatus.OPEN}
        assert rule.trigger_after == timedelta(hours=24)
        assert [a.action_type for a in rule.actions] == [ActionType.ESCALATE, ActionType.NOTIFY]
        assert rule.actions[1].delay == timedelta(minutes=30)
        assert rule.actions[1].channels == (NotificationChannel.EMAIL, NotificationChannel.SMS)

    def test_unknown_values_are_reported(self):
        with pytest.raises(RuleValidationError) as exc_info:
            rule_from_mapping({
                "name": "Broken",
                "trigger_severities": ["catastrophic"],
                "actions": [{"type": "page", "target": "x"}],
            })

        assert len(exc_info.value.problems) == 2

    def test_default_rules_are_valid(self):
        rules = default_rule_definitions()

        assert [r.name for r in rules] == [
            "Critical Incident Immediate Escalation",
            "24-Hour Response Escalation",
            "Regulatory Reporting",
        ]
        for rule in rules:
            validate_rule(rule)
        assert rules[2].actions[0].delay == timedelta(hours=2)

    def test_load_rules_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - name: Emergency page\n"
            "    priority: 5\n"
            "    trigger_severities: [emergency]\n"
            "    actions:\n"
            "      - type: notify\n"
            "        target: emergency_team\n"
            "        template_id: emergency_alert\n"
            "        channels: [sms]\n",
            encoding="utf-8",
        )

        rules = load_rules_file(str(path))

        assert len(rules) == 1
        assert rules[0].name == "Emergency page"
        assert rules[0].actions[0].channels == (NotificationChannel.SMS,)


class TestRuleRepository:
    """Test the admin write path and the SQL rule source."""

    async def test_save_and_load_ordered_by_priority_then_id(self, rule_repository, session_factory):
        late = await rule_repository.save_rule(RuleDefinition(name="Late", priority=20, actions=(notify(),)))
        early = await rule_repository.save_rule(RuleDefinition(name="Early", priority=10, actions=(notify(),)))
        tie = await rule_repository.save_rule(RuleDefinition(name="Tie", priority=10, actions=(notify(),)))

        rules = await SqlRuleSource(session_factory).get_active_rules()

        assert [r.id for r in rules] == [early.id, tie.id, late.id]

    async def test_actions_keep_their_order(self, rule_repository, session_factory):
        saved = await rule_repository.save_rule(RuleDefinition(
            name="Ordered",
            actions=(
                ActionDefinition(action_type=ActionType.ESCALATE, target="department_manager"),
                notify("HSE_Manager"),
                ActionDefinition(action_type=ActionType.ASSIGN, target="safety_officer_1"),
            ),
        ))

        [loaded] = await SqlRuleSource(session_factory).get_active_rules()

        assert loaded.id == saved.id
        assert [a.action_type for a in loaded.actions] == [
            ActionType.ESCALATE, ActionType.NOTIFY, ActionType.ASSIGN
        ]
        assert [a.sequence for a in loaded.actions] == [0, 1, 2]

    async def test_invalid_rule_is_not_saved(self, rule_repository):
        with pytest.raises(RuleValidationError):
            await rule_repository.save_rule(RuleDefinition(name="Empty", actions=()))

        assert await rule_repository.count_rules() == 0

    async def test_inactive_rules_are_not_loaded(self, rule_repository, session_factory):
        saved = await rule_repository.save_rule(RuleDefinition(name="Paused", actions=(notify(),)))
        assert await rule_repository.set_active(saved.id, False, modified_by="admin")

        assert await SqlRuleSource(session_factory).get_active_rules() == []

    async def test_seed_only_fills_an_empty_table(self, rule_repository):
        assert await rule_repository.seed(default_rule_definitions()) == 3
        assert await rule_repository.seed(default_rule_definitions()) == 0
        assert await rule_repository.count_rules() == 3

    async def test_delete_rule(self, rule_repository, session_factory):
        saved = await rule_repository.save_rule(RuleDefinition(name="Temporary", actions=(notify(),)))

        assert await rule_repository.delete_rule(saved.id) is True
        assert await rule_repository.delete_rule(saved.id) is False
        assert await SqlRuleSource(session_factory).get_active_rules() == []
