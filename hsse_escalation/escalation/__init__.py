"""Escalation rule engine components."""

from .contacts import ContactDirectory
from .engine import EscalationEngine, EscalationOutcome, SweepResult
from .rules import (
    ActionDefinition,
    RuleDefinition,
    RuleRepository,
    SqlRuleSource,
    validate_rule,
)
from .scheduler import EscalationScheduler

__all__ = [
    "ContactDirectory",
    "EscalationEngine",
    "EscalationOutcome",
    "SweepResult",
    "ActionDefinition",
    "RuleDefinition",
    "RuleRepository",
    "SqlRuleSource",
    "validate_rule",
    "EscalationScheduler",
]
