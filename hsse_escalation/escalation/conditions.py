"""Condition evaluation for escalation rules.

Everything here is pure: no I/O, no clock reads, no shared state. The engine
passes ``now`` explicitly so the same inputs always give the same answer.
"""

import hashlib
from datetime import datetime
from typing import List, Optional

from hsse_escalation.escalation.rules import RuleDefinition
from hsse_escalation.models.incident import IncidentSnapshot


def _dimension_matches(allowed: frozenset, value: Optional[object]) -> bool:
    # Empty set is a wildcard
    if not allowed:
        return True
    return value is not None and value in allowed


def elapsed_since_reference(incident: IncidentSnapshot, now: datetime):
    return now - incident.reference_time


def matches(rule: RuleDefinition, incident: IncidentSnapshot, now: datetime) -> bool:
    """Return True when every dimension the rule constrains matches the incident."""
    if not _dimension_matches(rule.trigger_severities, incident.severity):
        return False
    if not _dimension_matches(rule.trigger_statuses, incident.status):
        return False
    if not _dimension_matches(rule.trigger_departments, incident.department):
        return False
    if not _dimension_matches(rule.trigger_locations, incident.location):
        return False
    if rule.trigger_after is not None:
        return elapsed_since_reference(incident, now) >= rule.trigger_after
    return True


def state_signature(rule: RuleDefinition, incident: IncidentSnapshot) -> str:
    """Key for the matching state, used by the fire guard.

    Only the dimensions the rule constrains take part, so a rule re-fires when
    one of those values changes and later matches again. Duration rules also
    carry the reference timestamp: a new response restarts the clock.
    """
    parts: List[str] = []
    if rule.trigger_severities:
        parts.append(f"severity={incident.severity.value}")
    if rule.trigger_statuses:
        parts.append(f"status={incident.status.value}")
    if rule.trigger_departments:
        parts.append(f"department={incident.department}")
    if rule.trigger_locations:
        parts.append(f"location={incident.location}")
    if rule.trigger_after is not None:
        parts.append(f"reference={incident.reference_time.isoformat()}")

    canonical = "|".join(parts) or "*"
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
