"""Database models and value types for the escalation core."""

from .database import Base, create_tables
from .incident import IncidentSeverity, IncidentSnapshot, IncidentStatus
from .rule import ActionType, EscalationAction, EscalationRule, NotificationChannel
from .history import (
    EscalationFireRecord,
    EscalationHistory,
    NotificationHistory,
    NotificationPriority,
    NotificationStatus,
)

__all__ = [
    "Base",
    "create_tables",
    "IncidentSeverity",
    "IncidentSnapshot",
    "IncidentStatus",
    "ActionType",
    "EscalationAction",
    "EscalationRule",
    "NotificationChannel",
    "EscalationFireRecord",
    "EscalationHistory",
    "NotificationHistory",
    "NotificationPriority",
    "NotificationStatus",
]
