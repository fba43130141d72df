"""Incident snapshot read from the host application."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class IncidentSeverity(str, Enum):
    """Incident severity enumeration."""

    LOW = "low"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class IncidentStatus(str, Enum):
    """Incident status enumeration."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    AWAITING_ACTION = "awaiting_action"
    RESOLVED = "resolved"
    CLOSED = "closed"


@dataclass(frozen=True)
class IncidentSnapshot:
    """Read-only view of an incident at evaluation time.

    The escalation core never writes incident records; it only reads these
    snapshots from the incident provider.
    """

    id: int
    severity: IncidentSeverity
    status: IncidentStatus
    created_at: datetime
    department: Optional[str] = None
    location: Optional[str] = None
    last_response_at: Optional[datetime] = None
    title: Optional[str] = None
    description: Optional[str] = None
    reporter_name: Optional[str] = None

    def __post_init__(self):
        # Naive timestamps are taken as UTC
        for name in ("created_at", "last_response_at"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))

    @property
    def reference_time(self) -> datetime:
        """Timestamp that duration triggers are measured from."""
        return self.last_response_at or self.created_at

    @property
    def is_open(self) -> bool:
        return self.status not in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)
