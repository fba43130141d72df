"""Append-only audit trail for escalations and notifications."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .rule import ActionType, NotificationChannel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationStatus(str, Enum):
    """Notification delivery lifecycle.

    pending -> sent -> delivered -> read, with failed reachable from pending
    or sent. Failed is terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def predecessors(self) -> List["NotificationStatus"]:
        """Statuses a row may be in for a transition into this one to apply."""
        if self is NotificationStatus.FAILED:
            return [NotificationStatus.PENDING, NotificationStatus.SENT]
        return [
            status for status in NotificationStatus
            if status is not NotificationStatus.FAILED and status.rank < self.rank
        ]


_STATUS_RANK = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.DELIVERED: 2,
    NotificationStatus.READ: 3,
    NotificationStatus.FAILED: 4,
}


class NotificationPriority(str, Enum):
    """Notification priority enumeration."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class EscalationHistory(Base):
    """One row per escalation action attempt, successful or not."""

    __tablename__ = "escalation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(Integer, index=True)

    # Rules may be deleted later; rule_name is the snapshot taken at fire time
    escalation_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("escalation_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    rule_name: Mapped[str] = mapped_column(String(200))

    action_type: Mapped[ActionType] = mapped_column(SQLEnum(ActionType))
    action_target: Mapped[str] = mapped_column(String(200))
    action_details: Mapped[Optional[str]] = mapped_column(String(2000))
    is_successful: Mapped[bool] = mapped_column(Boolean, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(2000))
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        index=True
    )
    executed_by: Mapped[Optional[str]] = mapped_column(String(100))

    def __repr__(self) -> str:
        return (
            f"<EscalationHistory(id={self.id}, incident={self.incident_id}, "
            f"rule='{self.rule_name}', success={self.is_successful})>"
        )


class EscalationFireRecord(Base):
    """Fire guard: one row per (incident, rule, state signature)."""

    __tablename__ = "escalation_fire_records"
    __table_args__ = (
        UniqueConstraint(
            "incident_id",
            "escalation_rule_id",
            "state_signature",
            name="uq_fire_incident_rule_signature"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(Integer, index=True)
    escalation_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("escalation_rules.id", ondelete="SET NULL"),
        nullable=True
    )
    state_signature: Mapped[str] = mapped_column(String(64))
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class NotificationHistory(Base):
    """One row per notification send attempt."""

    __tablename__ = "notification_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    recipient_id: Mapped[str] = mapped_column(String(100), index=True)
    recipient_type: Mapped[str] = mapped_column(String(50))
    template_id: Mapped[str] = mapped_column(String(100))
    channel: Mapped[NotificationChannel] = mapped_column(SQLEnum(NotificationChannel))
    priority: Mapped[NotificationPriority] = mapped_column(
        SQLEnum(NotificationPriority),
        default=NotificationPriority.NORMAL
    )
    subject: Mapped[str] = mapped_column(String(500))
    content: Mapped[str] = mapped_column(Text)

    status: Mapped[NotificationStatus] = mapped_column(
        SQLEnum(NotificationStatus),
        default=NotificationStatus.PENDING,
        index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(String(2000))

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    notification_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationHistory(id={self.id}, channel='{self.channel}', "
            f"status='{self.status}')>"
        )

    @property
    def provider_message_id(self) -> Optional[str]:
        return (self.notification_metadata or {}).get("provider_message_id")
