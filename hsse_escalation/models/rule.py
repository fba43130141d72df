"""Escalation rule and action tables (admin-managed, read-only to the engine)."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class ActionType(str, Enum):
    """Escalation action type enumeration."""

    NOTIFY = "notify"
    ESCALATE = "escalate"
    ASSIGN = "assign"
    CUSTOM = "custom"


class NotificationChannel(str, Enum):
    """Notification channel enumeration."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


class EscalationRule(Base):
    """Escalation rule model."""

    __tablename__ = "escalation_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(String(1000))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=100, index=True)

    # Trigger dimensions; an empty list matches any value
    trigger_severities: Mapped[List[str]] = mapped_column(JSON, default=list)
    trigger_statuses: Mapped[List[str]] = mapped_column(JSON, default=list)
    trigger_departments: Mapped[List[str]] = mapped_column(JSON, default=list)
    trigger_locations: Mapped[List[str]] = mapped_column(JSON, default=list)
    trigger_after_seconds: Mapped[Optional[int]] = mapped_column(Integer)

    # Audit fields
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    last_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_modified_by: Mapped[Optional[str]] = mapped_column(String(100))

    actions: Mapped[List["EscalationAction"]] = relationship(
        "EscalationAction",
        back_populates="rule",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EscalationAction.sequence"
    )

    def __repr__(self) -> str:
        return f"<EscalationRule(id={self.id}, name='{self.name}', priority={self.priority})>"


class EscalationAction(Base):
    """One ordered step of an escalation rule."""

    __tablename__ = "escalation_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escalation_rule_id: Mapped[int] = mapped_column(
        ForeignKey("escalation_rules.id", ondelete="CASCADE"),
        index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    action_type: Mapped[ActionType] = mapped_column(SQLEnum(ActionType), index=True)
    target: Mapped[str] = mapped_column(String(200))
    template_id: Mapped[Optional[str]] = mapped_column(String(100))
    parameters: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
    delay_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    channels: Mapped[List[str]] = mapped_column(JSON, default=list)

    rule: Mapped[EscalationRule] = relationship("EscalationRule", back_populates="actions")

    def __repr__(self) -> str:
        return f"<EscalationAction(id={self.id}, type='{self.action_type}', target='{self.target}')>"
