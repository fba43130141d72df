"""Request and response models for the escalation API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hsse_escalation.models.history import NotificationPriority, NotificationStatus
from hsse_escalation.models.incident import IncidentSeverity, IncidentSnapshot, IncidentStatus
from hsse_escalation.models.rule import ActionType, NotificationChannel


class IncidentSnapshotIn(BaseModel):
    """Incident state posted by the host application."""

    id: int
    severity: IncidentSeverity
    status: IncidentStatus
    created_at: datetime
    department: Optional[str] = Field(default=None, max_length=200)
    location: Optional[str] = Field(default=None, max_length=200)
    last_response_at: Optional[datetime] = None
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = None
    reporter_name: Optional[str] = Field(default=None, max_length=200)

    def to_snapshot(self) -> IncidentSnapshot:
        return IncidentSnapshot(**self.model_dump())


class ManualEscalationRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    escalated_by: str = Field(min_length=1, max_length=200)
    channels: Optional[List[NotificationChannel]] = None
    incident: Optional[IncidentSnapshotIn] = Field(
        default=None,
        description="Current incident state; fetched from the incident API when omitted"
    )


class ProviderStatusRequest(BaseModel):
    provider_message_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    error_message: Optional[str] = None


class EscalationOutcomeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    incident_id: int
    rule_id: Optional[int]
    rule_name: str
    action_type: ActionType
    action_target: str
    is_successful: bool
    deferred: bool
    history_id: Optional[int]
    details: Optional[str]
    error_message: Optional[str]
    notification_ids: List[int]


class EvaluateResponse(BaseModel):
    incident_id: int
    outcomes: List[EscalationOutcomeOut]


class EscalationHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    incident_id: int
    escalation_rule_id: Optional[int]
    rule_name: str
    action_type: ActionType
    action_target: str
    action_details: Optional[str]
    is_successful: bool
    error_message: Optional[str]
    executed_at: datetime
    executed_by: Optional[str]


class NotificationHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    incident_id: Optional[int]
    recipient_id: str
    recipient_type: str
    template_id: str
    channel: NotificationChannel
    priority: NotificationPriority
    subject: str
    content: str
    status: NotificationStatus
    sent_at: Optional[datetime]
    delivered_at: Optional[datetime]
    read_at: Optional[datetime]
    error_message: Optional[str]
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="notification_metadata")


class TransitionResponse(BaseModel):
    notification_id: int
    applied: bool
    status: NotificationStatus


class ProviderStatusResponse(BaseModel):
    provider_message_id: str
    applied: bool


class SweepResponse(BaseModel):
    evaluated: int
    failed: int
    actions: int
    errors: Dict[int, str]
    timestamp: datetime
