"""Collaborator interfaces consumed by the escalation core."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from hsse_escalation.models.incident import IncidentSnapshot
from hsse_escalation.models.rule import NotificationChannel


@dataclass(frozen=True)
class SendResult:
    """Outcome reported by a channel sender for one message."""

    accepted: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class RenderedTemplate:
    subject: str
    content: str


@dataclass(frozen=True)
class Recipient:
    """A person a notification can be addressed to."""

    id: str
    name: Optional[str] = None
    recipient_type: str = "user"
    email: Optional[str] = None
    phone: Optional[str] = None
    device_token: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def contact_for(self, channel: NotificationChannel) -> Optional[str]:
        """Address used by the given channel, if the recipient has one."""
        if channel == NotificationChannel.EMAIL:
            return self.email
        if channel == NotificationChannel.SMS:
            return self.phone
        if channel == NotificationChannel.PUSH:
            return self.device_token
        return self.id


class IncidentSnapshotProvider(Protocol):
    async def get_open_incident_snapshots(self) -> List[IncidentSnapshot]:
        ...

    async def get_incident_snapshot(self, incident_id: int) -> Optional[IncidentSnapshot]:
        ...


class ChannelSender(Protocol):
    async def send(
        self,
        channel: NotificationChannel,
        recipient_contact: str,
        subject: str,
        content: str,
    ) -> SendResult:
        ...


class TemplateResolver(Protocol):
    def resolve(
        self,
        template_id: str,
        parameters: Mapping[str, Any],
        channel: Optional[NotificationChannel] = None,
        language: Optional[str] = None,
    ) -> RenderedTemplate:
        ...


class UserDirectory(Protocol):
    async def resolve(self, target: str) -> List[Recipient]:
        ...


class IncidentActionHandler(Protocol):
    """Applies Escalate/Assign/Custom actions to the incident record."""

    async def apply(
        self,
        incident: IncidentSnapshot,
        action_type: str,
        target: str,
        parameters: Mapping[str, str],
    ) -> Optional[str]:
        ...


class ActionScheduler(Protocol):
    """Runs a coroutine function once at a given time.

    ``on_cancel(*args, reason)`` is awaited instead when the job is dropped
    before it starts.
    """

    def schedule(
        self,
        job_id: str,
        run_at: datetime,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        on_cancel: Optional[Callable[..., Awaitable[Any]]] = None,
    ) -> bool:
        ...
