"""Notification dispatch with an owned, bounded delivery queue."""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from hsse_escalation.config import settings
from hsse_escalation.errors import (
    DispatchError,
    PermanentDispatchError,
    TransientDispatchError,
)
from hsse_escalation.interfaces import ChannelSender, Recipient, TemplateResolver
from hsse_escalation.models.history import (
    NotificationHistory,
    NotificationPriority,
    NotificationStatus,
)
from hsse_escalation.models.rule import NotificationChannel
from hsse_escalation.storage.audit_store import AuditStore
from hsse_escalation.utils.logging import get_logger, log_notification_event

logger = get_logger(__name__)

# Provider status strings mapped onto the notification lifecycle
PROVIDER_STATUS_MAP = {
    "sent": NotificationStatus.SENT,
    "delivered": NotificationStatus.DELIVERED,
    "read": NotificationStatus.READ,
    "failed": NotificationStatus.FAILED,
    "undelivered": NotificationStatus.FAILED,
}


@dataclass(frozen=True)
class DeliveryJob:
    """Transport work for one Pending notification row."""

    notification_id: int
    channel: NotificationChannel
    contact: Optional[str]
    subject: str
    content: str


class NotificationDispatcher:
    """Resolves templates, records notification rows and drives channel senders.

    ``send`` performs a single delivery attempt inline. ``submit`` records the
    Pending row and hands transport to the dispatcher's worker pool so slow
    providers never hold up rule evaluation. There is no internal retry.
    """

    def __init__(
        self,
        audit_store: AuditStore,
        templates: TemplateResolver,
        senders: Mapping[NotificationChannel, ChannelSender],
        workers: Optional[int] = None,
        queue_size: Optional[int] = None,
        send_timeout: Optional[float] = None,
    ):
        self.audit_store = audit_store
        self.templates = templates
        self.senders: Dict[NotificationChannel, ChannelSender] = dict(senders)
        self.worker_count = workers or settings.DISPATCH_WORKERS
        self.queue_size = queue_size or settings.DISPATCH_QUEUE_SIZE
        self.send_timeout = send_timeout or settings.CHANNEL_SEND_TIMEOUT_SECONDS

        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        # Jobs taken off the queue whose worker was cancelled mid-delivery
        self._interrupted: List[DeliveryJob] = []

    # Worker pool lifecycle

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._workers)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def start(self) -> None:
        """Start worker tasks on the running event loop."""
        if self.is_running:
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queue = queue
        self._workers = [
            asyncio.create_task(self._worker(i, queue), name=f"notification-dispatch-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Notification dispatcher started", workers=self.worker_count, queue_size=self.queue_size)

    async def join(self) -> None:
        """Wait until every queued delivery has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the worker pool; undelivered jobs are failed, never left Pending."""
        if self._queue is None:
            return

        if drain:
            try:
                await asyncio.wait_for(self.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Dispatcher drain timed out", remaining=self.queue_depth)

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        interrupted, self._interrupted = self._interrupted, []
        for job in interrupted:
            await self._fail(job, TransientDispatchError("Dispatcher stopped during delivery"))

        queued = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            self._queue.task_done()
            queued += 1
            await self._fail(job, TransientDispatchError("Dispatcher stopped before delivery"))

        logger.info("Notification dispatcher stopped", interrupted=len(interrupted), undelivered=queued)

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            job = await queue.get()
            try:
                await self._deliver(job)
            except asyncio.CancelledError:
                self._interrupted.append(job)
                raise
            except Exception as e:
                logger.error(
                    "Dispatcher worker could not record delivery outcome",
                    worker=index,
                    notification_id=job.notification_id,
                    error=str(e)
                )
            finally:
                queue.task_done()

    # Sending

    async def send(
        self,
        recipient: Recipient,
        template_id: str,
        channel: NotificationChannel,
        parameters: Mapping[str, Any],
        incident_id: Optional[int] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        metadata: Optional[Dict[str, Any]] = None,
        language: Optional[str] = None,
    ) -> NotificationHistory:
        """Single delivery attempt; returns the row in its final state."""
        row, job = await self._prepare(
            recipient, template_id, channel, parameters, incident_id, priority, metadata, language
        )
        await self._deliver(job)
        return await self.audit_store.get_notification(row.id) or row

    async def submit(
        self,
        recipient: Recipient,
        template_id: str,
        channel: NotificationChannel,
        parameters: Mapping[str, Any],
        incident_id: Optional[int] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        metadata: Optional[Dict[str, Any]] = None,
        language: Optional[str] = None,
    ) -> NotificationHistory:
        """Record a Pending row and queue its delivery. Never blocks on transport."""
        row, job = await self._prepare(
            recipient, template_id, channel, parameters, incident_id, priority, metadata, language
        )

        if not self.is_running:
            self.start()
        if self._queue is None:
            raise RuntimeError("Dispatcher queue was not created")

        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            await self._fail(job, TransientDispatchError("Dispatch queue is full"))

        return row

    async def _prepare(
        self,
        recipient: Recipient,
        template_id: str,
        channel: NotificationChannel,
        parameters: Mapping[str, Any],
        incident_id: Optional[int],
        priority: NotificationPriority,
        metadata: Optional[Dict[str, Any]],
        language: Optional[str] = None,
    ) -> Tuple[NotificationHistory, DeliveryJob]:
        rendered = self.templates.resolve(template_id, parameters, channel, language=language)

        row_metadata: Dict[str, Any] = {"recipient_name": recipient.name}
        if language:
            row_metadata["language"] = language
        row_metadata.update(metadata or {})

        row = await self.audit_store.create_notification(
            recipient_id=recipient.id,
            recipient_type=recipient.recipient_type,
            template_id=template_id,
            channel=channel,
            subject=rendered.subject,
            content=rendered.content,
            priority=priority,
            incident_id=incident_id,
            metadata=row_metadata,
        )
        log_notification_event(
            logger,
            row.id,
            channel.value,
            NotificationStatus.PENDING.value,
            incident_id=incident_id,
            recipient_id=recipient.id,
            template_id=template_id
        )

        job = DeliveryJob(
            notification_id=row.id,
            channel=channel,
            contact=recipient.contact_for(channel),
            subject=rendered.subject,
            content=rendered.content,
        )
        return row, job

    async def _deliver(self, job: DeliveryJob) -> None:
        channel = job.channel.value
        sender = self.senders.get(job.channel)

        try:
            if sender is None:
                raise PermanentDispatchError(f"No sender configured for channel {channel}")
            if not job.contact:
                raise PermanentDispatchError(f"Recipient has no {channel} contact")

            result = await asyncio.wait_for(
                sender.send(job.channel, job.contact, job.subject, job.content),
                timeout=self.send_timeout,
            )

        except asyncio.TimeoutError:
            await self._fail(job, TransientDispatchError(
                f"{channel} send timed out after {self.send_timeout:g}s"
            ))
            return
        except DispatchError as e:
            await self._fail(job, e)
            return
        except Exception as e:
            logger.error("Unexpected channel sender error", channel=channel, error=str(e))
            await self._fail(job, TransientDispatchError(f"Unexpected {channel} sender error: {e}"))
            return

        if result.accepted:
            await self.audit_store.mark_notification_sent(job.notification_id, result.provider_message_id)
            log_notification_event(
                logger,
                job.notification_id,
                channel,
                NotificationStatus.SENT.value,
                provider_message_id=result.provider_message_id
            )
            return

        message = result.error or f"{channel} provider rejected the message"
        error: DispatchError = (
            TransientDispatchError(message) if result.retryable else PermanentDispatchError(message)
        )
        await self._fail(job, error)

    async def _fail(self, job: DeliveryJob, error: DispatchError) -> None:
        await self.audit_store.mark_notification_failed(
            job.notification_id,
            str(error),
            metadata={"error_category": error.category, "retryable": error.retryable},
        )
        log_notification_event(
            logger,
            job.notification_id,
            job.channel.value,
            NotificationStatus.FAILED.value,
            error=str(error),
            retryable=error.retryable
        )

    # Provider callbacks

    async def mark_delivered(self, notification_id: int) -> bool:
        return await self.audit_store.transition_notification(
            notification_id, NotificationStatus.DELIVERED
        )

    async def mark_read(self, notification_id: int) -> bool:
        return await self.audit_store.transition_notification(
            notification_id, NotificationStatus.READ
        )

    async def handle_provider_status(
        self,
        provider_message_id: str,
        provider_status: str,
        error_message: Optional[str] = None,
    ) -> bool:
        """Apply a status reported by a provider callback. Unknown ids and statuses are ignored."""
        target = PROVIDER_STATUS_MAP.get(provider_status.strip().lower())
        if target is None:
            logger.info("Ignoring provider status", provider_status=provider_status)
            return False

        row = await self.audit_store.find_notification_by_provider_id(provider_message_id)
        if row is None:
            logger.warning("Provider callback for unknown message", provider_message_id=provider_message_id)
            return False

        if target == NotificationStatus.FAILED:
            return await self.audit_store.mark_notification_failed(
                row.id,
                error_message or f"Provider reported {provider_status}",
                metadata={"error_category": "permanent", "retryable": False},
            )
        return await self.audit_store.transition_notification(row.id, target)
