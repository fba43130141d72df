"""Append-only persistence for escalation and notification history."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hsse_escalation.errors import DuplicateFireError
from hsse_escalation.models.history import (
    EscalationFireRecord,
    EscalationHistory,
    NotificationHistory,
    NotificationPriority,
    NotificationStatus,
)
from hsse_escalation.models.rule import ActionType, NotificationChannel
from hsse_escalation.storage.retry import db_retry, infrastructure_errors
from hsse_escalation.utils.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditStore:
    """Escalation/notification history and the idempotent fire guard.

    History rows are only ever inserted. The single exception is the
    notification status, which moves forward through conditional updates.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # Fire guard

    async def has_fired(self, incident_id: int, rule_id: Optional[int], signature: str) -> bool:
        with infrastructure_errors("check fire guard"):
            return await self._has_fired(incident_id, rule_id, signature)

    @db_retry
    async def _has_fired(self, incident_id: int, rule_id: Optional[int], signature: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EscalationFireRecord.id)
                .where(
                    EscalationFireRecord.incident_id == incident_id,
                    EscalationFireRecord.escalation_rule_id == rule_id,
                    EscalationFireRecord.state_signature == signature,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def claim_fire(
        self,
        incident_id: int,
        rule_id: Optional[int],
        signature: str,
        fired_at: Optional[datetime] = None,
    ) -> bool:
        """Atomically record that a rule fired. False if it already had."""
        try:
            await self._insert_fire_record(incident_id, rule_id, signature, fired_at)
        except DuplicateFireError:
            logger.info(
                "Rule already fired for this state",
                incident_id=incident_id,
                rule_id=rule_id,
                signature=signature
            )
            return False
        return True

    async def _insert_fire_record(
        self,
        incident_id: int,
        rule_id: Optional[int],
        signature: str,
        fired_at: Optional[datetime],
    ) -> None:
        with infrastructure_errors("claim fire guard"):
            async with self.session_factory() as session:
                session.add(EscalationFireRecord(
                    incident_id=incident_id,
                    escalation_rule_id=rule_id,
                    state_signature=signature,
                    fired_at=fired_at or _utcnow(),
                ))
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise DuplicateFireError(
                        f"incident {incident_id} rule {rule_id} signature {signature}"
                    ) from e

    # Escalation history

    async def record_escalation(
        self,
        incident_id: int,
        rule_id: Optional[int],
        rule_name: str,
        action_type: ActionType,
        action_target: str,
        is_successful: bool,
        action_details: Optional[str] = None,
        error_message: Optional[str] = None,
        executed_at: Optional[datetime] = None,
        executed_by: Optional[str] = None,
    ) -> EscalationHistory:
        row = EscalationHistory(
            incident_id=incident_id,
            escalation_rule_id=rule_id,
            rule_name=rule_name,
            action_type=action_type,
            action_target=action_target,
            action_details=action_details[:2000] if action_details else None,
            is_successful=is_successful,
            error_message=error_message[:2000] if error_message else None,
            executed_at=executed_at or _utcnow(),
            executed_by=executed_by,
        )
        with infrastructure_errors("record escalation history"):
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        return row

    async def get_escalation_history(self, incident_id: int) -> List[EscalationHistory]:
        with infrastructure_errors("read escalation history"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(EscalationHistory)
                    .where(EscalationHistory.incident_id == incident_id)
                    .order_by(EscalationHistory.id)
                )
                return list(result.scalars().all())

    # Notification history

    async def create_notification(
        self,
        recipient_id: str,
        recipient_type: str,
        template_id: str,
        channel: NotificationChannel,
        subject: str,
        content: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        incident_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> NotificationHistory:
        """Insert a notification row in the Pending state."""
        row = NotificationHistory(
            incident_id=incident_id,
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            template_id=template_id,
            channel=channel,
            priority=priority,
            subject=subject[:500],
            content=content,
            status=NotificationStatus.PENDING,
            notification_metadata=dict(metadata or {}),
        )
        with infrastructure_errors("create notification history"):
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        return row

    async def mark_notification_sent(
        self,
        notification_id: int,
        provider_message_id: Optional[str] = None,
        sent_at: Optional[datetime] = None,
    ) -> bool:
        extra = {"provider_message_id": provider_message_id} if provider_message_id else None
        return await self.transition_notification(
            notification_id,
            NotificationStatus.SENT,
            at=sent_at,
            metadata=extra,
        )

    async def mark_notification_failed(
        self,
        notification_id: int,
        error_message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.transition_notification(
            notification_id,
            NotificationStatus.FAILED,
            error_message=error_message,
            metadata=metadata,
        )

    async def transition_notification(
        self,
        notification_id: int,
        target: NotificationStatus,
        at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a notification forward. Returns False when the move is not allowed.

        The status check and the write are one conditional UPDATE, so concurrent
        callbacks cannot regress a row or revive a failed one.
        """
        when = at or _utcnow()
        values: Dict[str, Any] = {"status": target}
        if target == NotificationStatus.SENT:
            values["sent_at"] = when
        elif target == NotificationStatus.DELIVERED:
            values["delivered_at"] = when
        elif target == NotificationStatus.READ:
            values["read_at"] = when
            values["delivered_at"] = func.coalesce(NotificationHistory.delivered_at, when)
        elif target == NotificationStatus.FAILED:
            values["error_message"] = (error_message or "Delivery failed")[:2000]

        with infrastructure_errors("update notification status"):
            async with self.session_factory() as session:
                if metadata:
                    current = await session.get(NotificationHistory, notification_id)
                    if current is not None:
                        merged = dict(current.notification_metadata or {})
                        merged.update(metadata)
                        values["notification_metadata"] = merged
                result = await session.execute(
                    update(NotificationHistory)
                    .where(
                        NotificationHistory.id == notification_id,
                        NotificationHistory.status.in_(target.predecessors()),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        applied = result.rowcount > 0
        if not applied:
            logger.info(
                "Notification status transition rejected",
                notification_id=notification_id,
                target_status=target.value
            )
        return applied

    async def get_notification(self, notification_id: int) -> Optional[NotificationHistory]:
        with infrastructure_errors("read notification history"):
            async with self.session_factory() as session:
                return await session.get(NotificationHistory, notification_id)

    async def find_notification_by_provider_id(
        self,
        provider_message_id: str,
    ) -> Optional[NotificationHistory]:
        with infrastructure_errors("read notification history"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(NotificationHistory)
                    .where(
                        NotificationHistory.notification_metadata["provider_message_id"].as_string()
                        == provider_message_id
                    )
                    .limit(1)
                )
                return result.scalar_one_or_none()

    async def get_notification_history(self, incident_id: int) -> List[NotificationHistory]:
        with infrastructure_errors("read notification history"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(NotificationHistory)
                    .where(NotificationHistory.incident_id == incident_id)
                    .order_by(NotificationHistory.id)
                )
                return list(result.scalars().all())

    async def check_connection(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session_factory() as session:
                await session.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.error("Database connection test failed", error=str(e))
            return False
