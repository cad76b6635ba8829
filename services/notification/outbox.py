"""
services/notification/outbox.py
Best-effort side effects collected during a request and flushed after
the primary transaction commits: in-app notifications, realtime
publish, and mail tasks. Nothing here ever fails the caller.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from shared.models.models import Notification

logger = logging.getLogger(__name__)


@dataclass
class PendingNotification:
    recipient_id: uuid.UUID
    kind: str
    title: str
    body: Optional[str] = None
    booking_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    payload: Optional[dict] = None


@dataclass
class Outbox:
    notifications: list[PendingNotification] = field(default_factory=list)
    mails: list[tuple[str, dict]] = field(default_factory=list)

    def notify(
        self,
        recipient_id: Optional[uuid.UUID],
        kind: str,
        title: str,
        body: Optional[str] = None,
        *,
        booking_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
        payload: Optional[dict] = None,
    ) -> None:
        # Mentors imported before signup have no account to notify
        if recipient_id is None:
            return
        self.notifications.append(
            PendingNotification(recipient_id, kind, title, body, booking_id, user_id, payload)
        )

    def mail(self, mode: str, payload: dict) -> None:
        self.mails.append((mode, payload))

    async def flush(self, db: AsyncSession, redis=None) -> int:
        """Persist and dispatch everything queued. Returns notifications stored."""
        stored = 0
        for pending in self.notifications:
            notification = await _store(db, pending)
            if notification is None:
                continue
            stored += 1
            if redis is not None:
                await _publish(redis, notification)

        for mode, payload in self.mails:
            enqueue_mail(mode, payload)

        self.notifications.clear()
        self.mails.clear()
        return stored


async def _store(db: AsyncSession, pending: PendingNotification) -> Optional[Notification]:
    """Each insert commits on its own so one failure cannot undo another."""
    notification = Notification(
        recipient_id=pending.recipient_id,
        user_id=pending.user_id,
        booking_id=pending.booking_id,
        kind=pending.kind,
        title=pending.title,
        body=pending.body,
        payload=pending.payload,
    )
    try:
        db.add(notification)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Notification insert failed ({pending.kind} -> {pending.recipient_id}): {e}")
        return None
    return notification


async def _publish(redis, notification: Notification) -> None:
    event = {
        "table": "notifications",
        "type": "INSERT",
        "record": {
            "id": str(notification.id),
            "kind": notification.kind,
            "title": notification.title,
            "body": notification.body,
            "booking_id": str(notification.booking_id) if notification.booking_id else None,
            "created_at": notification.created_at.isoformat(),
        },
    }
    try:
        await RedisCache(redis).publish(str(notification.recipient_id), event)
    except RedisError as e:
        logger.warning(f"Realtime publish failed for {notification.recipient_id}: {e}")


def enqueue_mail(mode: str, payload: dict) -> None:
    from tasks.notification_tasks import send_mode_mail

    try:
        send_mode_mail.delay(mode, payload)
    except Exception as e:  # broker down, serialization: mail is optional
        logger.warning(f"Mail '{mode}' not queued: {e}")
