"""
services/notification/router.py
In-app notifications: REST listing/read flags plus a WebSocket that relays
realtime change events published on the recipient's Redis channel.
"""

import asyncio
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from jose import JWTError
from redis.exceptions import RedisError
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis, notification_channel
from services.notification.outbox import Outbox
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, User
from shared.schemas.schemas import (
    MessageResponse,
    NotificationCreateRequest,
    NotificationResponse,
    UnreadCountResponse,
)
from shared.utils.dates import utcnow
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])

_READ_FLAGS = ("read", "is_read", "seen")


def _unread():
    # Rows written by older clients may carry only one of the flags
    return or_(Notification.read.is_(False), Notification.is_read.is_(False))


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Newest first."""
    query = (
        select(Notification)
        .where(Notification.recipient_id == current_user.id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )
    if unread_only:
        query = query.where(_unread())
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.recipient_id == current_user.id, _unread()
        )
    )
    return UnreadCountResponse(count=count or 0)


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.recipient_id == current_user.id, _unread())
        .values(**{flag: True for flag in _READ_FLAGS}, read_at=utcnow())
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.recipient_id == current_user.id)
        .values(**{flag: True for flag in _READ_FLAGS}, read_at=utcnow())
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return MessageResponse(message="Marked as read")


@router.post("", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_notification(
    data: NotificationCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Best-effort insert used by clients after their own actions.
    Always accepted; a failed insert is only logged.
    """
    outbox = Outbox()
    outbox.notify(
        data.recipient_id,
        data.kind,
        data.title,
        data.body,
        booking_id=data.booking_id,
        user_id=current_user.id,
        payload=data.payload,
    )
    stored = await outbox.flush(db, redis)
    return MessageResponse(message="queued", success=stored == 1)


# ── Realtime ──────────────────────────────────────────────────

async def _authenticate_socket(token: Optional[str], redis) -> Optional[str]:
    if not token:
        return None
    try:
        payload = verify_access_token(token)
    except JWTError:
        return None
    if await RedisCache(redis).is_token_revoked(payload.get("jti", "")):
        return None
    return payload["sub"]


async def _relay(websocket: WebSocket, pubsub) -> None:
    while True:
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        if message and message.get("type") == "message":
            await websocket.send_text(message["data"])


async def _drain(websocket: WebSocket) -> None:
    """Client frames are ignored; returns when the client goes away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Streams `{"table": "notifications", "type": "INSERT", "record": {...}}`
    events for the authenticated recipient. Auth is `?token=<access JWT>`.
    """
    redis = get_redis()
    user_id = await _authenticate_socket(token, redis)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    pubsub = redis.pubsub()
    try:
        await pubsub.subscribe(notification_channel(user_id))
        relay = asyncio.create_task(_relay(websocket, pubsub))
        drain = asyncio.create_task(_drain(websocket))
        done, pending = await asyncio.wait({relay, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() and not isinstance(task.exception(), WebSocketDisconnect):
                logger.warning(f"Notification socket for {user_id} closed: {task.exception()}")
    except RedisError as e:
        logger.warning(f"Notification socket for {user_id} lost Redis: {e}")
    finally:
        await pubsub.unsubscribe()
        await pubsub.aclose()
