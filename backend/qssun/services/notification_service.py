"""In-app notifications plus fan-out to web push.

Dispatch is best effort per recipient: a failed insert or push is logged and
the loop moves on to the next user (no retries).
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.observability import notification_dispatch_counter
from ..config.settings import Settings
from ..models.database import Notification, User
from ..utils.api_shapes import iso
from ..utils.errors import ValidationFailed
from . import webpush_service

logger = logging.getLogger(__name__)

RECIPIENT_TYPES = {"user", "all"}


def _serialize(notification: Notification) -> Dict[str, Any]:
    return {
        "id": str(notification.id),
        "message": notification.message,
        "link": notification.link,
        "isRead": bool(notification.is_read),
        "createdAt": iso(notification.created_at),
    }


async def list_notifications(db: AsyncSession, user_id: int, limit: int = 50) -> list[Dict[str, Any]]:
    result = await db.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return [_serialize(n) for n in result.scalars().all()]


async def mark_all_read(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    await db.commit()
    logger.debug("Marked %s notifications read for user %s", result.rowcount, user_id)
    return {"message": "Notifications marked as read."}


async def _recipients(db: AsyncSession, kind: str, target: Any) -> list[int]:
    if kind == "user":
        if target in (None, ""):
            raise ValidationFailed("targetUserId is required for type=user.",
                                   {"field": "targetUserId"})
        try:
            return [int(str(target).strip())]
        except ValueError:
            raise ValidationFailed("targetUserId must be numeric.", {"field": "targetUserId"})
    result = await db.execute(select(User.id).order_by(User.id))
    return [uid for (uid,) in result.all()]


async def _push(db: AsyncSession, user_id: int, message: Dict[str, Any], settings: Settings) -> None:
    try:
        row = await webpush_service.latest_subscription(db, user_id)
        if row is None:
            return
        await webpush_service.deliver(webpush_service.subscription_info(row), message, settings)
    except (*webpush_service.DELIVERY_ERRORS, SQLAlchemyError) as exc:
        notification_dispatch_counter.labels("webpush", "failed").inc()
        logger.warning("WebPush send failed for user %s: %s", user_id, exc)
        return
    notification_dispatch_counter.labels("webpush", "sent").inc()


async def send_notifications(db: AsyncSession, payload: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    """Store an in-app notification for each recipient and push it when VAPID is configured."""
    message = payload.get("message")
    if not message:
        raise ValidationFailed("message is required.", {"field": "message"})
    title = payload.get("title") or webpush_service.DEFAULT_TITLE
    link = payload.get("link") or webpush_service.DEFAULT_LINK
    kind = payload.get("type") or "all"
    if kind not in RECIPIENT_TYPES:
        raise ValidationFailed("type must be 'user' or 'all'.", {"field": "type"})

    recipients = await _recipients(db, kind, payload.get("targetUserId"))
    push_message = {"title": title, "body": message, "link": link}
    for user_id in recipients:
        try:
            db.add(Notification(user_id=user_id, message=message, link=link, is_read=False))
            await db.commit()
            notification_dispatch_counter.labels("in_app", "stored").inc()
        except SQLAlchemyError as exc:
            await db.rollback()
            notification_dispatch_counter.labels("in_app", "failed").inc()
            logger.warning("Failed to insert notification for user %s: %s", user_id, exc)

        if settings.web_push_enabled:
            await _push(db, user_id, push_message, settings)

    logger.info("Dispatched notification to %d recipients (type=%s)", len(recipients), kind)
    return {"message": "Notifications dispatched.", "count": len(recipients)}


__all__ = [
    "list_notifications",
    "mark_all_read",
    "send_notifications",
]
