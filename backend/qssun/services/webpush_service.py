"""Browser push subscriptions and delivery (VAPID via pywebpush).

pywebpush is blocking (requests underneath) so delivery runs in a worker
thread. The subscription JSON stored in ``raw`` is preferred; a row whose raw
JSON cannot be parsed falls back to the endpoint/key columns.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.observability import notification_dispatch_counter
from ..config.settings import Settings
from ..models.database import WebPushSubscription
from ..utils.errors import (
    ERROR_CODES,
    NotFoundError,
    ValidationFailed,
    WebPushDeliveryFailed,
    WebPushNotConfigured,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "إشعار"
DEFAULT_BODY = "لديك إشعار جديد"
DEFAULT_LINK = "/"

# Failures raised by pywebpush itself, by requests (an OSError subclass) and by
# py_vapid on malformed keys.
DELIVERY_ERRORS = (WebPushException, OSError, ValueError)


def _user_id(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationFailed("userId must be numeric.", {"field": "userId"})


def subscription_info(row: WebPushSubscription) -> Dict[str, Any]:
    if row.raw:
        try:
            parsed = json.loads(row.raw)
        except ValueError:
            logger.warning("Unparsable raw subscription %s for user %s", row.id, row.user_id)
        else:
            if isinstance(parsed, dict) and parsed.get("endpoint"):
                return parsed
    return {"endpoint": row.endpoint, "keys": {"auth": row.keys_auth, "p256dh": row.keys_p256dh}}


async def save_subscription(db: AsyncSession, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Upsert on (user_id, endpoint).

    Accepts ``{userId, subscription}`` as produced by ``PushManager.subscribe()``
    or the flattened ``{userId, endpoint, keys, raw}``.
    """
    subscription = payload.get("subscription")
    if not isinstance(subscription, dict):
        subscription = None
    endpoint = (subscription or {}).get("endpoint") or payload.get("endpoint")
    keys = (subscription or {}).get("keys") or payload.get("keys") or {}
    raw = payload.get("raw") or subscription
    if isinstance(raw, (dict, list)):
        raw = json.dumps(raw)

    if not payload.get("userId") or not endpoint:
        raise ValidationFailed("userId and endpoint are required.")
    user_id = _user_id(payload.get("userId"))
    values = {
        "keys_auth": keys.get("auth") if isinstance(keys, dict) else None,
        "keys_p256dh": keys.get("p256dh") if isinstance(keys, dict) else None,
        "raw": raw,
        "updated_at": datetime.now(UTC),
    }

    async def _update_existing() -> bool:
        result = await db.execute(
            select(WebPushSubscription).where(
                WebPushSubscription.user_id == user_id,
                WebPushSubscription.endpoint == endpoint,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return False
        for column, value in values.items():
            setattr(row, column, value)
        await db.commit()
        return True

    if not await _update_existing():
        db.add(WebPushSubscription(user_id=user_id, endpoint=endpoint, **values))
        try:
            await db.commit()
        except IntegrityError:
            # concurrent subscribe for the same endpoint won the insert
            await db.rollback()
            await _update_existing()
    logger.info("Web push subscription saved for user %s", user_id)
    return {"message": "Subscription saved."}


async def latest_subscription(db: AsyncSession, user_id: int) -> Optional[WebPushSubscription]:
    result = await db.execute(
        select(WebPushSubscription)
        .where(WebPushSubscription.user_id == user_id)
        .order_by(WebPushSubscription.updated_at.desc(), WebPushSubscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def deliver(info: Dict[str, Any], message: Dict[str, Any], settings: Settings) -> None:
    """Send one push message; raises one of DELIVERY_ERRORS on failure."""
    await asyncio.to_thread(
        webpush,
        subscription_info=info,
        data=json.dumps(message, ensure_ascii=False),
        vapid_private_key=settings.WEB_PUSH_PRIVATE_KEY,
        # pywebpush adds aud/exp to the claims dict it is given
        vapid_claims={"sub": settings.WEB_PUSH_SUBJECT},
    )


async def send_to_user(db: AsyncSession, payload: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    if not payload.get("userId"):
        raise ValidationFailed("userId is required.", {"field": "userId"})
    user_id = _user_id(payload.get("userId"))
    if not settings.web_push_enabled:
        raise WebPushNotConfigured()
    row = await latest_subscription(db, user_id)
    if row is None:
        raise NotFoundError("No web push subscription found for user.",
                            code=ERROR_CODES["subscription_not_found"])
    message = {
        "title": payload.get("title") or DEFAULT_TITLE,
        "body": payload.get("body") or DEFAULT_BODY,
        "link": payload.get("link") or DEFAULT_LINK,
    }
    try:
        await deliver(subscription_info(row), message, settings)
    except DELIVERY_ERRORS as exc:
        notification_dispatch_counter.labels("webpush", "failed").inc()
        logger.error("Web push to user %s failed: %s", user_id, exc)
        raise WebPushDeliveryFailed("Failed to send notification.", {"reason": str(exc)}) from exc
    notification_dispatch_counter.labels("webpush", "sent").inc()
    return {"message": "Notification sent."}


__all__ = [
    "DEFAULT_TITLE",
    "DEFAULT_BODY",
    "DEFAULT_LINK",
    "DELIVERY_ERRORS",
    "subscription_info",
    "save_subscription",
    "latest_subscription",
    "deliver",
    "send_to_user",
]
