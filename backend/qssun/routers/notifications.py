"""In-app notifications router (bell menu) and broadcast endpoint."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.database import get_async_db_dependency
from ..config.observability import trace_operation
from ..config.settings import Settings, get_settings
from ..services import notification_service

router = APIRouter(prefix="/notifications")


@router.post("/send")
async def send_notifications(
    payload: Optional[Dict[str, Any]] = Body(None),
    db: AsyncSession = Depends(get_async_db_dependency),
    settings: Settings = Depends(get_settings),
):
    """Notify one user (``type=user``) or everyone (``type=all``)."""
    with trace_operation("notification_send"):
        return await notification_service.send_notifications(db, payload or {}, settings)


@router.post("/read/{user_id}")
async def mark_read(user_id: int, db: AsyncSession = Depends(get_async_db_dependency)):
    return await notification_service.mark_all_read(db, user_id)


@router.get("/{user_id}")
async def list_notifications(
    user_id: int,
    db: AsyncSession = Depends(get_async_db_dependency),
    settings: Settings = Depends(get_settings),
):
    return await notification_service.list_notifications(
        db, user_id, limit=settings.NOTIFICATION_LIST_LIMIT)
