"""Web push (VAPID) subscription and test-send endpoints."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.database import get_async_db_dependency
from ..config.observability import trace_operation
from ..config.settings import Settings, get_settings
from ..services import webpush_service

router = APIRouter(prefix="/webpush")


@router.post("/subscribe")
async def subscribe(
    payload: Optional[Dict[str, Any]] = Body(None),
    db: AsyncSession = Depends(get_async_db_dependency),
):
    return await webpush_service.save_subscription(db, payload or {})


@router.post("/send")
async def send(
    payload: Optional[Dict[str, Any]] = Body(None),
    db: AsyncSession = Depends(get_async_db_dependency),
    settings: Settings = Depends(get_settings),
):
    with trace_operation("webpush_send"):
        return await webpush_service.send_to_user(db, payload or {}, settings)
