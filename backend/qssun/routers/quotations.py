"""Quotation router plus on-demand serial allocation.

Responses keep the plain (non-enveloped) shapes the quotation screens consume.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.database import get_async_db_dependency
from ..config.observability import trace_operation
from ..services import quotation_service
from ..services.serial_service import SerialAllocator, get_serial_allocator

router = APIRouter()


@router.get("/quotations")
async def list_quotations(db: AsyncSession = Depends(get_async_db_dependency)):
    return await quotation_service.list_quotations(db)


@router.post("/quotations", status_code=status.HTTP_201_CREATED)
async def create_quotation(
    payload: Optional[Dict[str, Any]] = Body(None),
    db: AsyncSession = Depends(get_async_db_dependency),
    allocator: SerialAllocator = Depends(get_serial_allocator),
):
    """Save a quotation; ``quote_number`` is allocated when the client omits it."""
    with trace_operation("quotation_create"):
        return await quotation_service.create_quotation(db, payload or {}, allocator)


@router.get("/quotations/{identifier}")
async def get_quotation(identifier: str, db: AsyncSession = Depends(get_async_db_dependency)):
    return await quotation_service.get_quotation(db, identifier)


@router.post("/serials", status_code=status.HTTP_201_CREATED)
async def allocate_serial(allocator: SerialAllocator = Depends(get_serial_allocator)):
    """Allocate the next daily serial (e.g. to show the number before saving)."""
    with trace_operation("serial_allocate", store=allocator.store.name):
        serial = await allocator.allocate()
    return {"serial": serial}
