"""Instant expenses (custody sheets) router.

Every route requires purchase management permission. The requester comes from
the ``x-user-id`` header, or from ``employeeId`` in the JSON body; an
``x-user-role: admin`` header alone is accepted for browsing.
"""
import json
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..config.database import get_async_db_dependency
from ..config.observability import trace_operation
from ..models.database import User
from ..services import expense_service


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def require_purchase_management(
    request: Request,
    db: AsyncSession = Depends(get_async_db_dependency),
) -> Optional[User]:
    requester = request.headers.get("x-user-id")
    if not requester:
        requester = (await _json_body(request)).get("employeeId")
    return await expense_service.check_purchase_management_permission(
        db, requester, request.headers.get("x-user-role"))


router = APIRouter(
    prefix="/instant-expenses",
    dependencies=[Depends(require_purchase_management)],
)


# Pydantic schemas (camelCase on the wire)


class SheetCreate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    employee_id: Optional[Union[int, str]] = Field(default=None, alias="employeeId")
    custody_number: Optional[Union[int, str]] = Field(default=None, alias="custodyNumber")
    custody_amount: Optional[Union[float, str]] = Field(default=None, alias="custodyAmount")
    notes: Optional[str] = None


class LinePayload(BaseModel):
    """Expense line; amounts may arrive as numbers or numeric strings."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    date: Optional[str] = None
    company: Optional[str] = None
    invoice_number: Optional[Union[str, int]] = Field(default=None, alias="invoiceNumber")
    description: Optional[str] = None
    reason: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    bank_fees: Optional[Union[float, str]] = Field(default=None, alias="bankFees")
    buyer_name: Optional[str] = Field(default=None, alias="buyerName")
    notes: Optional[str] = None


@router.get("/sheets")
async def list_sheets(request: Request, db: AsyncSession = Depends(get_async_db_dependency)):
    return await expense_service.list_sheets(
        db,
        requester=request.headers.get("x-user-id"),
        role_header=request.headers.get("x-user-role"),
    )


@router.get("/sheets/by-number/{number}")
async def get_sheet_by_number(number: str, db: AsyncSession = Depends(get_async_db_dependency)):
    return await expense_service.get_sheet_by_number(db, number)


@router.post("/sheets", status_code=status.HTTP_201_CREATED)
async def create_sheet(payload: SheetCreate, db: AsyncSession = Depends(get_async_db_dependency)):
    with trace_operation("custody_sheet_create"):
        return await expense_service.create_sheet(
            db, payload.model_dump(by_alias=True, exclude_unset=True))


@router.get("/sheets/{sheet_id}")
async def get_sheet(sheet_id: str, db: AsyncSession = Depends(get_async_db_dependency)):
    return await expense_service.get_sheet(db, sheet_id)


@router.post("/sheets/{sheet_id}/lines", status_code=status.HTTP_201_CREATED)
async def add_line(sheet_id: str, payload: LinePayload, db: AsyncSession = Depends(get_async_db_dependency)):
    with trace_operation("custody_line_add", sheet_id=sheet_id):
        return await expense_service.add_line(
            db, sheet_id, payload.model_dump(by_alias=True, exclude_unset=True))


@router.put("/sheets/{sheet_id}/lines/{line_id}")
async def update_line(
    sheet_id: str,
    line_id: str,
    payload: LinePayload,
    db: AsyncSession = Depends(get_async_db_dependency),
):
    # exclude_unset keeps the update partial: absent keys leave columns untouched
    return await expense_service.update_line(
        db, sheet_id, line_id, payload.model_dump(by_alias=True, exclude_unset=True))


@router.delete("/sheets/{sheet_id}/lines/{line_id}")
async def delete_line(sheet_id: str, line_id: str, db: AsyncSession = Depends(get_async_db_dependency)):
    return await expense_service.delete_line(db, sheet_id, line_id)


@router.post("/sheets/{sheet_id}/close")
async def close_sheet(sheet_id: str, db: AsyncSession = Depends(get_async_db_dependency)):
    return await expense_service.close_sheet(db, sheet_id)
