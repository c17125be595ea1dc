"""Instant expenses (custody sheets) service layer.

A custody sheet records an amount handed to an employee; lines record what was
spent from it. Every mutation of a line touches the parent sheet's
``last_modified`` so lists re-sort automatically.

Response shapes are camelCase because the frontend consumes them unchanged.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, UTC
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.database import (
    InstantExpenseLine,
    InstantExpenseSheet,
    SheetStatus,
    User,
    UserRole,
)
from ..utils.api_shapes import iso, parse_date, parse_decimal, to_float
from ..utils.errors import (
    ERROR_CODES,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    Unauthorized,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"^[0-9]+$")

# request field (camelCase) -> line column
_LINE_FIELDS = {
    "date": "date",
    "company": "company",
    "invoiceNumber": "invoice_number",
    "description": "description",
    "reason": "reason",
    "amount": "amount",
    "bankFees": "bank_fees",
    "buyerName": "buyer_name",
    "notes": "notes",
}


def _now() -> datetime:
    return datetime.now(UTC)


def _is_digits(value: Any) -> bool:
    return bool(_DIGITS.match(str(value)))


def _sheet_not_found() -> NotFoundError:
    return NotFoundError("Sheet not found.", code=ERROR_CODES["sheet_not_found"])


def _line_not_found() -> NotFoundError:
    return NotFoundError("Line not found.", code=ERROR_CODES["line_not_found"])


# ------------------------------- Mapping ----------------------------------- #


def map_sheet(
    sheet: InstantExpenseSheet,
    total_spent: Any = None,
    line_count: Any = None,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": sheet.id,
        "custodyNumber": sheet.custody_number or None,
        "custodyAmount": to_float(sheet.custody_amount) or 0.0,
        "status": sheet.status or SheetStatus.OPEN.value,
        "notes": sheet.notes or None,
        "createdAt": iso(sheet.created_at),
        "lastModified": iso(sheet.last_modified),
    }
    # aggregates only exist on list rows
    if total_spent is not None:
        data["totalSpent"] = float(total_spent)
    if line_count is not None:
        data["lineCount"] = int(line_count)
    return data


def map_line(line: InstantExpenseLine) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": line.id,
        "date": iso(line.date),
        "company": line.company or None,
        "invoiceNumber": line.invoice_number or None,
        "description": line.description or None,
        "reason": line.reason,
        "amount": to_float(line.amount) or 0.0,
        "buyerName": line.buyer_name or None,
        "notes": line.notes or None,
        "createdAt": iso(line.created_at),
    }
    if line.bank_fees is not None:
        data["bankFees"] = to_float(line.bank_fees)
    return data


# ------------------------------ Permissions -------------------------------- #


async def find_user(db: AsyncSession, reference: Any) -> Optional[User]:
    """Resolve a requester reference: digits match ``users.id``, anything else ``username``."""
    ref = str(reference)
    if _is_digits(ref):
        stmt = select(User).where(User.id == int(ref))
    else:
        stmt = select(User).where(User.username == ref)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def check_purchase_management_permission(
    db: AsyncSession,
    requester: Any,
    role_header: Optional[str],
) -> Optional[User]:
    """Gate for every custody sheet route.

    Admins identified only by the role header pass without a lookup (so list
    pages can be browsed); otherwise the requester must exist and be an admin or
    hold the purchase management permission.
    """
    role = (role_header or "").lower()
    if not requester and role == UserRole.ADMIN.value:
        return None
    if not requester:
        raise Unauthorized()
    user = await find_user(db, requester)
    if user is None:
        raise NotFoundError("User not found.", code=ERROR_CODES["user_not_found"])
    if str(user.role).lower() == UserRole.ADMIN.value or user.has_purchase_management_permission:
        return user
    raise PermissionDenied("Forbidden: Purchase management permission required.")


# -------------------------------- Sheets ----------------------------------- #


async def list_sheets(
    db: AsyncSession,
    requester: Optional[str] = None,
    role_header: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """All sheets with spend aggregates; employees only see their own."""
    spent = func.coalesce(
        func.sum(InstantExpenseLine.amount + func.coalesce(InstantExpenseLine.bank_fees, 0)), 0)
    stmt = (
        select(
            InstantExpenseSheet,
            spent.label("total_spent"),
            func.count(InstantExpenseLine.id).label("line_count"),
        )
        .outerjoin(InstantExpenseLine, InstantExpenseLine.sheet_id == InstantExpenseSheet.id)
        .group_by(InstantExpenseSheet.id)
        .order_by(InstantExpenseSheet.last_modified.desc(), InstantExpenseSheet.created_at.desc())
    )
    if (role_header or "").lower() == UserRole.EMPLOYEE.value and requester:
        if _is_digits(requester):
            owner_id = int(requester)
        else:
            user = await find_user(db, requester)
            if user is None:
                return []
            owner_id = user.id
        stmt = stmt.where(InstantExpenseSheet.user_id == owner_id)
    result = await db.execute(stmt)
    return [map_sheet(sheet, total, count) for sheet, total, count in result.all()]


async def _get_sheet_row(db: AsyncSession, sheet_id: str) -> Optional[InstantExpenseSheet]:
    result = await db.execute(select(InstantExpenseSheet).where(InstantExpenseSheet.id == sheet_id))
    return result.scalar_one_or_none()


async def _sheet_with_lines(db: AsyncSession, sheet: InstantExpenseSheet) -> Dict[str, Any]:
    result = await db.execute(
        select(InstantExpenseLine)
        .where(InstantExpenseLine.sheet_id == sheet.id)
        .order_by(InstantExpenseLine.date.desc(), InstantExpenseLine.created_at.desc())
    )
    return {"sheet": map_sheet(sheet), "lines": [map_line(line) for line in result.scalars().all()]}


async def get_sheet(db: AsyncSession, sheet_id: str) -> Dict[str, Any]:
    sheet = await _get_sheet_row(db, sheet_id)
    if sheet is None:
        raise _sheet_not_found()
    return await _sheet_with_lines(db, sheet)


async def get_sheet_by_number(db: AsyncSession, number: str) -> Dict[str, Any]:
    if not _is_digits(number):
        raise ValidationFailed("رقم العهدة يجب أن يكون أرقام فقط.", {"field": "custodyNumber"})
    result = await db.execute(
        select(InstantExpenseSheet).where(InstantExpenseSheet.custody_number == str(number)))
    sheet = result.scalar_one_or_none()
    if sheet is None:
        raise _sheet_not_found()
    return await _sheet_with_lines(db, sheet)


async def create_sheet(db: AsyncSession, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Open a custody sheet for ``employeeId`` (id or username)."""
    custody_number = payload.get("custodyNumber")
    if custody_number is not None:
        custody_number = str(custody_number).strip()
        if not _is_digits(custody_number):
            raise ValidationFailed("custodyNumber must be numeric digits only.",
                                   {"field": "custodyNumber"})
        existing = await db.execute(
            select(InstantExpenseSheet).where(InstantExpenseSheet.custody_number == custody_number))
        duplicate = existing.scalar_one_or_none()
        if duplicate is not None:
            raise ConflictError("Custody number already exists.",
                                code=ERROR_CODES["custody_number_exists"],
                                details=map_sheet(duplicate))

    employee = str(payload.get("employeeId") or "")
    owner = None
    if employee:
        conditions = [User.username == employee]
        if _is_digits(employee):
            conditions.append(User.id == int(employee))
        result = await db.execute(select(User).where(or_(*conditions)).limit(1))
        owner = result.scalar_one_or_none()
    if owner is None:
        raise NotFoundError("User not found.", code=ERROR_CODES["user_not_found"])

    now = _now()
    sheet = InstantExpenseSheet(
        id=f"CUST-{uuid4().hex[:12].upper()}",
        custody_number=custody_number or None,
        custody_amount=parse_decimal(payload.get("custodyAmount"), "custodyAmount", default=0),
        user_id=owner.id,
        status=SheetStatus.OPEN.value,
        notes=payload.get("notes") or None,
        created_at=now,
        last_modified=now,
    )
    db.add(sheet)
    try:
        await db.commit()
    except IntegrityError as exc:
        # lost a race on the unique custody number
        await db.rollback()
        raise ConflictError("Custody number already exists.",
                            code=ERROR_CODES["custody_number_exists"]) from exc
    await db.refresh(sheet)
    logger.info("Custody sheet %s opened for user %s", sheet.id, owner.id)
    return map_sheet(sheet)


async def close_sheet(db: AsyncSession, sheet_id: str) -> Dict[str, Any]:
    sheet = await _get_sheet_row(db, sheet_id)
    if sheet is None:
        raise _sheet_not_found()
    sheet.status = SheetStatus.CLOSED.value
    sheet.last_modified = _now()
    await db.commit()
    await db.refresh(sheet)
    logger.info("Custody sheet %s closed", sheet_id)
    return map_sheet(sheet)


async def _touch_sheet(db: AsyncSession, sheet_id: str) -> None:
    await db.execute(
        update(InstantExpenseSheet)
        .where(InstantExpenseSheet.id == sheet_id)
        .values(last_modified=_now())
    )


# -------------------------------- Lines ------------------------------------ #


def _line_values(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Convert the provided camelCase fields to column values (absent keys are skipped)."""
    values: Dict[str, Any] = {}
    for field, column in _LINE_FIELDS.items():
        if field not in payload:
            continue
        raw = payload[field]
        if column == "date":
            values[column] = parse_date(raw, field)
        elif column == "amount":
            values[column] = parse_decimal(raw, field, default=0)
        elif column == "bank_fees":
            values[column] = parse_decimal(raw, field)
        elif column == "reason":
            values[column] = raw
        else:
            values[column] = str(raw) if raw not in (None, "") else None
    return values


async def _get_line_row(db: AsyncSession, sheet_id: str, line_id: str) -> Optional[InstantExpenseLine]:
    result = await db.execute(
        select(InstantExpenseLine).where(
            InstantExpenseLine.id == line_id,
            InstantExpenseLine.sheet_id == sheet_id,
        )
    )
    return result.scalar_one_or_none()


async def add_line(db: AsyncSession, sheet_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if await _get_sheet_row(db, sheet_id) is None:
        raise _sheet_not_found()
    if payload.get("reason") in (None, ""):
        raise ValidationFailed("reason is required.", {"field": "reason"})
    values = _line_values(payload)
    values.setdefault("amount", 0)
    line = InstantExpenseLine(
        id=f"LINE-{uuid4().hex[:12].upper()}",
        sheet_id=sheet_id,
        created_at=_now(),
        **values,
    )
    db.add(line)
    await _touch_sheet(db, sheet_id)
    await db.commit()
    await db.refresh(line)
    return map_line(line)


async def update_line(
    db: AsyncSession,
    sheet_id: str,
    line_id: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Partial update: only keys present in ``payload`` change; reason and amount are mandatory."""
    line = await _get_line_row(db, sheet_id, line_id)
    if line is None:
        raise _line_not_found()
    if payload.get("reason") is None:
        raise ValidationFailed("reason is required.", {"field": "reason"})
    if payload.get("amount") is None:
        raise ValidationFailed("amount must be a valid number.", {"field": "amount"})
    for column, value in _line_values(payload).items():
        setattr(line, column, value)
    await _touch_sheet(db, sheet_id)
    await db.commit()
    await db.refresh(line)
    return map_line(line)


async def delete_line(db: AsyncSession, sheet_id: str, line_id: str) -> Dict[str, Any]:
    line = await _get_line_row(db, sheet_id, line_id)
    if line is None:
        raise _line_not_found()
    await db.delete(line)
    await _touch_sheet(db, sheet_id)
    await db.commit()
    return {"message": "تم حذف البند."}


__all__ = [
    "map_sheet",
    "map_line",
    "find_user",
    "check_purchase_management_permission",
    "list_sheets",
    "get_sheet",
    "get_sheet_by_number",
    "create_sheet",
    "close_sheet",
    "add_line",
    "update_line",
    "delete_line",
]
