"""Quotation domain service layer.

Quotations are numbered with a daily serial. A client may still send its own
``quote_number``; when it is omitted the number comes from the serial allocator
so two quotations never share one. No HTTP concerns here: failures surface as
domain exceptions (see ``utils.errors``).
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.database import CATEGORY_ORDER, Quotation, QuotationCategory, QuotationItem
from ..utils.api_shapes import iso, parse_date, parse_decimal, to_float
from ..utils.errors import ERROR_CODES, ConflictError, NotFoundError, ValidationFailed
from .serial_service import SerialAllocator

logger = logging.getLogger(__name__)

_ITEM_NUMERIC_FIELDS = (
    "capacity_kw",
    "price_per_kw",
    "total_before_tax",
    "vat15",
    "total_with_tax",
)


def _summary_statement():
    total = func.coalesce(func.sum(QuotationItem.total_with_tax), 0).label("total_with_tax")
    return (
        select(
            Quotation.id,
            Quotation.quote_number,
            Quotation.quote_date,
            Quotation.customer_name,
            Quotation.location,
            Quotation.mobile,
            total,
            Quotation.created_at,
        )
        .outerjoin(QuotationItem, QuotationItem.quotation_id == Quotation.id)
        .group_by(
            Quotation.id,
            Quotation.quote_number,
            Quotation.quote_date,
            Quotation.customer_name,
            Quotation.location,
            Quotation.mobile,
            Quotation.created_at,
        )
    )


def _serialize_summary(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "quote_number": row.quote_number,
        "quote_date": iso(row.quote_date),
        "customer_name": row.customer_name,
        "location": row.location,
        "mobile": row.mobile,
        "total_with_tax": to_float(row.total_with_tax) or 0.0,
        "created_at": iso(row.created_at),
    }


def _serialize_item(item: QuotationItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "category": item.category,
        "horsepower": item.horsepower,
        "capacity_kw": to_float(item.capacity_kw),
        "price_per_kw": to_float(item.price_per_kw),
        "total_before_tax": to_float(item.total_before_tax),
        "vat15": to_float(item.vat15),
        "total_with_tax": to_float(item.total_with_tax),
    }


def _build_item(raw: Any, index: int) -> QuotationItem:
    if not isinstance(raw, dict):
        raise ValidationFailed("Each quotation item must be an object.", {"index": index})
    values = {
        name: parse_decimal(raw.get(name), f"items[{index}].{name}")
        for name in _ITEM_NUMERIC_FIELDS
    }
    horsepower = raw.get("horsepower")
    return QuotationItem(
        category=str(raw.get("category") or QuotationCategory.ECONOMY.value),
        horsepower=str(horsepower) if horsepower not in (None, "") else None,
        **values,
    )


async def list_quotations(db: AsyncSession) -> list[Dict[str, Any]]:
    """Summaries for the quotation cards, newest first."""
    stmt = _summary_statement().order_by(
        Quotation.created_at.desc(), Quotation.quote_date.desc(), Quotation.id.desc())
    result = await db.execute(stmt)
    return [_serialize_summary(row) for row in result.all()]


async def get_quotation_summary(db: AsyncSession, quotation_id: int) -> Optional[Dict[str, Any]]:
    result = await db.execute(_summary_statement().where(Quotation.id == quotation_id))
    row = result.first()
    return _serialize_summary(row) if row else None


async def create_quotation(
    db: AsyncSession,
    payload: Dict[str, Any],
    allocator: SerialAllocator,
) -> Dict[str, Any]:
    """Persist a quotation with its items and return its summary.

    Validation happens before a serial is allocated so rejected requests do not
    consume numbers. Serial allocation failures (StorageUnavailable /
    CorruptState) propagate unchanged.
    """
    customer_name = str(payload.get("customer_name") or "").strip()
    if not customer_name:
        raise ValidationFailed("يجب إدخال اسم العميل.", {"field": "customer_name"})

    raw_items = payload.get("items")
    items = [_build_item(raw, i) for i, raw in enumerate(raw_items if isinstance(raw_items, list) else [])]
    quote_date = parse_date(payload.get("quote_date"), "quote_date") or allocator.today()

    quote_number = str(payload.get("quote_number") or "").strip()
    if not quote_number:
        quote_number = await allocator.allocate()

    location = payload.get("location")
    mobile = payload.get("mobile")
    quotation = Quotation(
        quote_number=quote_number,
        quote_date=quote_date,
        customer_name=customer_name,
        location=str(location) if location else None,
        mobile=str(mobile) if mobile else None,
        items=items,
    )
    db.add(quotation)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.warning("Duplicate quotation number %s: %s", quote_number, exc.orig)
        raise ConflictError(
            "رقم عرض السعر مستخدم مسبقاً.",
            code=ERROR_CODES["quote_number_exists"],
            details={"quote_number": quote_number},
        ) from exc
    await db.refresh(quotation)
    logger.info("Quotation %s saved with %d items", quote_number, len(items))
    return await get_quotation_summary(db, quotation.id)


async def get_quotation(db: AsyncSession, identifier: str) -> Dict[str, Any]:
    """Fetch a quotation by numeric id or by quote number, with ordered items."""
    conditions = [Quotation.quote_number == identifier]
    # longer digit strings overflow a 64-bit id column
    numeric_id = int(identifier) if identifier.isdigit() and len(identifier) <= 18 else None
    if numeric_id is not None:
        conditions.append(Quotation.id == numeric_id)
    # an exact id match wins over a quote number that happens to look like an id
    id_first = case((Quotation.id == numeric_id, 0), else_=1) if numeric_id is not None else Quotation.id
    result = await db.execute(
        select(Quotation).where(or_(*conditions)).order_by(id_first).limit(1))
    quotation = result.scalar_one_or_none()
    if quotation is None:
        raise NotFoundError("لم يتم العثور على عرض السعر.",
                            code=ERROR_CODES["quotation_not_found"])

    rank = case(
        {category: position for position, category in enumerate(CATEGORY_ORDER)},
        value=QuotationItem.category,
        else_=len(CATEGORY_ORDER),
    )
    items = await db.execute(
        select(QuotationItem)
        .where(QuotationItem.quotation_id == quotation.id)
        .order_by(rank, QuotationItem.id)
    )
    return {
        "id": quotation.id,
        "quote_number": quotation.quote_number,
        "quote_date": iso(quotation.quote_date),
        "customer_name": quotation.customer_name,
        "location": quotation.location,
        "mobile": quotation.mobile,
        "created_at": iso(quotation.created_at),
        "items": [_serialize_item(item) for item in items.scalars().all()],
    }


__all__ = [
    "list_quotations",
    "create_quotation",
    "get_quotation",
    "get_quotation_summary",
]
