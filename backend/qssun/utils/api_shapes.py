"""Shared API shape helpers.

  - success(): standard success envelope used by system endpoints
  - iso(): ISO-8601 rendering of optional datetimes/dates
  - to_float(): numeric coercion for DECIMAL columns (None stays None)
  - parse_decimal() / parse_date(): lenient request coercion raising ValidationFailed

Domain routes (quotations, custody sheets, notifications) answer with the
plain objects the frontend already consumes; only system endpoints are
enveloped.
"""
from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any


def success(data: Any, **meta) -> dict:
    import time as _t
    return {"status": "success", "data": data, "meta": meta or None, "timestamp": _t.time()}


def iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def to_float(value: Decimal | float | int | None) -> float | None:
    if value is None:
        return None
    return float(value)


def parse_decimal(value: Any, field: str, default: Decimal | None = None) -> Decimal | None:
    """Coerce incoming numeric JSON (number or numeric string) to Decimal."""
    from .errors import ValidationFailed
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationFailed(f"{field} must be a valid number.", {"field": field})
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"{field} must be a valid number.", {"field": field})
    if not parsed.is_finite():
        raise ValidationFailed(f"{field} must be a valid number.", {"field": field})
    return parsed


def parse_date(value: Any, field: str) -> date | None:
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp; empty means None."""
    from .errors import ValidationFailed
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationFailed(f"{field} must be an ISO date (YYYY-MM-DD).", {"field": field})
