"""Service layer package.

Business rules and persistence live here; nothing in this package raises
``HTTPException``.
"""

__all__ = [
    "serial_service",
    "quotation_service",
    "expense_service",
    "notification_service",
    "webpush_service",
]
