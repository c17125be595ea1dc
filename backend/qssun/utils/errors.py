"""Centralized error response helpers and domain exceptions.

Every error leaving the API uses the same envelope:

    {"status": "error", "error": {"code": ..., "message": ..., "details": ...},
     "timestamp": ..., "path": ...}

Services raise ``DomainError`` subclasses; the global handlers in ``main``
translate them using the ``status_code`` carried by each class.
"""
from __future__ import annotations
from typing import Any, Dict
import time

ERROR_CODES = {
    "validation": "VALIDATION_ERROR",
    "not_found": "NOT_FOUND",
    "unauthorized": "UNAUTHORIZED",
    "forbidden": "FORBIDDEN",
    "conflict": "CONFLICT",
    # Domain specific specialisations
    "quotation_not_found": "QUOTATION_NOT_FOUND",
    "quote_number_exists": "QUOTE_NUMBER_EXISTS",
    "sheet_not_found": "SHEET_NOT_FOUND",
    "line_not_found": "LINE_NOT_FOUND",
    "user_not_found": "USER_NOT_FOUND",
    "custody_number_exists": "CUSTODY_NUMBER_EXISTS",
    "subscription_not_found": "SUBSCRIPTION_NOT_FOUND",
    "webpush_not_configured": "WEBPUSH_NOT_CONFIGURED",
    "webpush_failed": "WEBPUSH_DELIVERY_FAILED",
    "serial_storage": "SERIAL_STORAGE_UNAVAILABLE",
    "serial_corrupt": "SERIAL_CORRUPT_STATE",
    "db": "DB_ERROR",
    "internal": "INTERNAL_SERVER_ERROR",
}


def error_payload(code: str, message: str, details: Any | None = None, path: str | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": "error",
        "error": {
            "code": code,
            "message": message,
        },
        "timestamp": time.time(),
    }
    if details is not None:
        payload["error"]["details"] = details
    if path:
        payload["path"] = path
    return payload


class DomainError(Exception):
    """Base domain error storing standardized fields."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Any | None = None):  # noqa: D401
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class ValidationFailed(DomainError):
    status_code = 400

    def __init__(self, message: str, details: Any | None = None):
        super().__init__(ERROR_CODES["validation"], message, details)


class Unauthorized(DomainError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized: User ID is missing."):
        super().__init__(ERROR_CODES["unauthorized"], message)


class PermissionDenied(DomainError):
    status_code = 403

    def __init__(self, message: str):
        super().__init__(ERROR_CODES["forbidden"], message)


class NotFoundError(DomainError):
    status_code = 404

    def __init__(self, message: str, code: str | None = None):
        super().__init__(code or ERROR_CODES["not_found"], message)


class ConflictError(DomainError):
    status_code = 409

    def __init__(self, message: str, code: str | None = None, details: Any | None = None):
        super().__init__(code or ERROR_CODES["conflict"], message, details)


# ------------------------------- Web push ---------------------------------- #


class WebPushNotConfigured(DomainError):
    """VAPID keys are not configured on this deployment."""
    status_code = 503

    def __init__(self, message: str = "VAPID keys missing. Set WEB_PUSH_PUBLIC_KEY/WEB_PUSH_PRIVATE_KEY."):
        super().__init__(ERROR_CODES["webpush_not_configured"], message)


class WebPushDeliveryFailed(DomainError):
    """The push service rejected or never received the message."""
    status_code = 502

    def __init__(self, message: str, details: Any | None = None):
        super().__init__(ERROR_CODES["webpush_failed"], message, details)


# ----------------------------- Serial allocation ----------------------------- #


class SerialAllocationError(DomainError):
    """Base class for failures while allocating a daily serial."""
    status_code = 500


class StorageUnavailable(SerialAllocationError):
    """Counter store could not be read or written (or did not answer in time)."""
    status_code = 503

    def __init__(self, message: str, date_key: str | None = None):
        super().__init__(ERROR_CODES["serial_storage"], message,
                         {"date_key": date_key} if date_key else None)
        self.date_key = date_key


class CorruptState(SerialAllocationError):
    """Persisted counter is not a non-negative integer; allocation refused."""
    status_code = 500

    def __init__(self, date_key: str, raw_value: Any):
        super().__init__(
            ERROR_CODES["serial_corrupt"],
            f"Stored serial counter for {date_key} is not a non-negative integer",
            {"date_key": date_key},
        )
        self.date_key = date_key
        self.raw_value = raw_value


class ConcurrencyViolation(SerialAllocationError):
    """Transient contention on the counter record. Retried internally, never surfaced."""

    def __init__(self, date_key: str, reason: str):
        super().__init__(ERROR_CODES["serial_storage"],
                         f"Concurrent update of serial counter {date_key}: {reason}")
        self.date_key = date_key


__all__ = [
    "ERROR_CODES",
    "error_payload",
    "DomainError",
    "ValidationFailed",
    "Unauthorized",
    "PermissionDenied",
    "NotFoundError",
    "ConflictError",
    "WebPushNotConfigured",
    "WebPushDeliveryFailed",
    "SerialAllocationError",
    "StorageUnavailable",
    "CorruptState",
    "ConcurrencyViolation",
]
