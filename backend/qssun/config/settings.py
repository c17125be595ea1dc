"""Application settings module.

Provides centralized configuration using environment variables with sane defaults.
The serial prefix is a deployment constant and must never be empty; the
calendar day used for serials is evaluated in SERIAL_TIMEZONE, never in the
host's implicit local zone.
"""
from __future__ import annotations

from functools import lru_cache
import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, field_validator

SERIAL_STORE_KINDS = {"database", "file"}


class Settings(BaseModel):
    # Daily serial allocation
    SERIAL_PREFIX: str = "القصيم"
    SERIAL_TIMEZONE: str = "Asia/Riyadh"
    SERIAL_STORE: str = "database"
    SERIAL_DIR: str = "./serials"
    SERIAL_TIMEOUT_SECONDS: float = 5.0

    # Web push (VAPID)
    WEB_PUSH_PUBLIC_KEY: Optional[str] = None
    WEB_PUSH_PRIVATE_KEY: Optional[str] = None
    WEB_PUSH_SUBJECT: str = "mailto:admin@qssun.solar"

    NOTIFICATION_LIST_LIMIT: int = 50

    # Observability toggles
    ENABLE_TRACING: bool = False

    @field_validator("SERIAL_PREFIX")
    @classmethod
    def _prefix_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("SERIAL_PREFIX must not be empty")
        return value.strip()

    @field_validator("SERIAL_STORE")
    @classmethod
    def _known_store(cls, value: str) -> str:
        value = value.lower()
        if value not in SERIAL_STORE_KINDS:
            raise ValueError(
                f"SERIAL_STORE must be one of {sorted(SERIAL_STORE_KINDS)}")
        return value

    @field_validator("SERIAL_TIMEZONE")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("SERIAL_TIMEOUT_SECONDS")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SERIAL_TIMEOUT_SECONDS must be positive")
        return value

    @property
    def serial_tz(self) -> ZoneInfo:
        return ZoneInfo(self.SERIAL_TIMEZONE)

    @property
    def web_push_enabled(self) -> bool:
        return bool(self.WEB_PUSH_PUBLIC_KEY and self.WEB_PUSH_PRIVATE_KEY)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment with type coercion and defaults.

        Web push keys accept both the WEB_PUSH_* names and the older VAPID_* names.
        """
        def _get_float(name: str, default: float) -> float:
            raw = os.getenv(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                return default

        def _get_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name)
            if raw is None:
                return default
            return raw.lower() in {"1", "true", "yes", "on"}

        def _first(*names: str) -> Optional[str]:
            for name in names:
                raw = os.getenv(name)
                if raw:
                    return raw
            return None

        return cls(
            SERIAL_PREFIX=os.getenv("SERIAL_PREFIX", "القصيم"),
            SERIAL_TIMEZONE=os.getenv("SERIAL_TIMEZONE", "Asia/Riyadh"),
            SERIAL_STORE=os.getenv("SERIAL_STORE", "database"),
            SERIAL_DIR=os.getenv("SERIAL_DIR", "./serials"),
            SERIAL_TIMEOUT_SECONDS=_get_float("SERIAL_TIMEOUT_SECONDS", 5.0),
            WEB_PUSH_PUBLIC_KEY=_first("WEB_PUSH_PUBLIC_KEY", "VAPID_PUBLIC_KEY"),
            WEB_PUSH_PRIVATE_KEY=_first("WEB_PUSH_PRIVATE_KEY", "VAPID_PRIVATE_KEY"),
            WEB_PUSH_SUBJECT=_first("WEB_PUSH_SUBJECT", "VAPID_SUBJECT") or "mailto:admin@qssun.solar",
            NOTIFICATION_LIST_LIMIT=int(os.getenv("NOTIFICATION_LIST_LIMIT", "50")),
            ENABLE_TRACING=_get_bool("ENABLE_TRACING", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached Settings instance (singleton pattern)."""
    return Settings.load()


__all__ = ["Settings", "get_settings", "SERIAL_STORE_KINDS"]
