"""Daily serial allocation.

Serials look like ``<PREFIX><YYYYMMDD><NNN>``: a deployment prefix, the calendar
date in the configured timezone and a per-day counter zero-padded to at least
three digits (``ORG20240307001``; counter 1000 renders as ``1000``).

Counters live behind a ``SerialStore``. Every store runs the
read-increment-persist cycle under mutual exclusion scoped to the date key:

 - ``SqlSerialStore``: one atomic upsert per allocation (the row lock is the
   per-day lock), committed before the serial is handed out. The upsert
   only increments a well-formed counter.
 - ``FileSerialStore``: one ``<date_key>.txt`` per day, guarded by an in-process
   lock plus an advisory ``flock`` so several worker processes can share it.
 - ``InMemorySerialStore``: test fake, not durable.

A stored counter that is not a non-negative integer is never reset: the
allocation is refused with ``CorruptState``.
"""
from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config.logging import bind_context
from ..config.observability import (
    serial_allocation_counter,
    serial_allocation_failure_counter,
)
from ..config.settings import Settings, get_settings
from ..utils.errors import ConcurrencyViolation, CorruptState, StorageUnavailable

logger = logging.getLogger(__name__)

MIN_COUNTER_WIDTH = 3
MAX_CONTENTION_RETRIES = 10

_DIGITS = re.compile(r"[0-9]+")
_CONTENTION_MARKERS = ("locked", "busy", "deadlock", "lock wait timeout")


def date_key_for(day: date) -> str:
    """``YYYYMMDD`` with a four digit year regardless of platform strftime quirks."""
    return f"{day.year:04d}{day.month:02d}{day.day:02d}"


def format_serial(prefix: str, date_key: str, counter: int) -> str:
    return f"{prefix}{date_key}{counter:0{MIN_COUNTER_WIDTH}d}"


def parse_counter(date_key: str, raw: Any) -> int:
    """Validate a persisted counter value; raise CorruptState on anything but a non-negative int."""
    if isinstance(raw, bool):
        raise CorruptState(date_key, raw)
    if isinstance(raw, int):
        value = raw
    else:
        candidate = str(raw).strip() if raw is not None else ""
        if not _DIGITS.fullmatch(candidate):
            raise CorruptState(date_key, raw)
        value = int(candidate)
    if value < 0:
        raise CorruptState(date_key, raw)
    return value


# ------------------------------- Stores ------------------------------------ #


class SerialStore(ABC):
    """Durable ``date_key -> last_issued`` mapping with atomic increment."""

    name = "abstract"

    @abstractmethod
    async def increment(self, date_key: str) -> int:
        """Persist ``last_issued + 1`` for ``date_key`` and return it."""

    @abstractmethod
    async def current(self, date_key: str) -> int:
        """Return ``last_issued`` for ``date_key`` (0 when nothing was issued)."""


class InMemorySerialStore(SerialStore):
    """Process-local counters for tests. Not durable across restarts."""

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, date_key: str) -> asyncio.Lock:
        return self._locks.setdefault(date_key, asyncio.Lock())

    async def increment(self, date_key: str) -> int:
        async with self._lock_for(date_key):
            last = parse_counter(date_key, self._values.get(date_key, 0))
            # let other tasks run while the lock is held
            await asyncio.sleep(0)
            self._values[date_key] = last + 1
            return last + 1

    async def current(self, date_key: str) -> int:
        return parse_counter(date_key, self._values.get(date_key, 0))


class FileSerialStore(SerialStore):
    """One ``<date_key>.txt`` file per day holding the last issued counter."""

    name = "file"

    def __init__(self, directory: str | os.PathLike, timeout: float = 5.0):
        self.directory = Path(directory)
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, date_key: str) -> Path:
        return self.directory / f"{date_key}.txt"

    def _thread_lock(self, date_key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(date_key, threading.Lock())

    @contextmanager
    def _exclusive(self, date_key: str) -> Iterator[None]:
        deadline = time.monotonic() + self.timeout
        lock = self._thread_lock(date_key)
        if not lock.acquire(timeout=self.timeout):
            raise StorageUnavailable(
                f"Timed out waiting for serial lock {date_key}", date_key)
        try:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.directory / f"{date_key}.lock",
                             os.O_RDWR | os.O_CREAT, 0o644)
            except OSError as exc:
                raise StorageUnavailable(
                    f"Serial directory unavailable: {exc}", date_key) from exc
            try:
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise StorageUnavailable(
                                f"Timed out waiting for serial file lock {date_key}", date_key)
                        time.sleep(0.01)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        finally:
            lock.release()

    def _read(self, date_key: str) -> int:
        path = self.path_for(date_key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return 0
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageUnavailable(
                f"Cannot read serial counter {path}: {exc}", date_key) from exc
        return parse_counter(date_key, raw)

    def _write(self, date_key: str, value: int) -> None:
        path = self.path_for(date_key)
        tmp = path.with_name(
            f".{date_key}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(str(value))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
            dir_fd = os.open(self.directory, os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageUnavailable(
                f"Cannot persist serial counter {path}: {exc}", date_key) from exc

    def _increment_sync(self, date_key: str) -> int:
        with self._exclusive(date_key):
            next_value = self._read(date_key) + 1
            self._write(date_key, next_value)
            return next_value

    def _current_sync(self, date_key: str) -> int:
        with self._exclusive(date_key):
            return self._read(date_key)

    async def increment(self, date_key: str) -> int:
        return await asyncio.to_thread(self._increment_sync, date_key)

    async def current(self, date_key: str) -> int:
        return await asyncio.to_thread(self._current_sync, date_key)


class SqlSerialStore(SerialStore):
    """Counters in ``serial_day_sequences``, one row per day.

    PostgreSQL / SQLite (>= 3.35):
      INSERT (date_key, 1) ON CONFLICT(date_key)
      DO UPDATE SET last_seq = last_seq + 1 RETURNING last_seq

    SQLite does not enforce the column type, so its update only fires while
    the stored value is an integer. When the guard skips the row nothing is
    returned, and the stored value is read back inside the same transaction
    and reported as ``CorruptState``.

    MySQL has neither ON CONFLICT nor RETURNING; LAST_INSERT_ID(expr) stores the
    new value on the connection so the follow-up SELECT reads exactly our
    increment.

    Each allocation runs in its own transaction and is committed before the
    value is returned.
    """

    name = "database"

    _UPSERT_RETURNING = text(
        """
        INSERT INTO serial_day_sequences (date_key, last_seq)
        VALUES (:date_key, 1)
        ON CONFLICT(date_key) DO UPDATE
            SET last_seq = serial_day_sequences.last_seq + 1,
                updated_at = CURRENT_TIMESTAMP
        RETURNING last_seq
        """
    )
    _UPSERT_SQLITE = text(
        """
        INSERT INTO serial_day_sequences (date_key, last_seq)
        VALUES (:date_key, 1)
        ON CONFLICT(date_key) DO UPDATE
            SET last_seq = serial_day_sequences.last_seq + 1,
                updated_at = CURRENT_TIMESTAMP
            WHERE typeof(serial_day_sequences.last_seq) = 'integer'
              AND serial_day_sequences.last_seq >= 0
        RETURNING last_seq
        """
    )
    _UPSERT_MYSQL = text(
        """
        INSERT INTO serial_day_sequences (date_key, last_seq)
        VALUES (:date_key, LAST_INSERT_ID(1))
        ON DUPLICATE KEY UPDATE
            last_seq = LAST_INSERT_ID(last_seq + 1),
            updated_at = CURRENT_TIMESTAMP
        """
    )
    _SELECT_CURRENT = text(
        "SELECT last_seq FROM serial_day_sequences WHERE date_key = :date_key")

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 5.0):
        self._session_factory = session_factory
        self.timeout = timeout

    async def _upsert(self, session: AsyncSession, date_key: str) -> Any:
        dialect = session.get_bind().dialect.name
        if dialect == "mysql":
            await session.execute(self._UPSERT_MYSQL, {"date_key": date_key})
            result = await session.execute(text("SELECT LAST_INSERT_ID()"))
        elif dialect == "sqlite":
            result = await session.execute(self._UPSERT_SQLITE, {"date_key": date_key})
        else:
            result = await session.execute(self._UPSERT_RETURNING, {"date_key": date_key})
        value = result.scalar_one_or_none()
        if value is None:
            stored = await session.execute(self._SELECT_CURRENT, {"date_key": date_key})
            raise CorruptState(date_key, stored.scalar_one_or_none())
        return value

    async def _increment_once(self, date_key: str) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    raw = await self._upsert(session, date_key)
        except DBAPIError as exc:
            reason = str(exc.orig).lower()
            if any(marker in reason for marker in _CONTENTION_MARKERS):
                raise ConcurrencyViolation(date_key, reason) from exc
            raise StorageUnavailable(
                f"Serial counter store unavailable: {exc.orig}", date_key) from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailable(
                f"Serial counter store unavailable: {exc}", date_key) from exc
        except OSError as exc:
            raise StorageUnavailable(
                f"Serial counter store unreachable: {exc}", date_key) from exc
        value = parse_counter(date_key, raw)
        if value < 1:
            raise CorruptState(date_key, raw)
        return value

    async def increment(self, date_key: str) -> int:
        for attempt in range(1, MAX_CONTENTION_RETRIES + 1):
            try:
                return await asyncio.wait_for(self._increment_once(date_key), timeout=self.timeout)
            except ConcurrencyViolation as exc:
                logger.warning(
                    "Serial counter contention for %s (attempt %d/%d): %s",
                    date_key, attempt, MAX_CONTENTION_RETRIES, exc.message,
                )
                await asyncio.sleep(0.005 * attempt)
            except asyncio.TimeoutError as exc:
                raise StorageUnavailable(
                    f"Serial counter store did not answer within {self.timeout}s", date_key) from exc
        raise StorageUnavailable(
            f"Failed to allocate serial after {MAX_CONTENTION_RETRIES} attempts", date_key)

    async def current(self, date_key: str) -> int:
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(
                    session.execute(self._SELECT_CURRENT, {"date_key": date_key}),
                    timeout=self.timeout,
                )
                raw = result.scalar_one_or_none()
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(
                f"Serial counter store did not answer within {self.timeout}s", date_key) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailable(
                f"Serial counter store unavailable: {exc}", date_key) from exc
        return 0 if raw is None else parse_counter(date_key, raw)


# ------------------------------- Allocator --------------------------------- #


class SerialAllocator:
    """Issues ``<prefix><YYYYMMDD><NNN>`` serials from an injected store."""

    def __init__(self, store: SerialStore, prefix: str, tz: ZoneInfo):
        if not prefix or not prefix.strip():
            raise ValueError("Serial prefix must not be empty")
        self.store = store
        self.prefix = prefix
        self.tz = tz

    def today(self) -> date:
        return datetime.now(self.tz).date()

    async def allocate(self, on_date: Optional[date] = None) -> str:
        """Allocate the next serial for ``on_date`` (default: today in ``tz``)."""
        date_key = date_key_for(on_date or self.today())
        log = bind_context(logger, date_key=date_key)
        try:
            counter = await self.store.increment(date_key)
        except CorruptState as exc:
            serial_allocation_failure_counter.labels("corrupt_state").inc()
            log.error(
                "Refusing to allocate serial: stored counter for %s is %r", date_key, exc.raw_value)
            raise
        except StorageUnavailable as exc:
            serial_allocation_failure_counter.labels("storage_unavailable").inc()
            log.error("Serial store unavailable for %s: %s", date_key, exc.message)
            raise
        serial_allocation_counter.labels(self.store.name).inc()
        serial = format_serial(self.prefix, date_key, counter)
        log.info("Issued serial %s", serial)
        return serial

    async def last_issued(self, on_date: Optional[date] = None) -> int:
        """Highest counter issued so far for ``on_date`` without allocating."""
        return await self.store.current(date_key_for(on_date or self.today()))


def build_serial_store(settings: Settings, session_factory: Optional[async_sessionmaker] = None) -> SerialStore:
    if settings.SERIAL_STORE == "file":
        return FileSerialStore(settings.SERIAL_DIR, timeout=settings.SERIAL_TIMEOUT_SECONDS)
    if session_factory is None:
        from ..config.database import AsyncSessionLocal  # engine created on first use
        session_factory = AsyncSessionLocal
    return SqlSerialStore(session_factory, timeout=settings.SERIAL_TIMEOUT_SECONDS)


@lru_cache(maxsize=1)
def get_serial_allocator() -> SerialAllocator:
    """Process-wide allocator built from settings (FastAPI dependency)."""
    settings = get_settings()
    return SerialAllocator(
        build_serial_store(settings),
        prefix=settings.SERIAL_PREFIX,
        tz=settings.serial_tz,
    )


__all__ = [
    "SerialStore",
    "InMemorySerialStore",
    "FileSerialStore",
    "SqlSerialStore",
    "SerialAllocator",
    "build_serial_store",
    "get_serial_allocator",
    "date_key_for",
    "format_serial",
    "parse_counter",
]
