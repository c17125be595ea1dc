"""Allocator behaviour over the in-memory store (no database)."""
import asyncio
from datetime import date, datetime, UTC
from zoneinfo import ZoneInfo

import pytest
from prometheus_client import REGISTRY

from qssun.services.serial_service import (
    InMemorySerialStore,
    SerialAllocator,
    date_key_for,
    format_serial,
    parse_counter,
)
from qssun.utils.errors import CorruptState

RIYADH = ZoneInfo("Asia/Riyadh")
MARCH_7 = date(2024, 3, 7)


def _allocator(store=None, prefix="ORG"):
    return SerialAllocator(store or InMemorySerialStore(), prefix=prefix, tz=RIYADH)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_first_serials_of_the_day():
    allocator = _allocator()
    assert await allocator.allocate(MARCH_7) == "ORG20240307001"
    assert await allocator.allocate(MARCH_7) == "ORG20240307002"
    assert await allocator.last_issued(MARCH_7) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_new_allocator_over_same_store_continues():
    store = InMemorySerialStore()
    await _allocator(store).allocate(MARCH_7)
    restarted = _allocator(store)
    assert await restarted.allocate(MARCH_7) == "ORG20240307002"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_next_day_starts_at_one():
    allocator = _allocator()
    await allocator.allocate(MARCH_7)
    await allocator.allocate(MARCH_7)
    assert await allocator.allocate(date(2024, 3, 8)) == "ORG20240308001"
    # previous day untouched
    assert await allocator.last_issued(MARCH_7) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_counter_padding_is_a_minimum_width():
    allocator = _allocator(InMemorySerialStore({"20240307": 999}))
    assert await allocator.allocate(MARCH_7) == "ORG202403071000"


@pytest.mark.unit
@pytest.mark.parametrize("prefix", ["", "   "])
def test_empty_prefix_rejected(prefix):
    with pytest.raises(ValueError):
        _allocator(prefix=prefix)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_allocations_are_unique_and_contiguous():
    allocator = _allocator()
    results = await asyncio.gather(*(allocator.allocate(MARCH_7) for _ in range(50)))
    counters = sorted(int(serial[len("ORG20240307"):]) for serial in results)
    assert counters == list(range(1, 51))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_corrupt_counter_refuses_to_allocate():
    store = InMemorySerialStore({"20240307": "abc"})
    allocator = _allocator(store)
    labels = {"reason": "corrupt_state"}
    before = REGISTRY.get_sample_value("serial_allocation_failures_total", labels) or 0

    with pytest.raises(CorruptState) as exc_info:
        await allocator.allocate(MARCH_7)

    assert exc_info.value.raw_value == "abc"
    assert exc_info.value.date_key == "20240307"
    assert REGISTRY.get_sample_value("serial_allocation_failures_total", labels) == before + 1
    # never reset to zero: the next attempt is refused as well
    with pytest.raises(CorruptState):
        await allocator.allocate(MARCH_7)
    # other days keep working
    assert await allocator.allocate(date(2024, 3, 8)) == "ORG20240308001"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_negative_counter_is_corrupt():
    allocator = _allocator(InMemorySerialStore({"20240307": -4}))
    with pytest.raises(CorruptState):
        await allocator.allocate(MARCH_7)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_today_is_evaluated_in_configured_timezone(monkeypatch):
    # 22:30 UTC on the 6th is already 01:30 on the 7th in Riyadh (UTC+3)
    instant = datetime(2024, 3, 6, 22, 30, tzinfo=UTC)

    class _FakeDateTime:
        @staticmethod
        def now(tz=None):
            return instant.astimezone(tz) if tz else instant

    monkeypatch.setattr("qssun.services.serial_service.datetime", _FakeDateTime)
    allocator = _allocator()
    assert allocator.today() == MARCH_7
    assert await allocator.allocate() == "ORG20240307001"


@pytest.mark.unit
def test_date_key_and_format_helpers():
    assert date_key_for(MARCH_7) == "20240307"
    assert date_key_for(date(999, 1, 2)) == "09990102"
    assert format_serial("القصيم", "20240307", 12) == "القصيم20240307012"
    assert format_serial("ORG", "20240307", 12345) == "ORG2024030712345"


@pytest.mark.unit
@pytest.mark.parametrize("raw, expected", [(0, 0), (7, 7), ("7", 7), (" 42\n", 42)])
def test_parse_counter_accepts_non_negative_integers(raw, expected):
    assert parse_counter("20240307", raw) == expected


@pytest.mark.unit
@pytest.mark.parametrize("raw", ["", "abc", "1.5", "-1", "٣", None, True, -3])
def test_parse_counter_rejects_everything_else(raw):
    with pytest.raises(CorruptState):
        parse_counter("20240307", raw)
