"""Contract tests for /api/quotations and /api/serials.

Quotation numbers are issued by the daily serial allocator when the client
omits ``quote_number``: ``ORG<YYYYMMDD><NNN>`` with the date taken in
Asia/Riyadh (the ``serial_allocator`` fixture pins the ORG prefix).
"""
from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from qssun.main import app
from qssun.services.serial_service import (
    InMemorySerialStore,
    SerialAllocator,
    SerialStore,
    date_key_for,
    get_serial_allocator,
)
from qssun.utils.errors import StorageUnavailable

RIYADH = ZoneInfo("Asia/Riyadh")
SERIAL_RE = re.compile(r"^ORG(\d{8})(\d{3,})$")

ITEMS = [
    {"category": "الأدنى", "horsepower": "5", "capacity_kw": 3.7, "price_per_kw": 900,
     "total_before_tax": 3330, "vat15": 499.5, "total_with_tax": 3829.5},
    {"category": "الأفضل", "horsepower": "5", "capacity_kw": 3.7, "price_per_kw": 1500,
     "total_before_tax": "5550", "vat15": "832.5", "total_with_tax": "6382.5"},
    {"category": "الجيد", "horsepower": 5, "capacity_kw": 3.7, "price_per_kw": 1200,
     "total_before_tax": 4440, "vat15": 666, "total_with_tax": 5106},
]


def _today_key() -> str:
    return date_key_for(datetime.now(RIYADH).date())


@pytest.mark.contract
@pytest.mark.asyncio
async def test_create_allocates_quote_number(async_client, serial_allocator):  # noqa: ARG001
    r1 = await async_client.post("/api/quotations", json={"customer_name": "مؤسسة الري", "items": ITEMS})
    r2 = await async_client.post("/api/quotations", json={"customer_name": "Second Farm"})
    assert r1.status_code == 201, r1.text
    assert r2.status_code == 201, r2.text

    q1, q2 = r1.json(), r2.json()
    m1 = SERIAL_RE.match(q1["quote_number"])
    assert m1, q1["quote_number"]
    assert m1.group(1) == _today_key()
    assert q1["quote_number"] == f"ORG{_today_key()}001"
    assert q2["quote_number"] == f"ORG{_today_key()}002"
    assert q1["total_with_tax"] == pytest.approx(3829.5 + 6382.5 + 5106)
    assert q2["total_with_tax"] == 0.0
    assert q1["quote_date"] == datetime.now(RIYADH).date().isoformat()


@pytest.mark.contract
@pytest.mark.asyncio
async def test_client_supplied_number_skips_allocation(async_client, serial_allocator):
    resp = await async_client.post(
        "/api/quotations",
        json={"customer_name": "Manual", "quote_number": "Q-2024-77", "quote_date": "2024-03-07"},
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["quote_number"] == "Q-2024-77"
    assert resp.json()["quote_date"] == "2024-03-07"
    assert await serial_allocator.last_issued() == 0


@pytest.mark.contract
@pytest.mark.asyncio
async def test_duplicate_quote_number_conflicts(async_client, serial_allocator):  # noqa: ARG001
    payload = {"customer_name": "Dup", "quote_number": "Q-1"}
    assert (await async_client.post("/api/quotations", json=payload)).status_code == 201
    resp = await async_client.post("/api/quotations", json=payload)
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"]["code"] == "QUOTE_NUMBER_EXISTS"
    assert body["error"]["details"] == {"quote_number": "Q-1"}


@pytest.mark.contract
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"customer_name": "   "},
        {"customer_name": "Bad item", "items": [{"total_with_tax": "lots"}]},
        {"customer_name": "Bad date", "quote_date": "07/03/2024"},
    ],
)
async def test_invalid_payload_rejected_without_consuming_serial(async_client, serial_allocator, payload):
    resp = await async_client.post("/api/quotations", json=payload)
    assert resp.status_code == 400, resp.text
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
    assert await serial_allocator.last_issued() == 0


@pytest.mark.contract
@pytest.mark.asyncio
async def test_get_by_id_and_by_number_orders_items(async_client, serial_allocator):  # noqa: ARG001
    created = (await async_client.post(
        "/api/quotations", json={"customer_name": "Ordered", "items": ITEMS})).json()

    by_id = await async_client.get(f"/api/quotations/{created['id']}")
    by_number = await async_client.get(f"/api/quotations/{created['quote_number']}")
    assert by_id.status_code == 200, by_id.text
    assert by_id.json() == by_number.json()

    detail = by_id.json()
    assert [item["category"] for item in detail["items"]] == ["الأفضل", "الجيد", "الأدنى"]
    assert detail["items"][0]["total_with_tax"] == pytest.approx(6382.5)
    assert detail["items"][1]["horsepower"] == "5"


@pytest.mark.contract
@pytest.mark.asyncio
async def test_get_unknown_quotation_is_404(async_client):
    resp = await async_client.get("/api/quotations/NOPE-1")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "QUOTATION_NOT_FOUND"


@pytest.mark.contract
@pytest.mark.asyncio
async def test_get_oversized_numeric_identifier_is_404(async_client):
    resp = await async_client.get("/api/quotations/" + "9" * 25)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "QUOTATION_NOT_FOUND"


@pytest.mark.contract
@pytest.mark.asyncio
async def test_list_is_newest_first_with_totals(async_client, serial_allocator):  # noqa: ARG001
    await async_client.post("/api/quotations", json={"customer_name": "Older", "items": ITEMS[:1]})
    await async_client.post("/api/quotations", json={"customer_name": "Newer"})

    resp = await async_client.get("/api/quotations")
    assert resp.status_code == 200
    rows = resp.json()
    assert [r["customer_name"] for r in rows] == ["Newer", "Older"]
    assert rows[1]["total_with_tax"] == pytest.approx(3829.5)
    assert set(rows[0]) == {
        "id", "quote_number", "quote_date", "customer_name",
        "location", "mobile", "total_with_tax", "created_at",
    }


@pytest.mark.contract
@pytest.mark.asyncio
async def test_serials_endpoint(async_client, serial_allocator):  # noqa: ARG001
    resp = await async_client.post("/api/serials")
    assert resp.status_code == 201
    assert resp.json() == {"serial": f"ORG{_today_key()}001"}


class _DownStore(SerialStore):
    name = "down"

    async def increment(self, date_key):
        raise StorageUnavailable("counter store offline", date_key)

    async def current(self, date_key):
        raise StorageUnavailable("counter store offline", date_key)


@pytest.mark.contract
@pytest.mark.asyncio
async def test_storage_unavailable_maps_to_503(async_client):
    app.dependency_overrides[get_serial_allocator] = lambda: SerialAllocator(
        _DownStore(), prefix="ORG", tz=RIYADH)
    try:
        serial = await async_client.post("/api/serials")
        quotation = await async_client.post("/api/quotations", json={"customer_name": "Blocked"})
        listing = await async_client.get("/api/quotations")
    finally:
        app.dependency_overrides.pop(get_serial_allocator, None)

    assert serial.status_code == 503
    assert serial.json()["error"]["code"] == "SERIAL_STORAGE_UNAVAILABLE"
    assert quotation.status_code == 503
    # nothing was saved without a number
    assert listing.json() == []


@pytest.mark.contract
@pytest.mark.asyncio
async def test_corrupt_counter_maps_to_500(async_client):
    store = InMemorySerialStore({_today_key(): "garbage"})
    app.dependency_overrides[get_serial_allocator] = lambda: SerialAllocator(store, prefix="ORG", tz=RIYADH)
    try:
        resp = await async_client.post("/api/serials")
    finally:
        app.dependency_overrides.pop(get_serial_allocator, None)

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "SERIAL_CORRUPT_STATE"
    assert body["error"]["details"] == {"date_key": _today_key()}
