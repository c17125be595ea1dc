import asyncio
import re
from typing import List

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
@pytest.mark.integration
async def test_serial_concurrent_allocation_unique(async_client: AsyncClient, serial_allocator):
    """Concurrent POST /api/serials and POST /api/quotations never share a serial.

    Strategy:
      - Spawn N concurrent requests (half bare serials, half quotations) after a barrier.
      - Assert: all unique, one date segment, counters 1..N with no gaps.
    """
    N = 20
    start_barrier = asyncio.Event()
    pattern = re.compile(r"ORG(\d{8})(\d{3,})")

    async def allocate_one(i: int):
        await start_barrier.wait()
        if i % 2:
            resp = await async_client.post("/api/serials")
            assert resp.status_code == 201, resp.text
            serial = resp.json()["serial"]
        else:
            resp = await async_client.post("/api/quotations", json={"customer_name": f"Race {i}"})
            assert resp.status_code == 201, resp.text
            serial = resp.json()["quote_number"]
        m = pattern.fullmatch(serial)
        assert m, serial
        return m.group(1), int(m.group(2)), serial

    tasks: List[asyncio.Task] = [asyncio.create_task(allocate_one(i)) for i in range(N)]
    await asyncio.sleep(0)
    start_barrier.set()
    results = await asyncio.gather(*tasks)

    assert len({r[0] for r in results}) == 1
    serials = [r[2] for r in results]
    assert len(serials) == len(set(serials)), "Duplicate serials detected"
    assert sorted(r[1] for r in results) == list(range(1, N + 1))
    assert await serial_allocator.last_issued() == N
