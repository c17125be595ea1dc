"""File-backed serial store: persistence, locking and failure modes."""
import asyncio
import fcntl
import os
from datetime import date
from zoneinfo import ZoneInfo

import pytest

from qssun.services.serial_service import FileSerialStore, SerialAllocator
from qssun.utils.errors import CorruptState, StorageUnavailable

RIYADH = ZoneInfo("Asia/Riyadh")
MARCH_7 = date(2024, 3, 7)
KEY = "20240307"


def _allocator(store):
    return SerialAllocator(store, prefix="ORG", tz=RIYADH)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_counter_survives_a_restart(tmp_path):
    first = _allocator(FileSerialStore(tmp_path))
    assert await first.allocate(MARCH_7) == "ORG20240307001"
    assert await first.allocate(MARCH_7) == "ORG20240307002"
    assert (tmp_path / f"{KEY}.txt").read_text(encoding="utf-8") == "2"

    restarted = _allocator(FileSerialStore(tmp_path))
    assert await restarted.last_issued(MARCH_7) == 2
    assert await restarted.allocate(MARCH_7) == "ORG20240307003"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_one_file_per_day_and_no_temp_files_left(tmp_path):
    allocator = _allocator(FileSerialStore(tmp_path))
    await allocator.allocate(MARCH_7)
    assert await allocator.allocate(date(2024, 3, 8)) == "ORG20240308001"

    names = sorted(p.name for p in tmp_path.iterdir())
    assert names == ["20240307.lock", "20240307.txt", "20240308.lock", "20240308.txt"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_directory_is_created_on_first_use(tmp_path):
    store = FileSerialStore(tmp_path / "nested" / "serials")
    assert await store.increment(KEY) == 1
    assert store.path_for(KEY).exists()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["abc", "", "-2", "1.0"])
async def test_corrupt_file_is_refused_and_left_untouched(tmp_path, content):
    path = tmp_path / f"{KEY}.txt"
    path.write_text(content, encoding="utf-8")
    allocator = _allocator(FileSerialStore(tmp_path))

    with pytest.raises(CorruptState):
        await allocator.allocate(MARCH_7)

    assert path.read_text(encoding="utf-8") == content


@pytest.mark.unit
@pytest.mark.asyncio
async def test_trailing_newline_is_tolerated(tmp_path):
    (tmp_path / f"{KEY}.txt").write_text("41\n", encoding="utf-8")
    allocator = _allocator(FileSerialStore(tmp_path))
    assert await allocator.allocate(MARCH_7) == "ORG20240307042"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_allocations_are_unique(tmp_path):
    allocator = _allocator(FileSerialStore(tmp_path))
    results = await asyncio.gather(*(allocator.allocate(MARCH_7) for _ in range(30)))
    assert sorted(int(s[-3:]) for s in results) == list(range(1, 31))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_two_stores_sharing_a_directory_do_not_collide(tmp_path):
    # separate instances stand in for separate worker processes
    a = _allocator(FileSerialStore(tmp_path))
    b = _allocator(FileSerialStore(tmp_path))
    calls = [a.allocate(MARCH_7) for _ in range(20)] + [b.allocate(MARCH_7) for _ in range(20)]
    results = await asyncio.gather(*calls)
    assert len(set(results)) == 40
    assert sorted(int(s[-3:]) for s in results) == list(range(1, 41))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unusable_directory_reports_storage_unavailable(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    allocator = _allocator(FileSerialStore(blocker / "serials"))

    with pytest.raises(StorageUnavailable) as exc_info:
        await allocator.allocate(MARCH_7)
    assert exc_info.value.status_code == 503


@pytest.mark.unit
@pytest.mark.asyncio
async def test_lock_held_elsewhere_times_out(tmp_path):
    fd = os.open(tmp_path / f"{KEY}.lock", os.O_RDWR | os.O_CREAT, 0o644)
    fcntl.flock(fd, fcntl.LOCK_EX)
    try:
        store = FileSerialStore(tmp_path, timeout=0.2)
        with pytest.raises(StorageUnavailable):
            await store.increment(KEY)
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)

    assert not (tmp_path / f"{KEY}.txt").exists()
    assert await FileSerialStore(tmp_path).increment(KEY) == 1
