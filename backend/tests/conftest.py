"""Test configuration and fixtures.

Environment:
    TESTING=true        -> application engine points at SQLite (aiosqlite)
    FAST_TESTS=1        -> lifespan skips observability + DB connectivity check
    TEST_DATABASE_URL   -> override the SQLite file (defaults to the temp dir)

The schema is created from model metadata once, in pytest_configure, before any
event loop exists. Tests that touch the database request ``db_session`` (or a
client fixture built on it), which empties every table and seeds three users:

    id 1  admin    role=admin
    id 2  buyer    role=employee, has_purchase_management_permission
    id 3  worker   role=employee, no permission
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator
from zoneinfo import ZoneInfo

# Flag test mode early (before qssun.config.database builds the engine)
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("FAST_TESTS", "1")
os.environ.setdefault(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'qssun_test.db'}",
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from qssun.config.database import (  # noqa: E402
    AsyncSessionLocal,
    create_database_tables_async,
    drop_database_tables_async,
)
from qssun.main import app  # noqa: E402
from qssun.models.database import Base, User, UserRole  # noqa: E402
from qssun.services.serial_service import (  # noqa: E402
    SerialAllocator,
    SqlSerialStore,
    get_serial_allocator,
)

RIYADH = ZoneInfo("Asia/Riyadh")

SEED_USERS = [
    dict(id=1, username="admin", full_name="Administrator",
         role=UserRole.ADMIN.value, has_purchase_management_permission=False),
    dict(id=2, username="buyer", full_name="Purchasing Clerk",
         role=UserRole.EMPLOYEE.value, has_purchase_management_permission=True),
    dict(id=3, username="worker", full_name="Field Technician",
         role=UserRole.EMPLOYEE.value, has_purchase_management_permission=False),
]


async def _reset_schema():
    await drop_database_tables_async()
    await create_database_tables_async()


def pytest_configure(config):  # noqa: D401
    """Pytest hook: build the schema then register custom markers (single hook)."""
    asyncio.run(_reset_schema())
    _register_markers(config)


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Session over freshly emptied tables with the seed users in place."""
    async with AsyncSessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(table.delete())
        session.add_all([User(**row) for row in SEED_USERS])
        await session.commit()
        yield session


@pytest_asyncio.fixture
async def async_client(db_session) -> AsyncGenerator[AsyncClient, None]:  # noqa: ARG001
    """Async HTTP client over the ASGI app (no identity headers)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def admin_client(async_client: AsyncClient) -> AsyncGenerator[AsyncClient, None]:
    """Client identified as the seeded admin (x-user-id / x-user-role headers)."""
    async_client.headers.update({"x-user-id": "1", "x-user-role": "admin"})
    yield async_client


@pytest.fixture
def serial_allocator():
    """Database-backed allocator with a fixed ``ORG`` prefix wired into the app."""
    allocator = SerialAllocator(SqlSerialStore(AsyncSessionLocal), prefix="ORG", tz=RIYADH)
    app.dependency_overrides[get_serial_allocator] = lambda: allocator
    yield allocator
    app.dependency_overrides.pop(get_serial_allocator, None)


# Test markers for categorizing tests

def _register_markers(config):  # noqa: D401
    """Internal helper to register custom markers (invoked from hook)."""
    markers = [
        ("contract", "mark test as a contract test"),
        ("integration", "mark test as an integration test"),
        ("unit", "mark test as a unit test"),
        ("slow", "mark test as slow running"),
        ("smoke", "mark test as a smoke test"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")
