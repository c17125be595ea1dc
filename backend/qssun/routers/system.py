"""System router providing health, readiness and database probe endpoints."""
import time

from fastapi import APIRouter

from ..config.database import async_database_health_check, test_connection
from ..utils.api_shapes import success as _success

router = APIRouter()

_start_time = time.time()


@router.get("/health", tags=["System"])  # liveness
async def health():
    return _success({"ok": True})


@router.get("/readiness", tags=["System"])  # readiness: db connectivity
async def readiness():
    db_health = await async_database_health_check()
    return _success({"database": db_health, "uptime_s": int(time.time() - _start_time)})


@router.get("/db-test", tags=["System"])
async def db_test():
    """Ping the database through the pool; answers 200 with status ok/error."""
    return await test_connection()
