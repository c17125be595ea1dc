"""Prometheus metrics exposition router.

Serves the default prometheus_client registry: request counters and latency
from the middleware in ``qssun.main`` plus the serial allocation and
notification dispatch counters.
"""
from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:  # noqa: D401
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
