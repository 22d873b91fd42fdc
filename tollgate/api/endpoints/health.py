"""
Health Endpoints
================
Liveness of the dashboard and readiness of the call store.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tollgate import __version__
from tollgate.api.deps import get_app_settings, get_broadcaster, get_store
from tollgate.config import Settings
from tollgate.services.events import EventBroadcaster
from tollgate.services.storage import CallStore

router = APIRouter()
logger = structlog.get_logger()


class HealthResponse(BaseModel):
    status: str
    version: str
    upstream: str
    routing_enabled: bool


class ReadinessResponse(BaseModel):
    status: str
    database: str
    has_snapshot: bool
    event_subscribers: int


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> HealthResponse:
    """The dashboard process is up; says nothing about the database."""
    return HealthResponse(
        status="ok",
        version=__version__,
        upstream=settings.upstream_url,
        routing_enabled=settings.routing_enabled,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    store: Annotated[CallStore, Depends(get_store)],
    broadcaster: Annotated[EventBroadcaster, Depends(get_broadcaster)],
) -> ReadinessResponse:
    """Call store reachable; degraded (still 200) when it is not."""
    try:
        latest = await store.get_latest_snapshot()
    except Exception as e:
        logger.warning("Readiness check failed", error=str(e))
        return ReadinessResponse(
            status="degraded",
            database="disconnected",
            has_snapshot=False,
            event_subscribers=broadcaster.subscriber_count,
        )

    return ReadinessResponse(
        status="ok",
        database="connected",
        has_snapshot=latest is not None,
        event_subscribers=broadcaster.subscriber_count,
    )
