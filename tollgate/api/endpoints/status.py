"""
Status Endpoints
================
Current quota state derived from the latest snapshot.
"""

import math
from typing import Annotated

from fastapi import APIRouter, Depends

from tollgate.api.deps import get_alert_monitor, get_app_settings, get_store
from tollgate.config import Settings
from tollgate.core.alerts import AlertMonitor, seconds_until
from tollgate.core.router import percent_used
from tollgate.schemas.dashboard import AlertStatus, QuotaStatus, StatusResponse
from tollgate.schemas.telemetry import utcnow
from tollgate.services.storage import CallStore

router = APIRouter()


@router.get("/status", response_model=StatusResponse)
async def get_status(
    store: Annotated[CallStore, Depends(get_store)],
    alerts: Annotated[AlertMonitor, Depends(get_alert_monitor)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> StatusResponse:
    """
    Latest quota snapshot with used percentages.

    Limits are configured approximations; the upstream only reports
    remaining counts.
    """
    snapshot = await store.get_latest_snapshot()
    token_limit = settings.routing_known_limit
    request_limit = settings.known_request_limit
    fired = sorted(alerts.state.fired)

    if snapshot is None:
        return StatusResponse(
            requests=QuotaStatus(limit=request_limit),
            tokens=QuotaStatus(limit=token_limit),
            alerts=AlertStatus(
                routing_enabled=settings.routing_enabled,
                routing_active=False,
                fired=fired,
            ),
            message="Waiting for the first API call through the proxy",
        )

    now = utcnow()
    seconds = seconds_until(snapshot.tokens_reset, now)
    token_used = percent_used(snapshot.tokens_remaining, token_limit)
    routing_active = (
        settings.routing_enabled
        and token_used is not None
        and token_used >= settings.routing_threshold
    )

    return StatusResponse(
        updated_at=snapshot.timestamp,
        seconds_until_reset=None if seconds is None else max(0, math.floor(seconds + 0.5)),
        snapshot_age_ms=max(0, int((now - snapshot.timestamp).total_seconds() * 1000)),
        requests=QuotaStatus(
            remaining=snapshot.requests_remaining,
            limit=request_limit,
            used_percent=percent_used(snapshot.requests_remaining, request_limit),
            reset=snapshot.requests_reset,
        ),
        tokens=QuotaStatus(
            remaining=snapshot.tokens_remaining,
            limit=token_limit,
            used_percent=token_used,
            reset=snapshot.tokens_reset,
            input_remaining=snapshot.input_tokens_remaining,
            output_remaining=snapshot.output_tokens_remaining,
        ),
        alerts=AlertStatus(
            routing_enabled=settings.routing_enabled,
            routing_active=routing_active,
            fired=fired,
        ),
    )
