"""
Stats Endpoints
===============
Aggregated call statistics over fixed windows.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from tollgate.api.deps import get_store
from tollgate.schemas.dashboard import StatsResponse
from tollgate.services.storage import CallStore

router = APIRouter()
logger = structlog.get_logger()

WINDOWS = {
    "1h": 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
    "7d": 7 * 24 * 60 * 60 * 1000,
}


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Get call statistics",
    description="Totals, per-model breakdown and latency percentiles for a window",
)
async def get_stats(
    store: Annotated[CallStore, Depends(get_store)],
    window: Annotated[str, Query()] = "24h",
) -> StatsResponse:
    if window not in WINDOWS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_window",
                "message": f"Window must be one of: {', '.join(WINDOWS)}",
            },
        )

    try:
        stats = await store.aggregate(WINDOWS[window])
    except Exception as e:
        logger.error("Failed to aggregate stats", window=window, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to aggregate stats",
        ) from e

    return StatsResponse(
        window=window,
        total_calls=stats.total_calls,
        total_input_tokens=stats.total_input_tokens,
        total_output_tokens=stats.total_output_tokens,
        total_cost_usd=round(stats.total_cost_usd, 5),
        by_model=stats.by_model,
        p50_latency_ms=stats.p50_latency_ms,
        p95_latency_ms=stats.p95_latency_ms,
        error_rate=round(stats.error_rate, 4),
    )
