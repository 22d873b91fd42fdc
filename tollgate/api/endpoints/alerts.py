"""
Alert History Endpoints
=======================
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from tollgate.api.deps import get_store
from tollgate.schemas.dashboard import AlertsResponse
from tollgate.services.storage import CallStore

router = APIRouter()


@router.get("/alerts", response_model=AlertsResponse, summary="List recent alerts")
async def list_alerts(
    store: Annotated[CallStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> AlertsResponse:
    alerts = await store.recent_alerts(limit=limit)
    return AlertsResponse(alerts=alerts, count=len(alerts))
