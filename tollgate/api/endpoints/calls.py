"""
Call Log Endpoints
==================
Recent proxied calls, newest first.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from tollgate.api.deps import get_store
from tollgate.schemas.dashboard import CallsResponse
from tollgate.services.storage import CallStore

router = APIRouter()


@router.get("/calls", response_model=CallsResponse, summary="List recent calls")
async def list_calls(
    store: Annotated[CallStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    since: Annotated[datetime | None, Query()] = None,
    model: Annotated[str | None, Query(description="Exact model or model prefix")] = None,
) -> CallsResponse:
    calls = await store.recent_calls(limit=limit, since=since, model=model)
    return CallsResponse(calls=calls, count=len(calls))
