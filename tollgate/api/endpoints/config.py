"""
Configuration Endpoint
======================
Effective routing, alert, listener and pricing configuration.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from tollgate.api.deps import get_app_settings, get_pricing
from tollgate.config import Settings
from tollgate.core.pricing import PricingEngine
from tollgate.schemas.dashboard import ConfigResponse, Listener

router = APIRouter()


@router.get("/config", response_model=ConfigResponse, summary="Show effective configuration")
async def get_config(
    settings: Annotated[Settings, Depends(get_app_settings)],
    pricing: Annotated[PricingEngine, Depends(get_pricing)],
) -> ConfigResponse:
    return ConfigResponse(
        proxy=Listener(host=settings.proxy_host, port=settings.proxy_port),
        dashboard=Listener(host=settings.dashboard_host, port=settings.dashboard_port),
        upstream_url=settings.upstream_url,
        routing=settings.routing_policy,
        alerts=settings.alert_policy,
        pricing=pricing.list_models(),
    )
