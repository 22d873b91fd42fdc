"""
Dashboard Schemas
=================
Response models for the dashboard API.
"""

from datetime import datetime

from pydantic import BaseModel

from tollgate.schemas.telemetry import AlertPolicy, Call, CallStats, RoutingPolicy, StoredAlert


class QuotaStatus(BaseModel):
    """Remaining quota for one dimension (requests or tokens)."""

    remaining: int | None = None
    limit: int
    used_percent: int | None = None
    reset: str | None = None
    input_remaining: int | None = None
    output_remaining: int | None = None


class AlertStatus(BaseModel):
    routing_enabled: bool
    routing_active: bool
    fired: list[str]


class StatusResponse(BaseModel):
    """Current quota state from the latest snapshot."""

    updated_at: datetime | None = None
    seconds_until_reset: int | None = None
    snapshot_age_ms: int | None = None
    requests: QuotaStatus
    tokens: QuotaStatus
    alerts: AlertStatus
    message: str | None = None


class StatsResponse(CallStats):
    """Aggregated stats for a named window."""

    window: str


class CallsResponse(BaseModel):
    calls: list[Call]
    count: int


class AlertsResponse(BaseModel):
    alerts: list[StoredAlert]
    count: int


class Listener(BaseModel):
    host: str
    port: int


class PricedModel(BaseModel):
    model: str
    input_rate: float
    output_rate: float


class ConfigResponse(BaseModel):
    """Effective configuration of the running proxy. Read-only."""

    proxy: Listener
    dashboard: Listener
    upstream_url: str
    routing: RoutingPolicy
    alerts: AlertPolicy
    pricing: list[PricedModel]
