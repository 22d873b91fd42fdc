"""
Telemetry Schemas
=================
Pydantic models for quota snapshots, token usage, call records,
routing decisions and alerts.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Snapshot(BaseModel):
    """
    Quota state at a point in time, derived from upstream rate-limit headers.
    Remaining counts are non-negative or None, never a sentinel.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    model: str | None = None
    requests_remaining: int | None = Field(default=None, ge=0)
    tokens_remaining: int | None = Field(default=None, ge=0)
    input_tokens_remaining: int | None = Field(default=None, ge=0)
    output_tokens_remaining: int | None = Field(default=None, ge=0)
    requests_reset: str | None = None
    tokens_reset: str | None = None
    request_id: str | None = None


class Usage(BaseModel):
    """Token accounting for one completed call."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cache_creation_tokens: int = Field(default=0, ge=0)
    stop_reason: str | None = None
    model: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Call(BaseModel):
    """
    Record of one proxied request/response exchange.
    Built once at finalization and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    started_at: datetime
    request_id: str | None = None
    model: str
    routed_from: str | None = None
    routed_to: str | None = None
    usage: Usage = Field(default_factory=Usage)
    cost_usd: float = Field(default=0.0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    stream: bool = False
    error_code: str | None = None


class RoutingPolicy(BaseModel):
    """Routing configuration evaluated per request."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    threshold: int = Field(default=80, ge=1, le=100)
    known_limit: int = Field(default=400_000, gt=0)
    ladder: dict[str, str] | None = None


class RouteCheck(BaseModel):
    """Outcome of the threshold check."""

    model_config = ConfigDict(frozen=True)

    route: bool
    used_percent: int | None = None


class RoutingDecision(BaseModel):
    """
    Router output: the request body to forward plus routing metadata.
    routed_from / routed_to are both None unless a reroute happened.
    """

    model_config = ConfigDict(frozen=True)

    body: Any = None
    routed_from: str | None = None
    routed_to: str | None = None
    used_percent: int | None = None

    @property
    def rerouted(self) -> bool:
        return self.routed_from is not None and self.routed_to is not None


class AlertPolicy(BaseModel):
    """Alert tier thresholds, as percent of the known quota limit."""

    model_config = ConfigDict(frozen=True)

    warning_percent: int = Field(default=80, ge=1, le=100)
    critical_percent: int = Field(default=95, ge=1, le=100)
    known_limit: int = Field(default=400_000, gt=0)


class AlertState(BaseModel):
    """Threshold keys fired since the last recovery."""

    model_config = ConfigDict(frozen=True)

    fired: frozenset[str] = frozenset()


class AlertEvent(BaseModel):
    """Alert or recovery event emitted to the dashboard and notifier."""

    model_config = ConfigDict(frozen=True)

    type: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    threshold: int | None = None
    used_percent: int | None = None
    remaining: int | None = None
    minutes_until_reset: int | None = None
    reset_at: str | None = None
    from_model: str | None = None
    to_model: str | None = None


class ModelStats(BaseModel):
    """Per-model breakdown inside a stats window."""

    calls: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0


class CallStats(BaseModel):
    """Aggregated call statistics for a time window."""

    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    by_model: dict[str, ModelStats] = Field(default_factory=dict)
    p50_latency_ms: int | None = None
    p95_latency_ms: int | None = None
    error_rate: float = 0.0


class PurgeResult(BaseModel):
    """Rows removed by a retention purge."""

    calls_deleted: int = 0
    snapshots_deleted: int = 0
    alerts_deleted: int = 0


class StoredAlert(BaseModel):
    """One row of alert history."""

    id: int
    timestamp: datetime
    type: str
    threshold: int | None = None
    message: str | None = None
