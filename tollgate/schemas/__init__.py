"""
Pydantic Schemas
================
Telemetry records and API response models.
"""

from tollgate.schemas.dashboard import (
    AlertsResponse,
    CallsResponse,
    ConfigResponse,
    StatsResponse,
    StatusResponse,
)
from tollgate.schemas.telemetry import (
    AlertEvent,
    AlertPolicy,
    AlertState,
    Call,
    CallStats,
    ModelStats,
    PurgeResult,
    RouteCheck,
    RoutingDecision,
    RoutingPolicy,
    Snapshot,
    StoredAlert,
    Usage,
)

__all__ = [
    "Snapshot",
    "Usage",
    "Call",
    "RoutingPolicy",
    "RouteCheck",
    "RoutingDecision",
    "AlertPolicy",
    "AlertState",
    "AlertEvent",
    "StoredAlert",
    "CallStats",
    "ModelStats",
    "PurgeResult",
    "StatusResponse",
    "StatsResponse",
    "CallsResponse",
    "AlertsResponse",
    "ConfigResponse",
]
