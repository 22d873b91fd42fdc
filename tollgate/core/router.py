"""
Adaptive Router
===============
Pure routing decisions: when the quota is running low, downgrade the
requested model one step along a ladder of cheaper models.

Nothing here mutates its inputs; callers get fresh values back, so
concurrent requests sharing one snapshot can be routed safely.
"""

from typing import Any, Optional

from tollgate.schemas.telemetry import RouteCheck, RoutingDecision, RoutingPolicy, Snapshot

ROUTED_HEADER = "x-tollgate-routed"
ORIGINAL_MODEL_HEADER = "x-tollgate-original-model"
ROUTED_MODEL_HEADER = "x-tollgate-routed-model"
REASON_HEADER = "x-tollgate-reason"

# Expensive -> cheaper. One hop per decision.
DEFAULT_LADDER: dict[str, str] = {
    "claude-opus-4-6": "claude-sonnet-4-6",
    "claude-sonnet-4-6": "claude-haiku-4-6",
    "claude-sonnet-4-5": "claude-haiku-4-6",
    "claude-opus-4": "claude-sonnet-4-6",
    "claude-sonnet-4": "claude-haiku-4-6",
}


def percent_used(remaining: Optional[int], known_limit: int) -> Optional[int]:
    """round(((known_limit - remaining) / known_limit) * 100), halves rounded up."""
    if remaining is None or known_limit <= 0:
        return None
    used = known_limit - remaining
    return (200 * used + known_limit) // (2 * known_limit)


def compute_used_percent(snapshot: Optional[Snapshot], known_limit: int) -> Optional[int]:
    """
    Percent of the known token limit already consumed.

    The upstream only reports remaining counts, so the limit is a
    configured approximation. None when there is nothing to compare.
    """
    if snapshot is None:
        return None
    return percent_used(snapshot.tokens_remaining, known_limit)


def should_route(snapshot: Optional[Snapshot], policy: RoutingPolicy) -> RouteCheck:
    """Check whether the quota is past the routing threshold (inclusive)."""
    if not policy.enabled:
        return RouteCheck(route=False)

    used_percent = compute_used_percent(snapshot, policy.known_limit)
    if used_percent is None:
        return RouteCheck(route=False)

    return RouteCheck(route=used_percent >= policy.threshold, used_percent=used_percent)


def find_downgrade(model: Optional[str], ladder: Optional[dict[str, str]]) -> Optional[str]:
    """
    Find the next-cheaper model for model.

    Exact ladder key first, then the longest ladder key the model starts
    with, so dated ids like claude-opus-4-6-20250215 match their family.
    """
    if not model or not ladder:
        return None

    if model in ladder:
        return ladder[model]

    prefixed = [key for key in ladder if model.startswith(key)]
    if prefixed:
        return ladder[max(prefixed, key=len)]

    return None


def route(
    body: Any,
    snapshot: Optional[Snapshot],
    policy: RoutingPolicy,
) -> RoutingDecision:
    """
    Decide whether to rewrite the model of a parsed request body.

    Returns the original body object when nothing changes, otherwise a
    shallow copy with only the model replaced.
    """
    check = should_route(snapshot, policy)
    unchanged = RoutingDecision(body=body, used_percent=check.used_percent)

    if not check.route or not isinstance(body, dict):
        return unchanged

    requested = body.get("model")
    if not isinstance(requested, str) or not requested:
        return unchanged

    ladder = policy.ladder if policy.ladder is not None else DEFAULT_LADDER
    target = find_downgrade(requested, ladder)
    if not target or target == requested:
        return unchanged

    return RoutingDecision(
        body={**body, "model": target},
        routed_from=requested,
        routed_to=target,
        used_percent=check.used_percent,
    )


def build_routing_headers(original_model: str, routed_model: str, used_percent: Optional[int]) -> dict[str, str]:
    """Response headers announcing a reroute to the client."""
    return {
        ROUTED_HEADER: "true",
        ORIGINAL_MODEL_HEADER: original_model,
        ROUTED_MODEL_HEADER: routed_model,
        REASON_HEADER: f"token-threshold-{used_percent}",
    }


def model_tier(model: Optional[str]) -> str:
    """Short family name for log lines."""
    if not model:
        return "unknown"
    lower = model.lower()
    for tier in ("opus", "sonnet", "haiku"):
        if tier in lower:
            return tier
    parts = model.split("-")
    return parts[1] if len(parts) > 1 and parts[1] else model
