"""
Alert Evaluator
===============
Quota threshold alerts with per-tier deduplication and recovery
detection.

evaluate_alerts() is a pure transition over an immutable AlertState.
AlertMonitor holds the live state for the process and dispatches the
resulting events to storage, the event stream and the notifier.
"""

import asyncio
import math
from collections.abc import Coroutine
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

import structlog

from tollgate import metrics
from tollgate.core.router import compute_used_percent
from tollgate.schemas.telemetry import AlertEvent, AlertPolicy, AlertState, Snapshot, utcnow
from tollgate.services.events import EventBroadcaster
from tollgate.services.notifier import Notifier
from tollgate.services.storage import CallStore

logger = structlog.get_logger()

TOKEN_WARNING = "token_warning"
TOKEN_CRITICAL = "token_critical"
RATE_LIMIT_HIT = "rate_limit_hit"
ROUTE_DOWNGRADE = "route_downgrade"
RESET = "reset"


class AlertEvaluation(NamedTuple):
    state: AlertState
    events: list[AlertEvent]


def seconds_until(reset_at: Optional[str], now: datetime) -> Optional[float]:
    """Seconds from now until an ISO-8601 reset timestamp; None if unparsable."""
    if not reset_at:
        return None
    try:
        reset = datetime.fromisoformat(reset_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    if reset.tzinfo is None:
        reset = reset.replace(tzinfo=timezone.utc)
    return (reset - now).total_seconds()


def minutes_until(reset_at: Optional[str], now: datetime) -> Optional[int]:
    """Whole minutes until the reset, rounded half up and floored at 0."""
    seconds = seconds_until(reset_at, now)
    if seconds is None:
        return None
    return max(0, math.floor(seconds / 60 + 0.5))


def evaluate_alerts(
    snapshot: Snapshot,
    state: AlertState,
    policy: AlertPolicy,
    now: Optional[datetime] = None,
) -> AlertEvaluation:
    """
    Evaluate one snapshot against the warning and critical tiers.

    Each tier fires at most once per excursion above its threshold.
    Dropping below the warning threshold after anything fired clears
    the whole state and yields a single reset event.
    """
    used_percent = compute_used_percent(snapshot, policy.known_limit)
    if used_percent is None:
        return AlertEvaluation(state, [])

    now = now or utcnow()
    remaining = snapshot.tokens_remaining
    fired = set(state.fired)
    events: list[AlertEvent] = []

    warning_key = f"warning-{policy.warning_percent}"
    if used_percent >= policy.warning_percent and warning_key not in fired:
        fired.add(warning_key)
        events.append(
            AlertEvent(
                type=TOKEN_WARNING,
                threshold=policy.warning_percent,
                used_percent=used_percent,
                remaining=remaining,
                minutes_until_reset=minutes_until(snapshot.tokens_reset, now),
                reset_at=snapshot.tokens_reset,
                message=(
                    f"{policy.warning_percent}% of token budget used "
                    f"({remaining:,} tokens remaining)"
                ),
                timestamp=now,
            )
        )

    critical_key = f"critical-{policy.critical_percent}"
    if used_percent >= policy.critical_percent and critical_key not in fired:
        fired.add(critical_key)
        events.append(
            AlertEvent(
                type=TOKEN_CRITICAL,
                threshold=policy.critical_percent,
                used_percent=used_percent,
                remaining=remaining,
                minutes_until_reset=minutes_until(snapshot.tokens_reset, now),
                reset_at=snapshot.tokens_reset,
                message=(
                    f"CRITICAL: {policy.critical_percent}% of token budget used, "
                    f"only {remaining:,} tokens remaining"
                ),
                timestamp=now,
            )
        )

    if used_percent < policy.warning_percent and state.fired:
        return AlertEvaluation(
            AlertState(),
            [
                AlertEvent(
                    type=RESET,
                    used_percent=used_percent,
                    remaining=remaining,
                    message="Token budget restored.",
                    timestamp=now,
                )
            ],
        )

    if not events:
        return AlertEvaluation(state, [])
    return AlertEvaluation(AlertState(fired=frozenset(fired)), events)


class AlertMonitor:
    """
    Process-wide alert state driven by incoming snapshots.

    Runs on the single event loop, so state transitions need no lock.
    Storage and notification failures are logged and never stop
    evaluation.
    """

    def __init__(
        self,
        policy: AlertPolicy,
        store: CallStore,
        broadcaster: EventBroadcaster,
        notifier: Notifier,
    ):
        self.policy = policy
        self.store = store
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.state = AlertState()
        self._tasks: set[asyncio.Task] = set()

    async def observe(self, snapshot: Snapshot) -> list[AlertEvent]:
        """Feed one snapshot through the evaluator and dispatch its events."""
        evaluation = evaluate_alerts(snapshot, self.state, self.policy)
        self.state = evaluation.state

        for event in evaluation.events:
            if event.type == RESET:
                logger.info(
                    "Token budget restored",
                    used_percent=event.used_percent,
                    remaining=event.remaining,
                )
                self.broadcaster.emit("reset", event)
            else:
                await self.raise_alert(event)

        return evaluation.events

    async def raise_alert(self, event: AlertEvent) -> None:
        """Record, broadcast and notify a single alert."""
        log = logger.error if event.type in (TOKEN_CRITICAL, RATE_LIMIT_HIT) else logger.warning
        log(
            event.message,
            alert=event.type,
            threshold=event.threshold,
            used_percent=event.used_percent,
            remaining=event.remaining,
            minutes_until_reset=event.minutes_until_reset,
        )
        metrics.ALERTS.labels(type=event.type).inc()

        try:
            await self.store.insert_alert(event)
        except Exception as e:
            logger.error("Failed to record alert", alert=event.type, error=str(e))

        self.broadcaster.emit("alert", event)
        self._spawn(self._notify(event))

    async def _notify(self, event: AlertEvent) -> None:
        try:
            await self.notifier.notify(event.type, event.message)
        except Exception as e:
            logger.warning("Alert notification failed", alert=event.type, error=str(e))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for outstanding notification tasks."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
