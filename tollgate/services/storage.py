"""
Call Store
==========
Persistence for call records, quota snapshots and alerts.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tollgate.models.telemetry import AlertRecord, CallRecord, RateLimitSnapshot
from tollgate.schemas.telemetry import (
    AlertEvent,
    Call,
    CallStats,
    ModelStats,
    PurgeResult,
    Snapshot,
    StoredAlert,
    Usage,
    utcnow,
)

logger = structlog.get_logger()


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_epoch_ms(ts: int) -> datetime:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)


class CallStore:
    """
    Storage collaborator used by the gateway, alert monitor and dashboard.

    Every operation runs in its own session, so callers on the event
    loop need no extra synchronization.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert_snapshot(self, snapshot: Snapshot) -> None:
        """Persist a quota snapshot."""
        row = RateLimitSnapshot(
            ts=to_epoch_ms(snapshot.timestamp),
            model=snapshot.model,
            requests_remaining=snapshot.requests_remaining,
            tokens_remaining=snapshot.tokens_remaining,
            input_tokens_remaining=snapshot.input_tokens_remaining,
            output_tokens_remaining=snapshot.output_tokens_remaining,
            requests_reset=snapshot.requests_reset,
            tokens_reset=snapshot.tokens_reset,
            request_id=snapshot.request_id,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()

    async def get_latest_snapshot(self) -> Optional[Snapshot]:
        """Most recent snapshot, or None before the first quota headers arrive."""
        stmt = (
            select(RateLimitSnapshot)
            .order_by(RateLimitSnapshot.ts.desc(), RateLimitSnapshot.id.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()

        if row is None:
            return None
        return Snapshot(
            timestamp=from_epoch_ms(row.ts),
            model=row.model,
            requests_remaining=row.requests_remaining,
            tokens_remaining=row.tokens_remaining,
            input_tokens_remaining=row.input_tokens_remaining,
            output_tokens_remaining=row.output_tokens_remaining,
            requests_reset=row.requests_reset,
            tokens_reset=row.tokens_reset,
            request_id=row.request_id,
        )

    async def insert_call(self, call: Call) -> None:
        """Append a finalized call to the log."""
        row = CallRecord(
            ts=to_epoch_ms(call.started_at),
            request_id=call.request_id,
            model=call.model,
            input_tokens=call.usage.input_tokens,
            output_tokens=call.usage.output_tokens,
            cache_read=call.usage.cache_read_tokens,
            cache_creation=call.usage.cache_creation_tokens,
            cost_usd=call.cost_usd,
            latency_ms=call.latency_ms,
            stream=call.stream,
            stop_reason=call.usage.stop_reason,
            response_model=call.usage.model,
            routed_from=call.routed_from,
            error_code=call.error_code,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()

    async def recent_calls(
        self,
        limit: int = 100,
        since: Optional[datetime] = None,
        model: Optional[str] = None,
    ) -> list[Call]:
        """
        Newest calls first.

        since keeps calls started at or after it; model keeps calls whose
        model equals or starts with it, so a family name matches dated ids.
        """
        stmt = select(CallRecord)
        if since is not None:
            stmt = stmt.where(CallRecord.ts >= to_epoch_ms(since))
        if model:
            stmt = stmt.where(CallRecord.model.startswith(model, autoescape=True))
        stmt = stmt.order_by(CallRecord.ts.desc(), CallRecord.id.desc()).limit(limit)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            Call(
                started_at=from_epoch_ms(row.ts),
                request_id=row.request_id,
                model=row.model,
                routed_from=row.routed_from,
                routed_to=row.model if row.routed_from else None,
                usage=Usage(
                    input_tokens=row.input_tokens,
                    output_tokens=row.output_tokens,
                    cache_read_tokens=row.cache_read,
                    cache_creation_tokens=row.cache_creation,
                    stop_reason=row.stop_reason,
                    model=row.response_model,
                ),
                cost_usd=row.cost_usd,
                latency_ms=row.latency_ms or 0,
                stream=row.stream,
                error_code=row.error_code,
            )
            for row in rows
        ]

    async def aggregate(self, window_ms: int, now: Optional[datetime] = None) -> CallStats:
        """Totals, per-model breakdown and latency percentiles for a window."""
        cutoff = to_epoch_ms(now or utcnow()) - window_ms

        by_model_stmt = (
            select(
                CallRecord.model,
                func.count(CallRecord.id).label("calls"),
                func.sum(CallRecord.input_tokens).label("input_tokens"),
                func.sum(CallRecord.output_tokens).label("output_tokens"),
                func.sum(CallRecord.cost_usd).label("cost_usd"),
                func.count(CallRecord.error_code).label("errors"),
            )
            .where(CallRecord.ts >= cutoff)
            .group_by(CallRecord.model)
        )
        latency_stmt = (
            select(CallRecord.latency_ms)
            .where(CallRecord.ts >= cutoff, CallRecord.latency_ms.is_not(None))
            .order_by(CallRecord.latency_ms)
        )

        async with self.session_factory() as session:
            groups = (await session.execute(by_model_stmt)).all()
            latencies = list((await session.execute(latency_stmt)).scalars().all())

        stats = CallStats()
        errors = 0
        for row in groups:
            model_stats = ModelStats(
                calls=row.calls,
                cost_usd=float(row.cost_usd or 0),
                input_tokens=row.input_tokens or 0,
                output_tokens=row.output_tokens or 0,
            )
            stats.by_model[row.model] = model_stats
            stats.total_calls += model_stats.calls
            stats.total_input_tokens += model_stats.input_tokens
            stats.total_output_tokens += model_stats.output_tokens
            stats.total_cost_usd += model_stats.cost_usd
            errors += row.errors

        if latencies:
            stats.p50_latency_ms = latencies[int(len(latencies) * 0.5)]
            stats.p95_latency_ms = latencies[int(len(latencies) * 0.95)]
        if stats.total_calls:
            stats.error_rate = errors / stats.total_calls

        return stats

    async def insert_alert(self, event: AlertEvent) -> None:
        row = AlertRecord(
            ts=to_epoch_ms(event.timestamp),
            type=event.type,
            threshold=event.threshold,
            message=event.message,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()

    async def recent_alerts(self, limit: int = 50) -> list[StoredAlert]:
        """Alert history, newest first."""
        stmt = select(AlertRecord).order_by(AlertRecord.ts.desc(), AlertRecord.id.desc()).limit(limit)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            StoredAlert(
                id=row.id,
                timestamp=from_epoch_ms(row.ts),
                type=row.type,
                threshold=row.threshold,
                message=row.message,
            )
            for row in rows
        ]

    async def purge_old(self, retention_days: int, now: Optional[datetime] = None) -> PurgeResult:
        """Delete calls, snapshots and alerts older than the retention window."""
        cutoff = to_epoch_ms((now or utcnow()) - timedelta(days=retention_days))

        async with self.session_factory() as session:
            calls = await session.execute(delete(CallRecord).where(CallRecord.ts < cutoff))
            snapshots = await session.execute(
                delete(RateLimitSnapshot).where(RateLimitSnapshot.ts < cutoff)
            )
            alerts = await session.execute(delete(AlertRecord).where(AlertRecord.ts < cutoff))
            await session.commit()

        result = PurgeResult(
            calls_deleted=calls.rowcount or 0,
            snapshots_deleted=snapshots.rowcount or 0,
            alerts_deleted=alerts.rowcount or 0,
        )
        logger.info("Purged old records", retention_days=retention_days, **result.model_dump())
        return result
