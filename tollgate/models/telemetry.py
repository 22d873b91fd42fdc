"""
Telemetry Models
================
Call log, rate-limit snapshots and alert history.
Event times are stored as epoch milliseconds.
"""

from sqlalchemy import BigInteger, Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tollgate.models.base import Base, TimestampMixin


class CallRecord(Base, TimestampMixin):
    """
    One proxied call.
    Append-only: rows are written once at finalization.
    """

    __tablename__ = "calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cache_read: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cache_creation: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    latency_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stream: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stop_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    response_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    routed_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        Index("idx_calls_ts", "ts"),
        Index("idx_calls_model", "model"),
    )


class RateLimitSnapshot(Base, TimestampMixin):
    """Quota state reported by the upstream on one response."""

    __tablename__ = "rate_limit_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requests_remaining: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tokens_remaining: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    input_tokens_remaining: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    output_tokens_remaining: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    requests_reset: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tokens_reset: Mapped[str | None] = mapped_column(String(64), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (Index("idx_snapshots_ts", "ts"),)


class AlertRecord(Base, TimestampMixin):
    """Alert history."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
