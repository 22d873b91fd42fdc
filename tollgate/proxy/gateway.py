"""
Interception Gateway
====================
Forwards client requests to the upstream API, taps responses for quota
and usage telemetry, applies adaptive routing and records every call.

Per request:
    receive body -> route -> forward -> response headers (snapshot,
    alerts) -> relay body through a buffered or streaming tap -> finalize
"""

import asyncio
import gzip
import json
import time
import zlib
from collections.abc import AsyncGenerator, Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx
import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from tollgate import metrics
from tollgate.core.alerts import RATE_LIMIT_HIT, ROUTE_DOWNGRADE, AlertMonitor
from tollgate.core.extractor import StreamTap, extract_snapshot, extract_usage, is_streaming_response
from tollgate.core.pricing import PricingEngine, format_cost
from tollgate.core.router import build_routing_headers, model_tier, route
from tollgate.schemas.telemetry import (
    AlertEvent,
    Call,
    RoutingDecision,
    RoutingPolicy,
    Snapshot,
    Usage,
    utcnow,
)
from tollgate.services.events import EventBroadcaster
from tollgate.services.storage import CallStore

logger = structlog.get_logger()

UNKNOWN_MODEL = "unknown"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Recomputed or supplied by the outbound connection.
REQUEST_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}

# Defaults httpx adds to every request unless the client sent its own.
HTTPX_DEFAULT_HEADERS = ("accept", "accept-encoding", "connection", "user-agent")

IDENTITY_ENCODINGS = frozenset({"", "identity"})
DECODABLE_ENCODINGS = frozenset({"gzip", "deflate"})


def filter_headers(
    headers: Iterable[tuple[str, str]],
    skip: frozenset[str] = HOP_BY_HOP_HEADERS,
) -> list[tuple[str, str]]:
    """Drop hop-by-hop (and other skipped) headers, keeping order and duplicates."""
    return [(name, value) for name, value in headers if name.lower() not in skip]


def parse_request_json(raw: bytes) -> Any:
    """Parsed JSON request body, or None for empty or non-JSON bodies."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def inspectable(content_encoding: Optional[str], stream: bool = False) -> bool:
    """
    Whether usage can be read from a body with this content coding.

    Event streams are parsed as they pass, so only identity works there.
    Anything else logs a warning: the call will be recorded with zero usage.
    """
    encoding = (content_encoding or "").strip().lower()
    if encoding in IDENTITY_ENCODINGS:
        return True
    if not stream and encoding in DECODABLE_ENCODINGS:
        return True
    logger.warning(
        "Response body is not inspectable, usage will read as zero",
        content_encoding=encoding,
        stream=stream,
    )
    return False


def decode_body(raw: bytes, content_encoding: Optional[str]) -> bytes:
    """Undo gzip/deflate content coding for inspection; relayed bytes stay raw."""
    if not inspectable(content_encoding):
        return b""
    encoding = (content_encoding or "").strip().lower()
    try:
        if encoding == "gzip":
            return gzip.decompress(raw)
        if encoding == "deflate":
            return zlib.decompress(raw)
    except (OSError, zlib.error, EOFError):
        return b""
    return raw


@dataclass
class CallContext:
    """
    In-flight state of one proxied call.

    Filled in as the exchange progresses and turned into an immutable
    Call exactly once by finalize().
    """

    started_at: datetime
    started: float
    requested_model: str
    model: str
    routed_from: Optional[str] = None
    routed_to: Optional[str] = None
    used_percent: Optional[int] = None
    request_id: Optional[str] = None
    stream: bool = False
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    routing_headers: dict[str, str] = field(default_factory=dict)
    _call: Optional[Call] = field(default=None, init=False, repr=False)

    @classmethod
    def start(cls, requested_model: Optional[str]) -> "CallContext":
        model = requested_model or UNKNOWN_MODEL
        return cls(
            started_at=utcnow(),
            started=time.monotonic(),
            requested_model=model,
            model=model,
        )

    @property
    def finalized(self) -> bool:
        return self._call is not None

    def apply_routing(self, decision: RoutingDecision) -> None:
        self.routed_from = decision.routed_from
        self.routed_to = decision.routed_to
        self.used_percent = decision.used_percent
        self.model = decision.routed_to
        self.routing_headers = build_routing_headers(
            decision.routed_from, decision.routed_to, decision.used_percent
        )

    def observe_response(self, status_code: int, snapshot: Snapshot, stream: bool) -> None:
        self.status_code = status_code
        self.request_id = snapshot.request_id
        self.stream = stream
        if status_code >= 400:
            self.error_code = str(status_code)

    def elapsed_ms(self) -> int:
        return max(0, int((time.monotonic() - self.started) * 1000))

    def finalize(self, usage: Usage, cost_usd: float) -> Call:
        if self._call is not None:
            raise RuntimeError("call already finalized")
        self._call = Call(
            started_at=self.started_at,
            request_id=self.request_id,
            model=self.model,
            routed_from=self.routed_from,
            routed_to=self.routed_to,
            usage=usage,
            cost_usd=cost_usd,
            latency_ms=self.elapsed_ms(),
            stream=self.stream,
            error_code=self.error_code,
        )
        return self._call


class RelayResponse(StreamingResponse):
    """
    Streaming response that settles its upstream exchange however the
    client side ends.

    Starlette only starts the body iterator once the response head is
    sent, and an unstarted generator never runs its cleanup. The relay is
    closed here instead, then release() handles a relay that never ran.
    """

    def __init__(
        self,
        relay: AsyncGenerator[bytes, None],
        status_code: int,
        release: Callable[[], None],
    ):
        super().__init__(relay, status_code=status_code)
        self.relay = relay
        self.release = release

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.relay.aclose()
            self.release()


class Gateway:
    """
    Request orchestrator for the proxy listener.

    All work happens on one event loop. Snapshot handling for a response
    completes before its headers are sent to the client; the call record
    is written only after the upstream body has been fully relayed.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: CallStore,
        broadcaster: EventBroadcaster,
        alerts: AlertMonitor,
        pricing: PricingEngine,
        routing_policy: RoutingPolicy,
    ):
        self.client = client
        self.store = store
        self.broadcaster = broadcaster
        self.alerts = alerts
        self.pricing = pricing
        self.routing_policy = routing_policy
        self._tasks: set[asyncio.Task] = set()

    async def handle(self, request: Request) -> Response:
        """Proxy one client request."""
        raw_body = await request.body()
        parsed = parse_request_json(raw_body)

        requested_model = parsed.get("model") if isinstance(parsed, dict) else None
        ctx = CallContext.start(requested_model if isinstance(requested_model, str) else None)

        body = raw_body
        if isinstance(parsed, dict) and self.routing_policy.enabled:
            decision = await self._route(parsed, ctx)
            if decision.rerouted:
                body = json.dumps(decision.body).encode("utf-8")

        upstream_request = self._build_upstream_request(request, body)
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            return self._gateway_error(504, e, ctx)
        except httpx.RequestError as e:
            return self._gateway_error(502, e, ctx)

        return await self._respond(upstream, ctx)

    async def _route(self, parsed: dict[str, Any], ctx: CallContext) -> RoutingDecision:
        try:
            latest = await self.store.get_latest_snapshot()
        except Exception as e:
            logger.error("Failed to read latest snapshot, skipping routing", error=str(e))
            return RoutingDecision(body=parsed)

        decision = route(parsed, latest, self.routing_policy)
        if not decision.rerouted:
            return decision

        ctx.apply_routing(decision)
        metrics.REROUTES.labels(from_model=decision.routed_from, to_model=decision.routed_to).inc()
        logger.warning(
            f"Rerouted {model_tier(decision.routed_from)} -> {model_tier(decision.routed_to)}",
            from_model=decision.routed_from,
            to_model=decision.routed_to,
            used_percent=decision.used_percent,
        )
        self.broadcaster.emit(
            "alert",
            AlertEvent(
                type=ROUTE_DOWNGRADE,
                from_model=decision.routed_from,
                to_model=decision.routed_to,
                used_percent=decision.used_percent,
                message=(
                    f"Rerouted {decision.routed_from} -> {decision.routed_to} "
                    f"({decision.used_percent}% used)"
                ),
            ),
        )
        return decision

    def _build_upstream_request(self, request: Request, body: bytes) -> httpx.Request:
        forwarded = filter_headers(
            ((name.decode("latin-1"), value.decode("latin-1")) for name, value in request.headers.raw),
            REQUEST_SKIP_HEADERS,
        )
        forwarded.append(("content-length", str(len(body))))

        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"

        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=forwarded,
            content=body,
        )

        sent = {name.lower() for name, _ in forwarded}
        for name in HTTPX_DEFAULT_HEADERS:
            if name not in sent and name in upstream_request.headers:
                del upstream_request.headers[name]

        return upstream_request

    async def _respond(self, upstream: httpx.Response, ctx: CallContext) -> Response:
        snapshot = extract_snapshot(upstream.headers, model=ctx.model)
        stream = is_streaming_response(upstream.headers)
        ctx.observe_response(upstream.status_code, snapshot, stream)

        if snapshot.tokens_remaining is not None:
            await self._record_snapshot(snapshot)

        if upstream.status_code == 429:
            await self._rate_limited(snapshot)

        relay = self._relay_stream(upstream, ctx) if stream else self._relay_buffered(upstream, ctx)
        response = RelayResponse(
            relay,
            status_code=upstream.status_code,
            release=lambda: self._release(upstream, ctx),
        )

        headers = filter_headers(upstream.headers.multi_items())
        headers.extend(ctx.routing_headers.items())
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1")) for name, value in headers
        ]
        return response

    async def _record_snapshot(self, snapshot: Snapshot) -> None:
        try:
            await self.store.insert_snapshot(snapshot)
        except Exception as e:
            logger.error("Failed to record snapshot", error=str(e))

        metrics.TOKENS_REMAINING.set(snapshot.tokens_remaining)
        self.broadcaster.emit("snapshot", snapshot)

        try:
            await self.alerts.observe(snapshot)
        except Exception as e:
            logger.error("Alert evaluation failed", error=str(e))

    async def _rate_limited(self, snapshot: Snapshot) -> None:
        reset_at = snapshot.tokens_reset or snapshot.requests_reset or "unknown"
        metrics.RATE_LIMIT_HITS.inc()
        try:
            await self.alerts.raise_alert(
                AlertEvent(
                    type=RATE_LIMIT_HIT,
                    message=f"Rate limit hit. Reset at: {reset_at}",
                    reset_at=reset_at,
                    remaining=snapshot.tokens_remaining,
                )
            )
        except Exception as e:
            logger.error("Failed to raise rate limit alert", error=str(e))

    async def _relay_stream(self, upstream: httpx.Response, ctx: CallContext) -> AsyncGenerator[bytes, None]:
        tap = StreamTap()
        tapped = inspectable(upstream.headers.get("content-encoding"), stream=True)
        completed = False
        try:
            async for chunk in upstream.aiter_raw():
                yield tap.feed(chunk) if tapped else chunk
            completed = True
        except httpx.RequestError as e:
            logger.warning("Upstream stream interrupted", model=ctx.model, error=str(e))
        finally:
            call = self._finalize(ctx, tap.finish())
            await self._settle(upstream, call, completed)

    async def _relay_buffered(self, upstream: httpx.Response, ctx: CallContext) -> AsyncGenerator[bytes, None]:
        chunks: list[bytes] = []
        completed = False
        try:
            async for chunk in upstream.aiter_raw():
                chunks.append(chunk)
                yield chunk
            completed = True
        except httpx.RequestError as e:
            logger.warning("Upstream body interrupted", model=ctx.model, error=str(e))
        finally:
            raw = decode_body(b"".join(chunks), upstream.headers.get("content-encoding"))
            call = self._finalize(ctx, extract_usage(raw))
            await self._settle(upstream, call, completed)

    async def _settle(self, upstream: httpx.Response, call: Call, completed: bool) -> None:
        # An interrupted relay may be unwinding a cancellation or a close, where any
        # further await would be cancelled too; hand the work to a task.
        if completed:
            await upstream.aclose()
            await self._record_call(call)
        else:
            logger.info("Client response ended early, recording partial usage", model=call.model)
            self._spawn(self._close_and_record(upstream, call))

    def _release(self, upstream: httpx.Response, ctx: CallContext) -> None:
        """Settle a call whose relay never started: the client left before the head went out."""
        if ctx.finalized:
            return
        logger.info("Client left before the response started", model=ctx.model)
        self._spawn(self._close_and_record(upstream, self._finalize(ctx, Usage())))

    async def _close_and_record(self, upstream: httpx.Response, call: Call) -> None:
        try:
            await upstream.aclose()
        except Exception as e:
            logger.debug("Failed to close upstream response", error=str(e))
        await self._record_call(call)

    def _finalize(self, ctx: CallContext, usage: Usage) -> Call:
        priced_model = ctx.model if ctx.model != UNKNOWN_MODEL else usage.model
        cost = self.pricing.estimate_cost(
            priced_model,
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_read_tokens,
            usage.cache_creation_tokens,
        )
        return ctx.finalize(usage, cost)

    async def _record_call(self, call: Call) -> None:
        """Persist and broadcast a finalized call; neither step blocks the other."""
        try:
            await self.store.insert_call(call)
        except Exception as e:
            logger.error("Failed to record call", model=call.model, error=str(e))

        self.broadcaster.emit("call", call)

        status = call.error_code or "ok"
        metrics.CALLS.labels(model=call.model, stream=str(call.stream).lower(), status=status).inc()
        metrics.TOKENS.labels(model=call.model, kind="input").inc(call.usage.input_tokens)
        metrics.TOKENS.labels(model=call.model, kind="output").inc(call.usage.output_tokens)
        metrics.COST.labels(model=call.model).inc(call.cost_usd)
        metrics.LATENCY.observe(call.latency_ms / 1000)

        logger.info(
            "Call completed",
            model=call.model,
            routed_from=call.routed_from,
            input_tokens=call.usage.input_tokens,
            output_tokens=call.usage.output_tokens,
            cost=format_cost(call.cost_usd),
            latency_ms=call.latency_ms,
            stream=call.stream,
            error_code=call.error_code,
        )

    def _gateway_error(self, status_code: int, exc: Exception, ctx: CallContext) -> JSONResponse:
        reason = type(exc).__name__
        metrics.UPSTREAM_ERRORS.labels(reason=reason).inc()
        logger.error(
            "Upstream request failed",
            model=ctx.model,
            reason=reason,
            error=str(exc),
            status_code=status_code,
        )
        return JSONResponse(
            {"error": "proxy_error", "message": str(exc) or reason},
            status_code=status_code,
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for background call records and alert notifications."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.alerts.drain()

    async def aclose(self) -> None:
        await self.drain()
        await self.client.aclose()
