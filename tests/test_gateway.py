"""
Interception Gateway Tests
==========================
End-to-end tests through the proxy app against a fake upstream.
"""

import asyncio
import gzip
import json
from collections.abc import Awaitable, Callable

import httpx
import pytest
from structlog.testing import capture_logs

from tollgate.main import Tollgate
from tollgate.proxy.app import create_proxy_app
from tollgate.proxy.gateway import CallContext, decode_body, filter_headers, parse_request_json
from tollgate.schemas.telemetry import Usage

from factories import (
    RESET_AT,
    FakeUpstream,
    RecordingNotifier,
    chunked,
    message_body,
    ratelimit_headers,
    sse_stream,
)

MESSAGES = "/v1/messages"


def request_body(model: str = "claude-opus-4-6", **extra) -> dict:
    return {"model": model, "max_tokens": 256, "messages": [{"role": "user", "content": "Hi"}], **extra}


def stream_parts() -> tuple[bytes, bytes]:
    """An event stream split right after message_start."""
    data = sse_stream("claude-sonnet-4-6", input_tokens=30, output_tokens=60)
    split = data.index(b"event: content_block_delta")
    return data[:split], data[split:]


async def call_proxy(app, body: dict, send: Callable[[dict], Awaitable[None]]) -> None:
    """Drive the proxy app at the ASGI level so the test controls send()."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": MESSAGES,
        "raw_path": MESSAGES.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"proxy.test"), (b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("proxy.test", 80),
    }
    pending = [{"type": "http.request", "body": json.dumps(body).encode(), "more_body": False}]

    async def receive() -> dict:
        if pending:
            return pending.pop()
        await asyncio.Event().wait()

    await asyncio.wait_for(app(scope, receive, send), timeout=5)


@pytest.fixture
def opened(runtime: Tollgate, monkeypatch: pytest.MonkeyPatch) -> list[httpx.Response]:
    """Upstream responses handed to the gateway, in order."""
    responses: list[httpx.Response] = []
    send = runtime.client.send

    async def capture(request: httpx.Request, **kwargs) -> httpx.Response:
        response = await send(request, **kwargs)
        responses.append(response)
        return response

    monkeypatch.setattr(runtime.client, "send", capture)
    return responses


class TestPassthrough:
    """Tests for transparent forwarding."""

    async def test_response_is_relayed(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream):
        """Test that status, headers and body reach the client unchanged."""
        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        assert response.status_code == 200
        assert response.json() == message_body()
        assert response.headers["anthropic-ratelimit-tokens-remaining"] == "390000"
        assert "x-tollgate-routed" not in response.headers

    async def test_request_is_forwarded(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream):
        """Test that method, path, query, headers and body are forwarded."""
        body = request_body("claude-sonnet-4-6")
        await proxy_client.post(
            f"{MESSAGES}?beta=true",
            json=body,
            headers={"x-api-key": "sk-test", "anthropic-version": "2023-06-01"},
        )

        sent = upstream.requests[-1]
        assert sent.method == "POST"
        assert sent.url.path == MESSAGES
        assert sent.url.query == b"beta=true"
        assert sent.url.host == "upstream.test"
        assert sent.headers["x-api-key"] == "sk-test"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        assert sent.headers["host"] == "upstream.test"
        assert upstream.last_body == body

    async def test_non_json_request(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream):
        """Test that non-JSON bodies pass through untouched."""
        response = await proxy_client.get("/v1/models")

        assert response.status_code == 200
        assert upstream.requests[-1].method == "GET"

    async def test_hop_by_hop_headers_stripped(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream):
        """Test that hop-by-hop headers are not relayed in either direction."""
        upstream.responder = lambda request: httpx.Response(
            200,
            json=message_body(),
            headers={"keep-alive": "timeout=5", "x-upstream": "yes"},
        )
        response = await proxy_client.post(
            MESSAGES,
            json=request_body("claude-sonnet-4-6"),
            headers={"proxy-authorization": "secret"},
        )

        assert "proxy-authorization" not in upstream.requests[-1].headers
        assert "keep-alive" not in response.headers
        assert response.headers["x-upstream"] == "yes"

    async def test_duplicate_headers_preserved(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream):
        upstream.responder = lambda request: httpx.Response(
            200,
            json=message_body(),
            headers=[("set-cookie", "a=1"), ("set-cookie", "b=2")],
        )
        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]


class TestTelemetry:
    """Tests for snapshot and call recording."""

    async def test_snapshot_persisted(self, proxy_client: httpx.AsyncClient, runtime: Tollgate):
        """Test that quota headers become a stored snapshot."""
        await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        latest = await runtime.store.get_latest_snapshot()
        assert latest is not None
        assert latest.tokens_remaining == 390_000
        assert latest.request_id == "req_test_01"

    async def test_buffered_call_recorded(self, proxy_client: httpx.AsyncClient, runtime: Tollgate):
        """Test that a JSON response yields a priced call record."""
        await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        calls = await runtime.store.recent_calls()
        assert len(calls) == 1
        call = calls[0]
        assert call.model == "claude-sonnet-4-6"
        assert call.usage.input_tokens == 100
        assert call.usage.output_tokens == 50
        assert call.usage.stop_reason == "end_turn"
        assert call.stream is False
        assert call.error_code is None
        assert call.request_id == "req_test_01"
        assert call.cost_usd == pytest.approx(100 * 3 / 1e6 + 50 * 15 / 1e6)

    async def test_call_event_emitted(self, proxy_client: httpx.AsyncClient, runtime: Tollgate):
        queue = runtime.broadcaster.subscribe()
        await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        names = [queue.get_nowait()[0] for _ in range(queue.qsize())]
        assert names == ["snapshot", "call"]

    async def test_snapshot_and_alert_stored_before_headers(self, runtime: Tollgate, upstream: FakeUpstream):
        """Test that the client sees headers only after the snapshot and alert are stored."""
        upstream.responder = lambda request: httpx.Response(
            200, json=message_body(), headers=ratelimit_headers(tokens_remaining=80_000)
        )
        at_head = {}

        async def send(message: dict) -> None:
            if message["type"] == "http.response.start":
                at_head["snapshot"] = await runtime.store.get_latest_snapshot()
                at_head["alerts"] = [alert.type for alert in await runtime.store.recent_alerts()]
                at_head["calls"] = await runtime.store.recent_calls()

        await call_proxy(create_proxy_app(runtime.gateway), request_body("claude-sonnet-4-6"), send)

        assert at_head["snapshot"].tokens_remaining == 80_000
        assert at_head["alerts"] == ["token_warning"]
        assert at_head["calls"] == []
        assert len(await runtime.store.recent_calls()) == 1

    async def test_compressed_stream_is_relayed_with_warning(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        """Test that an encoded event stream passes through and is flagged as uninspected."""
        raw = gzip.compress(sse_stream())
        upstream.responder = lambda request: httpx.Response(
            200,
            content=raw,
            headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
        )

        with capture_logs() as logs:
            response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6", stream=True))

        assert response.status_code == 200
        assert response.headers["content-encoding"] == "gzip"
        assert (await runtime.store.recent_calls())[0].usage.input_tokens == 0
        warnings = [entry for entry in logs if entry["log_level"] == "warning"]
        assert warnings[0]["content_encoding"] == "gzip"
        assert warnings[0]["stream"] is True

    async def test_streaming_usage_recorded(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        """Test that an event stream is relayed intact and its usage recorded."""
        data = sse_stream("claude-sonnet-4-6", input_tokens=30, output_tokens=60)
        upstream.responder = lambda request: httpx.Response(
            200,
            content=chunked(data, 17),
            headers={"content-type": "text/event-stream", **ratelimit_headers()},
        )

        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6", stream=True))

        assert response.content == data
        calls = await runtime.store.recent_calls()
        assert calls[0].stream is True
        assert calls[0].usage.input_tokens == 30
        assert calls[0].usage.output_tokens == 60

    async def test_gzip_body_usage(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        """Test that compressed bodies are relayed raw but still inspected."""
        raw = gzip.compress(json.dumps(message_body(input_tokens=7, output_tokens=3)).encode())
        upstream.responder = lambda request: httpx.Response(
            200,
            content=raw,
            headers={"content-type": "application/json", "content-encoding": "gzip"},
        )

        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        assert response.json()["usage"]["input_tokens"] == 7
        calls = await runtime.store.recent_calls()
        assert calls[0].usage.input_tokens == 7
        assert calls[0].usage.output_tokens == 3

    async def test_missing_model_priced_from_response(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        upstream.responder = lambda request: httpx.Response(
            200, json=message_body("claude-opus-4-6", input_tokens=1_000_000, output_tokens=0)
        )
        await proxy_client.post(MESSAGES, json={"messages": []})

        call = (await runtime.store.recent_calls())[0]
        assert call.model == "unknown"
        assert call.cost_usd == pytest.approx(15.00)


class TestRouting:
    """Tests for adaptive downgrades through the proxy."""

    async def _exhaust(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream) -> None:
        upstream.responder = lambda request: httpx.Response(
            200, json=message_body(), headers=ratelimit_headers(tokens_remaining=80_000)
        )
        await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))
        upstream.responder = FakeUpstream.ok

    async def test_reroute_rewrites_body_and_headers(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        """Test that a low quota downgrades the next request by one step."""
        await self._exhaust(proxy_client, upstream)
        body = request_body("claude-opus-4-6")

        response = await proxy_client.post(MESSAGES, json=body)

        sent = upstream.requests[-1]
        assert upstream.last_body == {**body, "model": "claude-sonnet-4-6"}
        assert int(sent.headers["content-length"]) == len(sent.content)
        assert response.headers["x-tollgate-routed"] == "true"
        assert response.headers["x-tollgate-original-model"] == "claude-opus-4-6"
        assert response.headers["x-tollgate-routed-model"] == "claude-sonnet-4-6"
        assert response.headers["x-tollgate-reason"] == "token-threshold-80"

        call = (await runtime.store.recent_calls())[0]
        assert call.model == "claude-sonnet-4-6"
        assert call.routed_from == "claude-opus-4-6"

    async def test_reroute_emits_downgrade_alert(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        await self._exhaust(proxy_client, upstream)
        queue = runtime.broadcaster.subscribe()

        await proxy_client.post(MESSAGES, json=request_body("claude-opus-4-6"))

        alerts = [data for name, data in (queue.get_nowait() for _ in range(queue.qsize())) if name == "alert"]
        assert alerts[0]["type"] == "route_downgrade"
        assert alerts[0]["from_model"] == "claude-opus-4-6"
        assert alerts[0]["to_model"] == "claude-sonnet-4-6"

    async def test_no_reroute_when_disabled(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        runtime.gateway.routing_policy = runtime.gateway.routing_policy.model_copy(update={"enabled": False})
        await self._exhaust(proxy_client, upstream)

        response = await proxy_client.post(MESSAGES, json=request_body("claude-opus-4-6"))

        assert upstream.last_body["model"] == "claude-opus-4-6"
        assert "x-tollgate-routed" not in response.headers

    async def test_threshold_alert_raised(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        notifier: RecordingNotifier,
        runtime: Tollgate,
    ):
        """Test that the snapshot crossing the warning tier raises an alert."""
        await self._exhaust(proxy_client, upstream)
        await runtime.gateway.drain()

        assert [alert_type for alert_type, _ in notifier.sent] == ["token_warning"]


class TestUpstreamFailures:
    """Tests for error mapping and rate limits."""

    async def test_rate_limit_alert(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        notifier: RecordingNotifier,
        runtime: Tollgate,
    ):
        """Test that a 429 is relayed, recorded and alerted."""
        upstream.responder = lambda request: httpx.Response(
            429,
            json={"type": "error", "error": {"type": "rate_limit_error"}},
            headers=ratelimit_headers(tokens_remaining=390_000),
        )

        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))
        await runtime.gateway.drain()

        assert response.status_code == 429
        assert ("rate_limit_hit", f"Rate limit hit. Reset at: {RESET_AT}") in notifier.sent
        call = (await runtime.store.recent_calls())[0]
        assert call.error_code == "429"
        alerts = await runtime.store.recent_alerts()
        assert alerts[0].type == "rate_limit_hit"

    async def test_connect_error_is_502(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        upstream.responder = refuse
        response = await proxy_client.post(MESSAGES, json=request_body())

        assert response.status_code == 502
        assert response.json() == {"error": "proxy_error", "message": "connection refused"}
        assert await runtime.store.recent_calls() == []

    async def test_timeout_is_504(self, proxy_client: httpx.AsyncClient, upstream: FakeUpstream):
        def stall(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        upstream.responder = stall
        response = await proxy_client.post(MESSAGES, json=request_body())

        assert response.status_code == 504
        assert response.json()["error"] == "proxy_error"

    async def test_upstream_error_status_relayed(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
    ):
        upstream.responder = lambda request: httpx.Response(529, json={"type": "error"})
        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6"))

        assert response.status_code == 529
        assert (await runtime.store.recent_calls())[0].error_code == "529"

    async def test_read_error_mid_stream_records_partial_usage(
        self,
        proxy_client: httpx.AsyncClient,
        upstream: FakeUpstream,
        runtime: Tollgate,
        opened: list[httpx.Response],
    ):
        """Test that a broken upstream stream ends the relay and keeps what was seen."""
        head, _ = stream_parts()

        async def broken_stream():
            yield head
            raise httpx.ReadError("connection reset")

        upstream.responder = lambda request: httpx.Response(
            200,
            content=broken_stream(),
            headers={"content-type": "text/event-stream", **ratelimit_headers()},
        )

        response = await proxy_client.post(MESSAGES, json=request_body("claude-sonnet-4-6", stream=True))
        await runtime.gateway.drain()

        assert response.status_code == 200
        assert response.content == head
        assert opened[0].is_closed
        calls = await runtime.store.recent_calls()
        assert len(calls) == 1
        assert calls[0].stream is True
        assert calls[0].usage.input_tokens == 30
        assert calls[0].usage.stop_reason is None


class TestClientDisconnect:
    """Tests for clients that go away before the relay finishes."""

    async def test_disconnect_before_head_releases_upstream(
        self,
        runtime: Tollgate,
        opened: list[httpx.Response],
    ):
        """Test that a relay which never starts still closes upstream and records the call."""
        failed = []

        async def send(message: dict) -> None:
            if not failed:
                failed.append(message["type"])
                raise OSError("client went away")

        with pytest.raises(Exception):
            await call_proxy(create_proxy_app(runtime.gateway), request_body("claude-sonnet-4-6"), send)
        await runtime.gateway.drain()

        assert failed == ["http.response.start"]
        assert opened[0].is_closed
        calls = await runtime.store.recent_calls()
        assert len(calls) == 1
        assert calls[0].model == "claude-sonnet-4-6"
        assert calls[0].usage.input_tokens == 0
        assert calls[0].usage.output_tokens == 0

    async def test_disconnect_mid_stream_records_partial_usage(
        self,
        runtime: Tollgate,
        upstream: FakeUpstream,
        opened: list[httpx.Response],
    ):
        head, tail = stream_parts()

        async def two_parts():
            yield head
            yield tail

        upstream.responder = lambda request: httpx.Response(
            200,
            content=two_parts(),
            headers={"content-type": "text/event-stream", **ratelimit_headers()},
        )

        async def send(message: dict) -> None:
            if message["type"] == "http.response.body" and message.get("body"):
                raise OSError("client went away")

        with pytest.raises(Exception):
            await call_proxy(
                create_proxy_app(runtime.gateway),
                request_body("claude-sonnet-4-6", stream=True),
                send,
            )
        await runtime.gateway.drain()

        assert opened[0].is_closed
        calls = await runtime.store.recent_calls()
        assert len(calls) == 1
        assert calls[0].stream is True
        assert calls[0].usage.input_tokens == 30
        assert calls[0].usage.stop_reason is None

    async def test_repeated_disconnects_do_not_exhaust_upstream(
        self,
        runtime: Tollgate,
        opened: list[httpx.Response],
    ):
        async def refuse(message: dict) -> None:
            raise OSError("client went away")

        for _ in range(3):
            with pytest.raises(Exception):
                await call_proxy(create_proxy_app(runtime.gateway), request_body("claude-sonnet-4-6"), refuse)
        await runtime.gateway.drain()

        assert len(opened) == 3
        assert all(response.is_closed for response in opened)
        assert len(await runtime.store.recent_calls()) == 3


class TestGatewayHelpers:
    """Tests for the gateway's small building blocks."""

    def test_filter_headers(self):
        headers = [("Connection", "close"), ("X-A", "1"), ("Transfer-Encoding", "chunked"), ("X-A", "2")]
        assert filter_headers(headers) == [("X-A", "1"), ("X-A", "2")]

    def test_parse_request_json(self):
        assert parse_request_json(b'{"model": "m"}') == {"model": "m"}
        assert parse_request_json(b"") is None
        assert parse_request_json(b"\x00garbage") is None

    def test_decode_body(self):
        assert decode_body(gzip.compress(b"abc"), "gzip") == b"abc"
        assert decode_body(b"abc", None) == b"abc"
        assert decode_body(b"not gzip", "gzip") == b""

    def test_unsupported_encoding_warns(self):
        """Test that bodies usage cannot be read from are flagged, not silently zero."""
        with capture_logs() as logs:
            assert decode_body(b"\x1b\x00compressed", "br") == b""
            assert decode_body(b"{}", "identity") == b"{}"

        assert len(logs) == 1
        assert logs[0]["log_level"] == "warning"
        assert logs[0]["content_encoding"] == "br"

    def test_call_context_finalizes_once(self):
        """Test that a context can only become a Call once."""
        ctx = CallContext.start("claude-sonnet-4-6")
        call = ctx.finalize(Usage(input_tokens=1), 0.5)

        assert call.model == "claude-sonnet-4-6"
        assert ctx.finalized
        with pytest.raises(RuntimeError):
            ctx.finalize(Usage(), 0.0)
