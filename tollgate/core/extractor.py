"""
Telemetry Extractor
===================
Turns raw upstream response headers and bodies into quota snapshots
and token usage. Parsing never fails the call: bad input degrades to
absent values.
"""

import asyncio
import enum
import json
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from tollgate.schemas.telemetry import Snapshot, Usage, utcnow

logger = structlog.get_logger()

REQUEST_ID_HEADER = "request-id"
REQUESTS_REMAINING_HEADER = "anthropic-ratelimit-requests-remaining"
TOKENS_REMAINING_HEADER = "anthropic-ratelimit-tokens-remaining"
INPUT_TOKENS_REMAINING_HEADER = "anthropic-ratelimit-input-tokens-remaining"
OUTPUT_TOKENS_REMAINING_HEADER = "anthropic-ratelimit-output-tokens-remaining"
REQUESTS_RESET_HEADER = "anthropic-ratelimit-requests-reset"
TOKENS_RESET_HEADER = "anthropic-ratelimit-tokens-reset"

STREAM_START_EVENT = "message_start"
STREAM_DELTA_EVENT = "message_delta"


def _lower_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    if not headers:
        return {}
    try:
        return {str(key).lower(): str(value) for key, value in headers.items()}
    except Exception as e:
        logger.warning("Unreadable response headers", error=str(e))
        return {}


def parse_count(value: str | None) -> int | None:
    """Parse a non-negative base-10 integer, or return None."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        count = int(value, 10)
    except ValueError:
        return None
    return count if count >= 0 else None


def extract_snapshot(
    headers: Mapping[str, Any] | None,
    model: str | None = None,
    now: datetime | None = None,
) -> Snapshot:
    """Build a quota snapshot from response headers. Never raises."""
    h = _lower_headers(headers)

    return Snapshot(
        timestamp=now or utcnow(),
        model=model,
        requests_remaining=parse_count(h.get(REQUESTS_REMAINING_HEADER)),
        tokens_remaining=parse_count(h.get(TOKENS_REMAINING_HEADER)),
        input_tokens_remaining=parse_count(h.get(INPUT_TOKENS_REMAINING_HEADER)),
        output_tokens_remaining=parse_count(h.get(OUTPUT_TOKENS_REMAINING_HEADER)),
        requests_reset=h.get(REQUESTS_RESET_HEADER) or None,
        tokens_reset=h.get(TOKENS_RESET_HEADER) or None,
        request_id=h.get(REQUEST_ID_HEADER) or None,
    )


def is_streaming_response(headers: Mapping[str, Any] | None) -> bool:
    """True iff the content type announces a server-sent event stream."""
    content_type = _lower_headers(headers).get("content-type", "")
    return "text/event-stream" in content_type.lower()


def _count(container: Any, key: str) -> int:
    if not isinstance(container, dict):
        return 0
    value = container.get(key)
    # bool is an int subclass; a JSON true is not a token count
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def _text(container: Any, key: str) -> str | None:
    if not isinstance(container, dict):
        return None
    value = container.get(key)
    return value if isinstance(value, str) and value else None


def usage_from_message(data: Any) -> Usage:
    """Read usage fields from a parsed message object."""
    if not isinstance(data, dict):
        return Usage()
    usage = data.get("usage")
    return Usage(
        input_tokens=_count(usage, "input_tokens"),
        output_tokens=_count(usage, "output_tokens"),
        cache_read_tokens=_count(usage, "cache_read_input_tokens"),
        cache_creation_tokens=_count(usage, "cache_creation_input_tokens"),
        stop_reason=_text(data, "stop_reason"),
        model=_text(data, "model"),
    )


def extract_usage(body: bytes | str | None) -> Usage:
    """
    Parse usage from a complete JSON response body.

    Any failure yields an all-zero Usage so that extraction can never
    block delivery of the response.
    """
    if not body:
        return Usage()
    try:
        text = body.decode("utf-8") if isinstance(body, bytes) else body
        return usage_from_message(json.loads(text))
    except Exception as e:
        logger.debug("Response body carries no usage", error=str(e))
        return Usage()


class TapState(enum.Enum):
    """Parse states of a StreamTap."""

    ACCUMULATING_LINE = "accumulating_line"
    COMPLETE_EVENT = "complete_event"
    FLUSHED = "flushed"


@dataclass
class _UsageTally:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    stop_reason: str | None = None
    model: str | None = None

    def freeze(self) -> Usage:
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            stop_reason=self.stop_reason,
            model=self.model,
        )


class StreamTap:
    """
    Pass-through tap over a server-sent event stream.

    Bytes are handed back untouched while complete lines are parsed to
    accumulate token usage. At most one partial line is held back for
    parsing; nothing is held back from the client.

    finish() is the terminal transition: it parses the trailing partial
    line, freezes the Usage, resolves the completion future and runs
    the optional on_complete callback exactly once.
    """

    def __init__(self, on_complete: Callable[[Usage], Any] | None = None):
        self._on_complete = on_complete
        self._partial = b""
        self._event: str | None = None
        self._tally = _UsageTally()
        self._usage: Usage | None = None
        self._future: asyncio.Future[Usage] | None = None
        self.state = TapState.ACCUMULATING_LINE
        self.events_seen = 0

    @property
    def finished(self) -> bool:
        return self.state is TapState.FLUSHED

    @property
    def usage(self) -> Usage:
        """Usage accumulated so far (final once the tap is finished)."""
        if self._usage is not None:
            return self._usage
        return self._tally.freeze()

    def feed(self, chunk: bytes) -> bytes:
        """Parse the complete lines in chunk and return chunk unchanged."""
        if self.finished:
            raise RuntimeError("StreamTap already finished")
        if not chunk:
            return chunk

        data = self._partial + chunk
        lines = data.split(b"\n")
        self._partial = lines.pop()
        for line in lines:
            self._parse_line(line)
        return chunk

    async def relay(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield every chunk of the source unchanged, then finish the tap."""
        try:
            async for chunk in chunks:
                yield self.feed(chunk)
        finally:
            self.finish()

    def finish(self) -> Usage:
        """Flush the trailing partial line and finalize usage."""
        if self._usage is not None:
            return self._usage

        if self._partial.strip():
            self._parse_line(self._partial)
        self._partial = b""
        self._close_event()

        self._usage = self._tally.freeze()
        self.state = TapState.FLUSHED

        if self._future is not None and not self._future.done():
            self._future.set_result(self._usage)

        if self._on_complete is not None:
            try:
                self._on_complete(self._usage)
            except Exception as e:
                logger.error("Stream completion callback failed", error=str(e))

        return self._usage

    def completion(self) -> "asyncio.Future[Usage]":
        """Future resolved with the final Usage when the tap finishes."""
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            if self._usage is not None:
                self._future.set_result(self._usage)
        return self._future

    def _parse_line(self, raw: bytes) -> None:
        line = raw.rstrip(b"\r").decode("utf-8", errors="replace")

        if not line:
            self._close_event()
            return

        self.state = TapState.ACCUMULATING_LINE
        if line.startswith(":"):
            return
        if line.startswith("event:"):
            self._event = line[6:].strip()
        elif line.startswith("data:"):
            payload = line[5:].strip()
            if not payload or payload == "[DONE]":
                return
            try:
                data = json.loads(payload)
            except ValueError:
                logger.debug("Skipping malformed stream data line", event=self._event)
                return
            self._apply(self._event, data)

    def _close_event(self) -> None:
        if self._event is not None:
            self.events_seen += 1
            self.state = TapState.COMPLETE_EVENT
        self._event = None

    def _apply(self, event: str | None, data: Any) -> None:
        if not isinstance(data, dict):
            return
        kind = data.get("type") or event

        if kind == STREAM_START_EVENT:
            message = data.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            self._tally.input_tokens += _count(usage, "input_tokens")
            self._tally.cache_read_tokens += _count(usage, "cache_read_input_tokens")
            self._tally.cache_creation_tokens += _count(usage, "cache_creation_input_tokens")
            model = _text(message, "model")
            if model:
                self._tally.model = model

        elif kind == STREAM_DELTA_EVENT:
            self._tally.output_tokens += _count(data.get("usage"), "output_tokens")
            stop_reason = _text(data.get("delta"), "stop_reason")
            if stop_reason:
                self._tally.stop_reason = stop_reason
