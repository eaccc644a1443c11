# =============================================================================
# Stream Channels — Server-Push Status Events per Query
# =============================================================================
#
# After a query is accepted, the backend pushes StreamingStatusEvent
# snapshots on GET /queries/{id}/stream as Server-Sent Events:
#
#   event: message            (optional; "error" marks a channel error)
#   data: {"status": "processing", "progress": 40, "steps": [...]}
#   <blank line>
#
# A channel exposes three events to callers:
#   message(StreamingStatusEvent) → every decoded status snapshot
#   error(reason: str)            → transport problems, bad payloads, the
#                                   stream ending early; never a QueryError
#   close()                       → the channel is finished
#
# and can also be consumed as `async for event in channel`.
#
# DESIGN DECISION: Channel errors stay non-terminal events.
# A dropped connection or one malformed frame says nothing about the query
# itself; only a `failed` status does. Converting channel errors into
# QueryError would make callers abandon queries that are still running.
#
# DESIGN DECISION: No auto-reconnect.
# Reconnecting is the caller's call (it may prefer fetch_full_result).
#
# DESIGN DECISION: Injectable channel factory.
# The orchestrator only sees `ChannelFactory = Callable[[str], StreamChannel]`.
# InMemoryStreamChannel substitutes for real server push wherever a network
# stream is unwanted (tests, replays, offline demos).
#
# ARCHITECTURE:
#   StreamChannel (Protocol)
#   BaseStreamChannel          → listeners, iterator, close bookkeeping
#   ├── SSEStreamChannel       → httpx streaming GET + SSE frame parser
#   └── InMemoryStreamChannel  → fed by push() / fail()
#   SSEChannelFactory / InMemoryChannelFactory
# =============================================================================

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import httpx

from query_client.config import Settings
from query_client.models.responses import StreamingStatusEvent
from query_client.services import endpoints

logger = logging.getLogger(__name__)

ChannelEvent = Literal["message", "error", "close"]
_CHANNEL_EVENTS: tuple[str, ...] = ("message", "error", "close")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class StreamChannel(Protocol):
    """What the orchestrator hands back to callers inside a submission handle."""

    query_id: str

    @property
    def closed(self) -> bool: ...

    def on(self, event: ChannelEvent, handler: Callable[..., Any]) -> None: ...

    async def close(self) -> None: ...

    async def wait_closed(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[StreamingStatusEvent]: ...


ChannelFactory = Callable[[str], StreamChannel]


# ---------------------------------------------------------------------------
# Base Channel
# ---------------------------------------------------------------------------


class BaseStreamChannel:
    """Listener registry, message queue, and close handling shared by channels."""

    def __init__(self, query_id: str) -> None:
        self.query_id = query_id
        self._listeners: dict[str, list[Callable[..., Any]]] = {
            name: [] for name in _CHANNEL_EVENTS
        }
        self._queue: asyncio.Queue[StreamingStatusEvent | None] = asyncio.Queue()
        self._closed = asyncio.Event()
        self._iterating = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def on(self, event: ChannelEvent, handler: Callable[..., Any]) -> None:
        """
        Register a handler (plain function or coroutine function).

        message handlers receive a StreamingStatusEvent, error handlers a
        reason string, close handlers nothing. Once a message handler is
        registered, events are buffered only for `async for` consumers.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown channel event: {event!r}")
        self._listeners[event].append(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners[event]):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # One faulty listener must not stop delivery to the rest.
                logger.exception(
                    "Channel %s listener for %r raised", self.query_id, event
                )

    async def _dispatch_message(self, event: StreamingStatusEvent) -> None:
        if self.closed:
            return
        # Listener-only consumers never drain the queue; buffer only for
        # iterators, or until the caller has chosen how to consume.
        if self._iterating or not self._listeners["message"]:
            self._queue.put_nowait(event)
        await self._emit("message", event)

    async def _dispatch_error(self, reason: str) -> None:
        if self.closed:
            return
        logger.warning("Stream channel %s error: %s", self.query_id, reason)
        await self._emit("error", reason)

    async def close(self) -> None:
        """Stop listening. Idempotent."""
        if self.closed:
            return
        self._closed.set()
        self._queue.put_nowait(None)
        await self._on_close()
        await self._emit("close")
        logger.info("Stream channel closed: %s", self.query_id)

    async def _on_close(self) -> None:
        """Hook for subclasses to release transport resources."""

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _iterate(self) -> AsyncIterator[StreamingStatusEvent]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    def __aiter__(self) -> AsyncIterator[StreamingStatusEvent]:
        self._iterating = True
        return self._iterate()


# ---------------------------------------------------------------------------
# Server-Sent Events
# ---------------------------------------------------------------------------


@dataclass
class SSEFrame:
    event: str | None
    data: str
    id: str | None = None


async def iter_sse_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    """
    Group decoded text lines into SSE frames.

    Follows the EventSource rules: `:` starts a comment, a blank line ends a
    frame, multiple `data:` lines join with newlines, and a trailing frame
    without its blank line is discarded.
    """
    event: str | None = None
    data_lines: list[str] = []
    frame_id: str | None = None

    async for line in lines:
        if not line:
            if data_lines:
                yield SSEFrame(event=event, data="\n".join(data_lines), id=frame_id)
            event, data_lines = None, []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            data_lines.append(value)
        elif field == "event":
            event = value
        elif field == "id":
            frame_id = value
        # "retry" and unknown fields are ignored: no auto-reconnect here.


class SSEStreamChannel(BaseStreamChannel):
    """A channel backed by GET /queries/{id}/stream."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        query_id: str,
        connect_timeout: float = 10.0,
    ) -> None:
        super().__init__(query_id)
        self._client = client
        self._connect_timeout = connect_timeout
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Open the connection in a background task. Requires a running loop."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._pump(), name=f"sse-stream:{self.query_id}"
            )

    async def _pump(self) -> None:
        saw_terminal = False
        try:
            async with self._client.stream(
                "GET",
                endpoints.query_stream(self.query_id),
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=httpx.Timeout(None, connect=self._connect_timeout),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    await self._dispatch_error(
                        f"Stream request failed: {response.status_code} - {response.text}"
                    )
                    return

                async for frame in iter_sse_frames(response.aiter_lines()):
                    if self.closed:
                        return
                    if frame.event == "error":
                        await self._dispatch_error(frame.data or "Server reported a stream error")
                        continue
                    if not frame.data.strip():
                        continue  # heartbeat
                    try:
                        event = StreamingStatusEvent.model_validate(json.loads(frame.data))
                    except ValueError as e:
                        # One bad frame does not end the stream.
                        await self._dispatch_error(f"Malformed status event: {e}")
                        continue
                    saw_terminal = saw_terminal or event.is_terminal
                    await self._dispatch_message(event)

            if not saw_terminal:
                await self._dispatch_error("Stream ended before a terminal status")
        except (httpx.HTTPError, httpx.StreamError) as e:
            await self._dispatch_error(f"Stream connection error: {e}")
        finally:
            if not self.closed:
                await self.close()

    async def _on_close(self) -> None:
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class SSEChannelFactory:
    """Default channel factory: one SSE connection per query id."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    def __call__(self, query_id: str) -> SSEStreamChannel:
        channel = SSEStreamChannel(
            self._client,
            query_id,
            connect_timeout=self._settings.stream_connect_timeout_seconds,
        )
        channel.start()
        return channel


# ---------------------------------------------------------------------------
# In-Memory
# ---------------------------------------------------------------------------


class InMemoryStreamChannel(BaseStreamChannel):
    """A channel fed directly by the owner instead of a server."""

    async def push(self, event: StreamingStatusEvent | dict[str, Any]) -> None:
        if not isinstance(event, StreamingStatusEvent):
            event = StreamingStatusEvent.model_validate(event)
        await self._dispatch_message(event)

    async def fail(self, reason: str) -> None:
        await self._dispatch_error(reason)


class InMemoryChannelFactory:
    """Creates InMemoryStreamChannels and remembers them by query id."""

    def __init__(self) -> None:
        self.channels: dict[str, InMemoryStreamChannel] = {}

    def __call__(self, query_id: str) -> InMemoryStreamChannel:
        channel = InMemoryStreamChannel(query_id)
        self.channels[query_id] = channel
        return channel
