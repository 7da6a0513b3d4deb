import asyncio
import json
import logging
import os
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from allergen_assistant.core.errors import TransportClosedError

logger = logging.getLogger("uvicorn.error")

UPDATE_INTERVAL_SECONDS = float(os.getenv("AQ_STREAM_UPDATE_SECONDS", "60"))
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("AQ_STREAM_HEARTBEAT_SECONDS", "15"))
ERROR_COOLDOWN_SECONDS = float(os.getenv("AQ_STREAM_ERROR_COOLDOWN_SECONDS", "10"))
DISCONNECT_POLL_SECONDS = float(os.getenv("AQ_STREAM_DISCONNECT_POLL_SECONDS", "1"))

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}

BatchFetcher = Callable[[Optional[list[str]]], Awaitable[list[dict[str, Any]]]]


def format_sse_event(event: str, data: Any) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def epoch_ms() -> int:
    return int(time.time() * 1000)


class FrameSink(Protocol):
    def send(self, frame: bytes) -> None:
        ...

    def close(self) -> None:
        ...


class FrameChannel:
    """In-memory transport between a session's timers and the HTTP response body."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: bytes) -> None:
        if self._closed:
            raise TransportClosedError("Stream is already closed.")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            raise TransportClosedError("Stream is already closed.")
        self._closed = True
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class SessionState(str, Enum):
    open = "open"
    cancelling = "cancelling"
    closed = "closed"


class StreamSession:
    """One SSE connection: a refresh timer and a heartbeat timer over a frame sink.

    Both timers fire once as soon as the session starts, then on their own
    period. The session only moves forward: open -> cancelling -> closed.
    """

    def __init__(
        self,
        fetch_batch: BatchFetcher,
        channel: FrameSink,
        locations: Optional[list[str]] = None,
        update_interval: float = UPDATE_INTERVAL_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        error_cooldown: float = ERROR_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self.fetch_batch = fetch_batch
        self.channel = channel
        self.locations = locations or None
        self.update_interval = update_interval
        self.heartbeat_interval = heartbeat_interval
        self.error_cooldown = error_cooldown
        self.clock = clock
        self.now_ms = now_ms
        self.state = SessionState.open
        self._timers: list[asyncio.Task] = []
        self._timers_cleared = False
        self._last_error_at: Optional[float] = None

    @property
    def timers(self) -> list[asyncio.Task]:
        return list(self._timers)

    def start(self) -> None:
        if self.state is not SessionState.open or self._timers:
            return
        self._timers = [
            asyncio.create_task(self._repeat(self.refresh, self.update_interval), name="aq-refresh"),
            asyncio.create_task(self._repeat(self.heartbeat, self.heartbeat_interval), name="aq-heartbeat"),
        ]

    async def _repeat(self, callback: Callable[[], Awaitable[None]], interval: float) -> None:
        # Fixed cadence; a callback that overruns its period delays the next one instead of overlapping it.
        while True:
            started = self.clock()
            await callback()
            if self.state is not SessionState.open:
                return
            elapsed = self.clock() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    async def heartbeat(self) -> None:
        if self.state is not SessionState.open:
            return
        self._emit("heartbeat", {"timestamp": self.now_ms()})

    async def refresh(self) -> None:
        if self.state is not SessionState.open:
            return
        try:
            results = await self.fetch_batch(self.locations)
        except Exception as exc:
            if self.state is not SessionState.open:
                return
            now = self.clock()
            if self._last_error_at is not None and now - self._last_error_at < self.error_cooldown:
                return
            self._last_error_at = now
            logger.warning("aq_stream_refresh_failed detail=%s", str(exc)[:220])
            self._emit("error", {"message": str(exc) or "Failed to refresh air quality metrics."})
            return
        self._emit("update", {"results": results})

    def _emit(self, event: str, data: Any) -> None:
        if self.state is not SessionState.open:
            return
        try:
            self.channel.send(format_sse_event(event, data))
        except TransportClosedError:
            pass
        except Exception as exc:
            logger.warning("aq_stream_enqueue_failed event=%s detail=%s", event, str(exc))

    def _clear_timers(self) -> None:
        if self._timers_cleared:
            return
        self._timers_cleared = True
        for timer in self._timers:
            timer.cancel()

    def cancel(self) -> None:
        if self.state is not SessionState.open:
            return
        self.state = SessionState.cancelling
        self._clear_timers()
        try:
            self.channel.close()
        except TransportClosedError:
            pass
        self.state = SessionState.closed


async def watch_disconnect(
    is_disconnected: Callable[[], Awaitable[bool]],
    session: StreamSession,
    poll_interval: float = DISCONNECT_POLL_SECONDS,
) -> None:
    while session.state is SessionState.open:
        if await is_disconnected():
            logger.info("aq_stream_client_disconnected")
            session.cancel()
            return
        await asyncio.sleep(poll_interval)


async def stream_session_frames(
    session: StreamSession,
    channel: FrameChannel,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float = DISCONNECT_POLL_SECONDS,
) -> AsyncIterator[bytes]:
    session.start()
    watcher = asyncio.create_task(watch_disconnect(is_disconnected, session, poll_interval))
    try:
        async for frame in channel.frames():
            yield frame
    finally:
        watcher.cancel()
        session.cancel()
