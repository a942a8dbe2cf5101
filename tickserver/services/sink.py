"""
Event sinks: the writable side of one long-lived SSE connection.

- TickService writes framed text through EventSink and never touches the transport.
- QueueSink backs a StreamingResponse with a bounded queue, so writes never block.
- Close listeners fire exactly once, whichever side closes first.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger("tick.sink")

HEARTBEAT_FRAME = ": heartbeat\n\n"


class SinkError(Exception):
    """Base class for failed writes to a sink."""


class SinkClosedError(SinkError):
    """Raised when writing to a sink that has already been closed."""


class SinkBackpressureError(SinkError):
    """Raised when the client is not draining its buffer fast enough."""


class EventSink(ABC):
    """One outbound connection: a response preamble, framed writes, and a close signal."""

    def __init__(self) -> None:
        self.status_code: Optional[int] = None
        self.headers: Dict[str, str] = {}
        self._closed = False
        self._close_callbacks: List[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def write_head(self, status_code: int, headers: Mapping[str, str]) -> None:
        self.status_code = status_code
        self.headers = dict(headers)

    @abstractmethod
    def write(self, data: str) -> None:
        """Write one framed message without blocking. Raises SinkError on failure."""

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a listener for closure. Runs immediately if already closed."""
        if self._closed:
            callback()
            return
        self._close_callbacks.append(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Sink close listener failed")

    def _release(self) -> None:
        """Transport teardown, called once from close()."""


class QueueSink(EventSink):
    """Sink drained by stream(); the queue bounds how far a slow client may lag."""

    def __init__(self, queue_maxsize: int = 100, heartbeat_sec: float = 15.0):
        super().__init__()
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=queue_maxsize)
        self._heartbeat_sec = heartbeat_sec

    def write(self, data: str) -> None:
        if self._closed:
            raise SinkClosedError("sink is closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            raise SinkBackpressureError(
                f"sink backlog full ({self._queue.maxsize} frames pending)"
            ) from None

    def _release(self) -> None:
        # Wake the reader; a full backlog loses its oldest frame to the sentinel.
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def stream(self) -> AsyncIterator[str]:
        """
        Yield frames until the sink closes. A client disconnect cancels the
        consumer, which lands in the finally block all the same.
        Heartbeat comment every heartbeat_sec of silence keeps proxies from timing out.
        """
        try:
            while True:
                try:
                    frame = await asyncio.wait_for(
                        self._queue.get(), timeout=self._heartbeat_sec
                    )
                except asyncio.TimeoutError:
                    yield HEARTBEAT_FRAME
                    continue
                if frame is None:
                    break
                yield frame
        finally:
            self.close()
