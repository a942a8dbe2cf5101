"""
Client registry and minute-aligned tick broadcaster.

- subscribe() binds a client id to a sink and sends one "connected" acknowledgment.
- A one-shot timer waits for the next wall-clock minute, then a fixed 60 s period repeats.
- A failed write evicts only that subscriber; the rest of the broadcast carries on.
- Everything runs on the event loop thread, so the registry needs no lock.
"""
import asyncio
import enum
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from tickserver.services.sink import EventSink

logger = logging.getLogger("tick.service")

TICK_PERIOD_MS = 60_000
# A timer firing slightly ahead of the boundary still stamps the minute it was aimed at.
BOUNDARY_TOLERANCE = timedelta(seconds=1)

SSE_HEADERS: Dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_PROCESS_STARTED = time.monotonic()


def process_uptime() -> float:
    """Seconds since the process loaded the service module."""
    return round(time.monotonic() - _PROCESS_STARTED, 3)


def local_now() -> datetime:
    return datetime.now().astimezone()


def truncate_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def ms_until_next_minute(moment: datetime) -> int:
    """Milliseconds from moment to the next :00.000 boundary (60000 when exactly on one)."""
    return TICK_PERIOD_MS - (moment.second * 1000 + moment.microsecond // 1000)


def iso_utc(moment: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a Z suffix; naive datetimes are taken as local."""
    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class TickEvent(BaseModel):
    """Payload pushed to clients. Built fresh for each broadcast, never stored."""
    model_config = ConfigDict(frozen=True)

    timestamp: str
    minute: int
    hour: int
    date: str
    message: str

    @classmethod
    def at_minute(cls, now: datetime) -> "TickEvent":
        """Tick for the minute containing now (seconds and sub-seconds zeroed)."""
        exact = truncate_to_minute(now)
        return cls(
            timestamp=iso_utc(exact),
            minute=exact.minute,
            hour=exact.hour,
            date=exact.strftime("%a %b %d %Y"),
            message=f"Tick at {exact.hour}:{exact.minute:02d}:00",
        )

    @classmethod
    def connected(cls, now: datetime) -> "TickEvent":
        """Acknowledgment sent on subscribe; carries the live, untruncated time."""
        return cls(
            timestamp=iso_utc(now),
            minute=now.minute,
            hour=now.hour,
            date=now.strftime("%a %b %d %Y"),
            message="Connected to tick server",
        )

    def to_frame(self) -> str:
        return f"data: {self.model_dump_json()}\n\n"


@dataclass
class Subscriber:
    client_id: str
    sink: EventSink
    last_delivery: datetime


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    WAITING_FOR_BOUNDARY = "waiting_for_boundary"
    TICKING = "ticking"
    SHUT_DOWN = "shut_down"


class TickService:
    """Owns the subscriber registry and the tick timer. One instance per process."""

    def __init__(
        self,
        now: Callable[[], datetime] = local_now,
        sink_headers: Optional[Mapping[str, str]] = None,
        period_ms: int = TICK_PERIOD_MS,
    ):
        self._now = now
        self._sink_headers = dict(sink_headers or {})
        self._period = period_ms / 1000
        self._clients: Dict[str, Subscriber] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._next_fire = 0.0
        self.state = SchedulerState.IDLE

    @property
    def subscriber_count(self) -> int:
        return len(self._clients)

    def get_subscriber(self, client_id: str) -> Optional[Subscriber]:
        return self._clients.get(client_id)

    # ── Registry ──────────────────────────────────────────────

    def subscribe(self, client_id: Optional[str], sink: EventSink) -> str:
        """Register sink under client_id and acknowledge it. Returns the id actually used."""
        if not client_id or not client_id.strip():
            client_id = str(uuid.uuid4())
            logger.debug("No client id supplied; generated %s", client_id)

        sink.write_head(200, {**SSE_HEADERS, **self._sink_headers})

        if self.state is SchedulerState.SHUT_DOWN:
            logger.warning("Rejecting client %s: tick service is shut down", client_id)
            sink.close()
            return client_id

        previous = self._clients.get(client_id)
        self._clients[client_id] = Subscriber(
            client_id=client_id, sink=sink, last_delivery=self._now()
        )
        if previous is not None and previous.sink is not sink:
            logger.info("Client %s reconnected; releasing previous connection", client_id)
            self._release(previous)

        sink.on_close(lambda: self._on_sink_closed(client_id, sink))
        logger.info("Client connected: %s (total=%d)", client_id, len(self._clients))

        self._send(client_id, TickEvent.connected(self._now()))
        return client_id

    def unsubscribe(self, client_id: str) -> None:
        subscriber = self._clients.pop(client_id, None)
        if subscriber is None:
            return
        logger.info("Client disconnected: %s (total=%d)", client_id, len(self._clients))
        self._release(subscriber)

    def _on_sink_closed(self, client_id: str, sink: EventSink) -> None:
        # Only evict the entry that owns this sink; the id may have been reused since.
        current = self._clients.get(client_id)
        if current is None or current.sink is not sink:
            return
        del self._clients[client_id]
        logger.info("Client disconnected: %s (total=%d)", client_id, len(self._clients))

    def _release(self, subscriber: Subscriber) -> None:
        if subscriber.sink.closed:
            return
        try:
            subscriber.sink.close()
        except Exception as exc:
            logger.warning(
                "Error closing connection for client %s: %s", subscriber.client_id, exc
            )

    # ── Delivery ──────────────────────────────────────────────

    def _send(self, client_id: str, event: TickEvent) -> bool:
        subscriber = self._clients.get(client_id)
        if subscriber is None:
            return False
        try:
            subscriber.sink.write(event.to_frame())
        except Exception as exc:
            logger.error("Failed to send event to client %s: %s", client_id, exc)
            self.unsubscribe(client_id)
            return False
        subscriber.last_delivery = self._now()
        return True

    def broadcast(self, event: TickEvent) -> int:
        """Send event to every client registered right now. Returns successful deliveries."""
        client_ids = list(self._clients)
        if not client_ids:
            logger.debug("No clients to broadcast to")
            return 0

        logger.info("Broadcasting tick %s to %d clients", event.timestamp, len(client_ids))
        delivered = 0
        for client_id in client_ids:
            if self._send(client_id, event):
                delivered += 1
        if delivered < len(client_ids):
            logger.info(
                "Tick %s delivered to %d/%d clients",
                event.timestamp,
                delivered,
                len(client_ids),
            )
        return delivered

    def tick_now(self) -> int:
        """Broadcast a tick for the current minute immediately."""
        return self.broadcast(TickEvent.at_minute(self._now()))

    # ── Scheduling ────────────────────────────────────────────

    def start(self) -> None:
        """Arm the one-shot timer for the next minute boundary. Needs a running loop."""
        if self.state is SchedulerState.SHUT_DOWN:
            raise RuntimeError("tick service has been shut down")
        if self.state is not SchedulerState.IDLE:
            logger.warning("Tick service already started (state=%s)", self.state.value)
            return

        self._loop = asyncio.get_running_loop()
        now = self._now()
        delay_ms = ms_until_next_minute(now)
        self._timer = self._loop.call_later(delay_ms / 1000, self._fire)
        self.state = SchedulerState.WAITING_FOR_BOUNDARY
        logger.info(
            "Starting tick service: next tick in %ds (now %s)",
            math.ceil(delay_ms / 1000),
            now.isoformat(),
        )

    def _fire(self) -> None:
        self._timer = None
        if self.state is SchedulerState.WAITING_FOR_BOUNDARY:
            self.state = SchedulerState.TICKING
            self._next_fire = self._loop.time()

        try:
            self.broadcast(TickEvent.at_minute(self._now() + BOUNDARY_TOLERANCE))
        except Exception:
            logger.exception("Tick broadcast failed")

        if self.state is SchedulerState.TICKING:
            self._next_fire += self._period
            self._timer = self._loop.call_at(self._next_fire, self._fire)

    # ── Introspection / lifecycle ─────────────────────────────

    def stats(self) -> dict:
        return {
            "subscriberCount": len(self._clients),
            "uptime": process_uptime(),
        }

    def shutdown(self) -> None:
        """Cancel the timer and close every connection. Safe to call repeatedly."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.state is SchedulerState.SHUT_DOWN:
            return
        self.state = SchedulerState.SHUT_DOWN

        subscribers = list(self._clients.values())
        self._clients.clear()
        for subscriber in subscribers:
            self._release(subscriber)
        logger.info("Tick service shut down (%d connections closed)", len(subscribers))
