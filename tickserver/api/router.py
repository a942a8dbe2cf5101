"""
Tick API: SSE subscription, stats, manual tick.

- GET  /events      : SSE stream; one "connected" frame, then a tick every minute
- GET  /stats       : registry size and process uptime
- POST /test-tick   : broadcast a tick now (development only)
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from tickserver.api.deps import get_settings, get_tick_service, new_sink
from tickserver.api.errors import AppError
from tickserver.api.schemas import StatsData, StatsOut, TestTickOut
from tickserver.core.config import Settings
from tickserver.services.sink import QueueSink
from tickserver.services.tick_service import TickService, iso_utc

router = APIRouter()
logger = logging.getLogger("tick.api")


def _timestamp() -> str:
    return iso_utc(datetime.now(timezone.utc))


class SinkStreamingResponse(StreamingResponse):
    """Streams a QueueSink and closes it however the response ends, even before the first frame."""

    def __init__(self, sink: QueueSink, **kwargs) -> None:
        super().__init__(sink.stream(), **kwargs)
        self.sink = sink

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.sink.close()


@router.get("/events", summary="Minute ticks via Server-Sent Events")
async def events(
    request: Request,
    clientId: Optional[str] = None,
    service: TickService = Depends(get_tick_service),
    sink: QueueSink = Depends(new_sink),
):
    """
    Long-lived stream of tick events.
    Connect with EventSource or: curl -N http://localhost:3000/api/events?clientId=me
    """
    client_id = service.subscribe(clientId, sink)
    logger.info(
        "SSE stream opened: client=%s ip=%s ua=%s",
        client_id,
        request.client.host if request.client else "-",
        request.headers.get("user-agent", "-"),
    )
    return SinkStreamingResponse(
        sink,
        status_code=sink.status_code or 200,
        headers={k: v for k, v in sink.headers.items() if k.lower() != "content-type"},
        media_type="text/event-stream",
    )


@router.get("/stats", response_model=StatsOut)
async def stats(service: TickService = Depends(get_tick_service)):
    """Current subscriber count and process uptime."""
    return StatsOut(data=StatsData(**service.stats()), timestamp=_timestamp())


@router.post("/test-tick", response_model=TestTickOut)
async def test_tick(
    service: TickService = Depends(get_tick_service),
    cfg: Settings = Depends(get_settings),
):
    if not cfg.is_development:
        raise AppError("Test endpoint only available in development", 403)
    delivered = service.tick_now()
    return TestTickOut(
        message="Manual tick triggered - check connected clients",
        timestamp=_timestamp(),
        delivered=delivered,
    )
