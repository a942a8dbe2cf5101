"""
Request-scoped access to the process's TickService.

The instance is created by whoever builds the app and lives on app.state;
routes pull it through Depends(get_tick_service).
"""
from __future__ import annotations

from fastapi import Request

from tickserver.core.config import Settings, settings
from tickserver.services.sink import QueueSink
from tickserver.services.tick_service import TickService


def get_tick_service(request: Request) -> TickService:
    service = getattr(request.app.state, "tick_service", None)
    if service is None:
        raise RuntimeError("Tick service not initialized")
    return service


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", settings)


def new_sink(request: Request) -> QueueSink:
    cfg = get_settings(request)
    return QueueSink(
        queue_maxsize=cfg.SSE_QUEUE_SIZE,
        heartbeat_sec=cfg.SSE_HEARTBEAT_SEC,
    )
