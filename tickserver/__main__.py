"""
Tick server entrypoint: python -m tickserver

- Serves the app with uvicorn on HOST:PORT.
- SIGINT/SIGTERM close every SSE stream first so the server can drain; in-flight
  connections then get SHUTDOWN_GRACE_SEC before they are dropped.
- An uncaught exception anywhere is logged as fatal and the process exits with 1.
"""
import asyncio
import logging
import signal
import sys
from types import FrameType
from typing import Any, Dict, Optional

import uvicorn

from tickserver.api.main import create_app, setup_logging
from tickserver.core.config import settings
from tickserver.services.tick_service import TickService

logger = logging.getLogger("tick.server")


class TickServer(uvicorn.Server):
    """uvicorn.Server that shuts the tick service down as soon as a signal arrives."""

    def __init__(self, config: uvicorn.Config, tick_service: TickService):
        super().__init__(config)
        self.tick_service = tick_service
        self.fatal = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        self._loop.set_exception_handler(self._on_loop_error)
        await super().serve(sockets)

    def handle_exit(self, sig: int, frame: Optional[FrameType]) -> None:
        if not self.should_exit:
            logger.info("Received %s. Starting graceful shutdown...", signal.Signals(sig).name)
            if self._loop is not None:
                # Signal handlers may interrupt the loop mid-callback; defer to it.
                self._loop.call_soon_threadsafe(self.tick_service.shutdown)
        super().handle_exit(sig, frame)

    def _on_loop_error(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is None or isinstance(exc, asyncio.CancelledError):
            loop.default_exception_handler(context)
            return
        logger.critical(
            "Unhandled exception in event loop: %s",
            context.get("message", exc),
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        self.fatal = True
        self.tick_service.shutdown()
        self.force_exit = True
        self.should_exit = True


def _log_uncaught(exc_type, exc, tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))


def main() -> None:
    setup_logging(settings)
    sys.excepthook = _log_uncaught

    service = TickService(sink_headers=settings.sse_headers())
    app = create_app(service, settings)
    config = uvicorn.Config(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
        timeout_graceful_shutdown=settings.SHUTDOWN_GRACE_SEC,
    )
    server = TickServer(config, service)
    logger.info(
        "Tick server starting on %s:%d (environment=%s, cors=%s)",
        settings.HOST,
        settings.PORT,
        settings.ENVIRONMENT,
        settings.CORS_ORIGIN,
    )
    server.run()

    if server.fatal:
        sys.exit(1)
    logger.info("Graceful shutdown completed")


if __name__ == "__main__":
    main()
