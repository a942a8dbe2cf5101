"""
FastAPI application for the tick server.

- API: /api/events (SSE), /api/stats, /api/health, /api/test-tick
- Root: / (service metadata)
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tickserver import __version__
from tickserver.api.errors import register_error_handlers
from tickserver.api.health import router as health_router
from tickserver.api.middleware import AccessLogMiddleware, SecurityHeadersMiddleware
from tickserver.api.router import router as api_router
from tickserver.core.config import Settings, settings
from tickserver.services.tick_service import TickService, iso_utc

logger = logging.getLogger("tick.app")


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def log_handlers(cfg: Settings = settings) -> List[logging.Handler]:
    """Console, plus LOG_DIR/error.log (errors only) and LOG_DIR/combined.log (everything)."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if not cfg.LOG_DIR:
        return handlers

    log_dir = Path(cfg.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    error_file = logging.FileHandler(log_dir / "error.log", encoding="utf-8", delay=True)
    error_file.setLevel(logging.ERROR)
    combined_file = logging.FileHandler(log_dir / "combined.log", encoding="utf-8", delay=True)
    handlers += [error_file, combined_file]

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(cfg: Settings = settings) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    level = getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=log_handlers(cfg))


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(app.state.settings)
    service: TickService = app.state.tick_service
    service.start()

    yield

    service.shutdown()


def create_app(
    tick_service: Optional[TickService] = None,
    cfg: Settings = settings,
) -> FastAPI:
    """Build the app around one TickService; a fresh one is made if none is given."""
    if tick_service is None:
        tick_service = TickService(sink_headers=cfg.sse_headers())

    app = FastAPI(
        title="Tick Server",
        description="Server-sent events service that broadcasts an event every minute",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.tick_service = tick_service

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.CORS_ORIGIN],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Cache-Control"],
    )
    app.add_middleware(AccessLogMiddleware)
    register_error_handlers(app)

    prefix = cfg.API_PREFIX

    @app.get("/", include_in_schema=False)
    async def root():
        """Service metadata and endpoint map."""
        return {
            "name": "Tick Server",
            "description": "Server-sent events service that broadcasts events every minute",
            "version": __version__,
            "endpoints": {
                "health": f"{prefix}/health",
                "stats": f"{prefix}/stats",
                "events": f"{prefix}/events",
                "testTick": f"{prefix}/test-tick (development only)",
            },
            "timestamp": iso_utc(datetime.now(timezone.utc)),
        }

    app.include_router(health_router, prefix=prefix)
    app.include_router(api_router, prefix=prefix)
    return app


app = create_app()
