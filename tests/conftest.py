import json
import os
from datetime import datetime, timezone

# Minimal values for tests
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_DIR", "")

from httpx import ASGITransport
from httpx import AsyncClient
import pytest

from tickserver.api.main import create_app
from tickserver.core.config import Settings
from tickserver.services.sink import EventSink
from tickserver.services.sink import SinkError
from tickserver.services.tick_service import TickService


class FixedClock:
    """Callable clock for TickService; move it with set()."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def set(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


class RecordingSink(EventSink):
    """Sink that keeps every frame in memory and can be told to fail writes."""

    def __init__(self, fail: bool = False, on_write=None):
        super().__init__()
        self.frames = []
        self.fail = fail
        self.on_write = on_write
        self.release_calls = 0

    def write(self, data: str) -> None:
        if self.fail:
            raise SinkError("connection reset by peer")
        self.frames.append(data)
        if self.on_write is not None:
            self.on_write(data)

    def _release(self) -> None:
        self.release_calls += 1

    def events(self) -> list:
        return [json.loads(frame[len("data: ") :]) for frame in self.frames]


START = datetime(2024, 3, 1, 10, 14, 45, 200000, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def service(clock):
    svc = TickService(now=clock)
    yield svc
    svc.shutdown()


@pytest.fixture
def make_sink():
    return RecordingSink


# ---- App bound to the per-test service ----
@pytest.fixture
def settings():
    return Settings(ENVIRONMENT="development")


@pytest.fixture
def app(service, settings):
    return create_app(service, settings)


# ---- HTTP client bound to the ASGI app ----
@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
