from tickserver.services.sink import (
    EventSink,
    QueueSink,
    SinkBackpressureError,
    SinkClosedError,
    SinkError,
)
from tickserver.services.tick_service import (
    SchedulerState,
    Subscriber,
    TickEvent,
    TickService,
    ms_until_next_minute,
    process_uptime,
)

__all__ = [
    "EventSink",
    "QueueSink",
    "SchedulerState",
    "SinkBackpressureError",
    "SinkClosedError",
    "SinkError",
    "Subscriber",
    "TickEvent",
    "TickService",
    "ms_until_next_minute",
    "process_uptime",
]
