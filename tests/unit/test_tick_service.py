from datetime import timedelta
import uuid

from tickserver.services.sink import QueueSink
from tickserver.services.tick_service import SchedulerState
from tickserver.services.tick_service import TickEvent
from tickserver.services.tick_service import TickService


def test_subscribe_registers_and_acknowledges(service, make_sink):
    sink = make_sink()
    client_id = service.subscribe("a", sink)

    assert client_id == "a"
    assert service.subscriber_count == 1
    assert sink.status_code == 200
    assert sink.headers["Content-Type"] == "text/event-stream"
    assert sink.headers["Cache-Control"] == "no-cache"
    assert sink.headers["Connection"] == "keep-alive"

    events = sink.events()
    assert len(events) == 1
    assert events[0]["message"] == "Connected to tick server"
    # Live time, not truncated to the minute
    assert events[0]["timestamp"] == "2024-03-01T10:14:45.200Z"


def test_subscribe_adds_configured_headers(clock, make_sink):
    service = TickService(now=clock, sink_headers={"Access-Control-Allow-Origin": "*"})
    sink = make_sink()
    service.subscribe("a", sink)

    assert sink.headers["Access-Control-Allow-Origin"] == "*"
    assert sink.headers["Content-Type"] == "text/event-stream"


def test_blank_client_id_is_replaced(service, make_sink):
    for blank in (None, "", "   "):
        client_id = service.subscribe(blank, make_sink())
        assert uuid.UUID(client_id)
        assert service.get_subscriber(client_id) is not None
    assert service.subscriber_count == 3


def test_reused_id_replaces_previous_entry(service, make_sink):
    first, second = make_sink(), make_sink()
    service.subscribe("a", first)
    service.subscribe("a", second)

    assert service.subscriber_count == 1
    assert service.get_subscriber("a").sink is second
    assert first.closed
    assert not second.closed

    # A late close from the displaced connection must not evict its replacement
    first.close()
    assert service.get_subscriber("a").sink is second


def test_registry_size_tracks_distinct_ids(service, make_sink):
    for client_id in ("a", "b", "c", "b"):
        service.subscribe(client_id, make_sink())
    assert service.subscriber_count == 3

    service.unsubscribe("a")
    service.unsubscribe("never-seen")
    assert service.subscriber_count == 2


def test_unsubscribe_unknown_id_is_noop(service):
    service.unsubscribe("ghost")
    assert service.subscriber_count == 0


def test_unsubscribe_releases_sink_once(service, make_sink):
    sink = make_sink()
    service.subscribe("a", sink)

    service.unsubscribe("a")
    service.unsubscribe("a")

    assert service.subscriber_count == 0
    assert sink.closed
    assert sink.release_calls == 1


def test_sink_closure_removes_subscriber(service, make_sink):
    sink = make_sink()
    service.subscribe("a", sink)

    sink.close()

    assert service.subscriber_count == 0
    assert service.get_subscriber("a") is None


def test_failed_acknowledgment_is_an_implicit_disconnect(service, make_sink):
    sink = make_sink(fail=True)
    service.subscribe("a", sink)

    assert service.subscriber_count == 0
    assert sink.closed


def test_broadcast_without_subscribers_is_noop(service):
    assert service.broadcast(TickEvent.at_minute(service._now())) == 0


def test_broadcast_evicts_failing_subscriber_only(service, make_sink):
    sinks = {name: make_sink() for name in ("a", "b", "c")}
    for name, sink in sinks.items():
        service.subscribe(name, sink)
    sinks["b"].fail = True

    delivered = service.broadcast(TickEvent.at_minute(service._now()))

    assert delivered == 2
    assert service.subscriber_count == 2
    assert service.get_subscriber("b") is None
    assert sinks["b"].closed
    for name in ("a", "c"):
        assert sinks[name].events()[-1]["message"] == "Tick at 10:14:00"


def test_broadcast_uses_snapshot_of_subscribers(service, make_sink):
    late = make_sink()

    def subscribe_late(_frame):
        if service.get_subscriber("late") is None:
            service.subscribe("late", late)

    service.subscribe("a", make_sink())
    service.get_subscriber("a").sink.on_write = subscribe_late

    assert service.broadcast(TickEvent.at_minute(service._now())) == 1
    # Only the connected acknowledgment, not the tick already in flight
    assert [e["message"] for e in late.events()] == ["Connected to tick server"]


def test_successful_send_updates_last_delivery(service, clock, make_sink):
    service.subscribe("a", make_sink())
    later = clock() + timedelta(seconds=30)
    clock.set(later)

    service.tick_now()

    assert service.get_subscriber("a").last_delivery == later


def test_slow_client_is_evicted_on_backpressure(service):
    sink = QueueSink(queue_maxsize=1)
    service.subscribe("slow", sink)  # acknowledgment fills the buffer

    assert service.tick_now() == 0
    assert service.subscriber_count == 0
    assert sink.closed


def test_stats(service, make_sink):
    service.subscribe("a", make_sink())
    stats = service.stats()

    assert stats["subscriberCount"] == 1
    assert stats["uptime"] >= 0


def test_shutdown_is_idempotent(service, make_sink):
    sinks = [make_sink(), make_sink()]
    service.subscribe("a", sinks[0])
    service.subscribe("b", sinks[1])

    service.shutdown()
    service.shutdown()

    assert service.state is SchedulerState.SHUT_DOWN
    assert service.subscriber_count == 0
    assert [s.release_calls for s in sinks] == [1, 1]


def test_subscribe_after_shutdown_closes_sink(service, make_sink):
    service.shutdown()
    sink = make_sink()

    service.subscribe("a", sink)

    assert sink.closed
    assert sink.frames == []
    assert service.subscriber_count == 0


def test_end_to_end_connect_tick_disconnect(service, make_sink):
    sink = make_sink()
    service.subscribe("a", sink)
    assert service.subscriber_count == 1
    assert sink.events()[0]["message"] == "Connected to tick server"

    service.tick_now()
    assert sink.events()[-1]["minute"] == 14

    sink.close()
    assert service.subscriber_count == 0
