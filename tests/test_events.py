from events import Event, EventBus
from ratelimit import Throttle


def test_drain_dispatches_to_subscriber():
    seen = []
    bus = EventBus()
    bus.subscribe("ping", seen.append)

    assert bus.send([Event("ping", {"n": 1}), Event("ping", {"n": 2})]) == 2
    assert bus.drain() == 2
    assert seen == [{"n": 1}, {"n": 2}]
    assert bus.pending() == 0


def test_unhandled_events_are_dropped():
    bus = EventBus()
    bus.send(Event("nobody.listens", {}))
    assert bus.drain() == 0
    assert bus.pending() == 0


def test_failing_handler_is_retried_with_backoff():
    sleeps = []
    calls = []

    def flaky(data):
        calls.append(data)
        if len(calls) < 3:
            raise RuntimeError("temporary")

    bus = EventBus(max_attempts=3, sleep=sleeps.append)
    bus.subscribe("job", flaky)
    bus.send(Event("job", {"id": 1}))

    assert bus.drain() == 1
    assert len(calls) == 3
    assert sleeps == [2, 4]
    assert bus.dead_letters == []


def test_exhausted_retries_go_to_dead_letters_and_queue_continues():
    done = []

    def handler(data):
        if data["id"] == 1:
            raise ValueError("broken")
        done.append(data["id"])

    bus = EventBus(max_attempts=3, sleep=lambda _secs: None)
    bus.subscribe("job", handler)
    bus.send([Event("job", {"id": 1}), Event("job", {"id": 2})])

    bus.drain()

    assert done == [2]
    assert len(bus.dead_letters) == 1
    letter = bus.dead_letters[0]
    assert letter.event.data == {"id": 1}
    assert letter.attempts == 3
    assert "broken" in letter.error


def test_throttled_events_wait_for_the_next_window():
    clock = [0.0]
    handled = []
    bus = EventBus()
    bus.subscribe(
        "work",
        handled.append,
        throttle=Throttle(2, 60, clock=lambda: clock[0]),
        key=lambda data: data["userId"],
    )
    bus.send(
        [
            Event("work", {"userId": 1, "n": 1}),
            Event("work", {"userId": 1, "n": 2}),
            Event("work", {"userId": 1, "n": 3}),
            Event("work", {"userId": 2, "n": 4}),
        ]
    )

    assert bus.drain() == 3
    assert [item["n"] for item in handled] == [1, 2, 4]
    assert bus.pending() == 1

    assert bus.drain() == 0
    clock[0] = 61.0
    assert bus.drain() == 1
    assert handled[-1]["n"] == 3
