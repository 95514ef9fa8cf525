import asyncio

import pytest

from scalelink.events import READING, STATUS_CHANGED, EventBus


def test_subscribers_see_events_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe(READING, lambda p: seen.append(("a", p)))
    bus.subscribe(READING, lambda p: seen.append(("b", p)))
    bus.publish(READING, 1)
    bus.publish(READING, 2)
    assert seen == [("a", 1), ("b", 1), ("a", 2), ("b", 2)]


def test_failing_subscriber_does_not_affect_others(caplog):
    bus = EventBus()
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    bus.subscribe(STATUS_CHANGED, broken)
    bus.subscribe(STATUS_CHANGED, seen.append)
    bus.publish(STATUS_CHANGED, "connected")
    assert seen == ["connected"]
    assert "failed on status_changed" in caplog.text


def test_unsubscribe_and_no_replay():
    bus = EventBus()
    seen = []
    bus.publish(READING, "early")
    sub = bus.subscribe(READING, seen.append)
    bus.publish(READING, "on time")
    sub.unsubscribe()
    bus.publish(READING, "late")
    assert seen == ["on time"]
    assert bus.subscriber_count(READING) == 0


def test_unknown_kind():
    with pytest.raises(ValueError):
        EventBus().subscribe("weight", print)


def test_stream_filters_kinds():
    async def run():
        bus = EventBus()
        got = []

        async def consume():
            async for kind, payload in bus.stream(READING):
                got.append((kind, payload))
                if len(got) == 2:
                    break

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        bus.publish(READING, 1)
        bus.publish(STATUS_CHANGED, "x")
        bus.publish(READING, 2)
        await asyncio.wait_for(task, 1.0)
        return got

    assert asyncio.run(run()) == [(READING, 1), (READING, 2)]
