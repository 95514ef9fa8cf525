import datetime as dt

from scalelink.capture import MemoryRecordSink, SessionCapture
from scalelink.events import READING, EventBus
from scalelink.models import ScaleReading


def _reading(weight, stable=True):
    return ScaleReading(weight=weight, stable=stable, timestamp=dt.datetime.now(dt.timezone.utc))


def test_records_only_while_active():
    bus = EventBus()
    sink = MemoryRecordSink()
    capture = SessionCapture(bus, sink)
    bus.publish(READING, _reading(400))
    info = capture.start("Heifers")
    assert info.active and info.name == "Heifers"
    bus.publish(READING, _reading(410))
    bus.publish(READING, _reading(415, stable=False))
    bus.publish(READING, _reading(420))
    info = capture.stop()
    bus.publish(READING, _reading(430))

    assert info.count == 2
    assert [r.sequence for r in sink.records] == [1, 2]
    assert [r.reading.weight for r in sink.records] == [410, 420]
    assert {r.session_id for r in sink.records} == {info.session_id}
    assert bus.subscriber_count(READING) == 0


def test_unstable_readings_kept_when_asked():
    bus = EventBus()
    capture = SessionCapture(bus, stable_only=False)
    capture.start()
    bus.publish(READING, _reading(415, stable=False))
    assert capture.info().count == 1
    assert capture.info().name.startswith("Session ")


def test_restart_begins_a_new_session():
    bus = EventBus()
    capture = SessionCapture(bus)
    first = capture.start("a")
    second = capture.start("b")
    assert first.session_id != second.session_id
    assert bus.subscriber_count(READING) == 1


def test_memory_sink_limit():
    sink = MemoryRecordSink(limit=2)
    capture = SessionCapture(EventBus(), sink)
    capture.start()
    for w in (1, 2, 3):
        capture._on_reading(_reading(w))
    assert [r.reading.weight for r in sink.records] == [2, 3]


def test_reading_outside_a_session_is_ignored():
    sink = MemoryRecordSink()
    capture = SessionCapture(EventBus(), sink)
    capture._on_reading(_reading(400))
    assert sink.records == []
    assert capture.info().count == 0
