import asyncio
import datetime as dt
import threading

from scalelink.events import READING, STATUS_CHANGED, EventBus
from scalelink.models import ConnectionStatus, ScaleReading
from scalelink.mqtt_client import MQTTBridge


class FakeClient:
    def __init__(self):
        self.on_cmd = None
        self.published = []
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, retain))


class FakeManager:
    def __init__(self):
        self.calls = []

    async def connect(self, config):
        self.calls.append(("connect", config))
        return True

    async def disconnect(self):
        self.calls.append(("disconnect", None))


def test_bridge_publishes_bus_events():
    client = FakeClient()
    bus = EventBus()
    bridge = MQTTBridge(client, bus, FakeManager(), "scale/reading", "scale/status")

    async def run():
        bridge.start()
        bus.publish(READING, ScaleReading(weight=450.5, stable=True, timestamp=dt.datetime.now(dt.timezone.utc)))
        bus.publish(STATUS_CHANGED, ConnectionStatus(connected=True, state="connected"))
        await bridge.aclose()
        bus.publish(READING, ScaleReading(weight=460.0, timestamp=dt.datetime.now(dt.timezone.utc)))

    asyncio.run(run())
    assert client.started and client.stopped
    assert client.on_cmd == bridge.handle_command
    topics = [(t, retain) for t, _, retain in client.published]
    assert topics == [("scale/reading", False), ("scale/status", True)]
    assert client.published[0][1]["weight"] == 450.5


def test_bridge_commands_run_on_the_loop():
    manager = FakeManager()
    bridge = MQTTBridge(FakeClient(), EventBus(), manager, "r", "s")

    async def run():
        bridge.start()
        bridge.handle_command({"action": "connect", "config": {"transport": "serial", "protocol": "scp"}})
        bridge.handle_command({"action": "connect", "config": {"transport": "serial", "protocol": "adi"}})
        bridge.handle_command({"action": "reboot"})
        bridge.handle_command({"action": "disconnect"})
        await asyncio.sleep(0.05)

    asyncio.run(run())
    assert [c[0] for c in manager.calls] == ["connect", "disconnect"]
    assert manager.calls[0][1].protocol == "scp"


def test_bridge_drops_commands_before_start():
    manager = FakeManager()
    bridge = MQTTBridge(FakeClient(), EventBus(), manager, "r", "s")
    bridge.handle_command({"action": "disconnect"})
    assert manager.calls == []


class ThreadRecordingBus(EventBus):
    def __init__(self):
        super().__init__()
        self.unsubscribed_on = []

    def unsubscribe(self, sub):
        self.unsubscribed_on.append(threading.current_thread())
        super().unsubscribe(sub)


class ThreadRecordingClient(FakeClient):
    def stop(self):
        self.stopped_on = threading.current_thread()
        super().stop()


def test_bridge_close_unsubscribes_on_the_loop_thread():
    bus = ThreadRecordingBus()
    client = ThreadRecordingClient()
    bridge = MQTTBridge(client, bus, FakeManager(), "r", "s")

    async def run():
        bridge.start()
        await bridge.aclose()

    asyncio.run(run())
    main = threading.main_thread()
    assert bus.unsubscribed_on == [main, main]
    assert client.stopped_on is not main
    assert bus.subscriber_count(READING) == 0
