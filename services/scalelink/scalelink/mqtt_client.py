from __future__ import annotations
import asyncio
import json
import logging
import threading
import time
from typing import Callable, List, Optional

import paho.mqtt.client as mqtt
from pydantic import ValidationError

from .events import READING, STATUS_CHANGED, EventBus, Subscription
from .models import ConnectionConfig, ConnectionStatus, ScaleReading

logger = logging.getLogger(__name__)


class MQTTClient:
    def __init__(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        client_id: str = "scalelink",
        on_cmd: Optional[Callable[[dict], None]] = None,
        cmd_topic: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
        self._client.enable_logger(logger)
        if username and password:
            self._client.username_pw_set(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self.on_cmd = on_cmd
        self._cmd_topic = cmd_topic
        self._connected = False
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def _on_connect(self, client, userdata, flags, reason_code, properties):  # type: ignore
        self._connected = not reason_code.is_failure
        if self._connected:
            logger.info(f"MQTT connected to {self.host}:{self.port}")
            if self._cmd_topic:
                client.subscribe(self._cmd_topic, qos=1)
        else:
            logger.warning(f"MQTT connect refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):  # type: ignore
        self._connected = False
        logger.info(f"MQTT disconnected: {reason_code}")

    def _on_message(self, client, userdata, msg):  # type: ignore
        if not self.on_cmd:
            return
        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Ignoring non-JSON command on {msg.topic}: {e}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"Ignoring command on {msg.topic}: expected an object")
            return
        self.on_cmd(payload)

    def start(self) -> None:
        if not self.host:
            return

        def loop():
            backoff = 1
            while not self._stop.is_set():
                try:
                    self._client.connect(self.host, self.port, keepalive=30)
                    self._client.loop_forever(retry_first_connection=True)
                except OSError as e:
                    self._connected = False
                    logger.warning(f"MQTT broker {self.host}:{self.port} unavailable: {e}, retry in {backoff}s")
                    time.sleep(backoff)
                    backoff = min(30, backoff * 2)
        self._thread = threading.Thread(target=loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self.host:
            self._client.disconnect()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)

    def publish(self, topic: str, payload: dict, qos: int = 0, retain: bool = False) -> None:
        if not self.host:
            return
        info = self._client.publish(topic, json.dumps(payload, default=str), qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"MQTT publish to {topic} not queued (rc={info.rc})")

    @property
    def connected(self) -> bool:
        return self._connected


class MQTTBridge:
    """
    Mirrors the event bus onto MQTT: readings to reading_topic, status
    (retained) to status_topic. Commands on cmd_topic arrive on the paho
    thread and are handed to the event loop:

        {"action": "connect", "config": {...ConnectionConfig}}
        {"action": "disconnect"}
    """

    def __init__(
        self,
        client: MQTTClient,
        bus: EventBus,
        manager,
        reading_topic: str,
        status_topic: str,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.client = client
        self.bus = bus
        self.manager = manager
        self.reading_topic = reading_topic
        self.status_topic = status_topic
        self.loop = loop
        self._subs: List[Subscription] = []
        client.on_cmd = self.handle_command

    def start(self) -> None:
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        self._subs = [
            self.bus.subscribe(READING, self._publish_reading),
            self.bus.subscribe(STATUS_CHANGED, self._publish_status),
        ]
        self.client.start()

    def detach(self) -> None:
        for sub in self._subs:
            sub.unsubscribe()
        self._subs = []

    async def aclose(self) -> None:
        """Unsubscribe on the loop, then join paho's network thread in a worker."""
        self.detach()
        await asyncio.to_thread(self.client.stop)

    def _publish_reading(self, reading: ScaleReading) -> None:
        self.client.publish(self.reading_topic, reading.model_dump(mode="json"), qos=1)

    def _publish_status(self, status: ConnectionStatus) -> None:
        self.client.publish(self.status_topic, status.model_dump(mode="json"), qos=1, retain=True)

    def handle_command(self, payload: dict) -> None:
        action = payload.get("action")
        if self.loop is None:
            logger.warning(f"MQTT command {action!r} before start, dropped")
            return
        if action == "connect":
            try:
                config = ConnectionConfig(**(payload.get("config") or {}))
            except ValidationError as e:
                logger.warning(f"Invalid connect command: {e}")
                return
            asyncio.run_coroutine_threadsafe(self.manager.connect(config), self.loop)
        elif action == "disconnect":
            asyncio.run_coroutine_threadsafe(self.manager.disconnect(), self.loop)
        else:
            logger.warning(f"Unknown MQTT command {action!r}")
