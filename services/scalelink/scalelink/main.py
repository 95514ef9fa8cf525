from __future__ import annotations
import asyncio
import logging
import os
import time
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__, api_routes
from .capture import RecordSink, SessionCapture
from .config import load_config, save_config
from .events import EventBus
from .manager import AdiFactory, ConnectionManager, TransportFactory
from .models import Config, Health
from .mqtt_client import MQTTBridge, MQTTClient

logger = logging.getLogger(__name__)


class AppContext:
    def __init__(
        self,
        cfg: Optional[Config] = None,
        transport_factory: Optional[TransportFactory] = None,
        adi_factory: Optional[AdiFactory] = None,
        sink: Optional[RecordSink] = None,
    ) -> None:
        self.started = time.time()
        self.cfg = cfg or load_config()
        self.version = os.getenv("VERSION", __version__)
        self.bus = EventBus()
        self.manager = ConnectionManager(self.cfg, self.bus, transport_factory, adi_factory)
        self.capture = SessionCapture(self.bus, sink, stable_only=self.cfg.capture_stable_only)
        self.mqtt = self._make_mqtt(self.cfg)
        self.bridge = MQTTBridge(self.mqtt, self.bus, self.manager,
                                 self.cfg.reading_topic, self.cfg.status_topic)
        self._auto_task: Optional[asyncio.Task] = None

    @staticmethod
    def _make_mqtt(cfg: Config) -> MQTTClient:
        return MQTTClient(
            host=cfg.mqtt_host,
            port=cfg.mqtt_port,
            username=cfg.mqtt_user,
            password=cfg.mqtt_pass,
            cmd_topic=cfg.cmd_topic,
        )

    def health_info(self) -> Health:
        if not self.cfg.mqtt_host:
            mqtt_state = "disabled"
        else:
            mqtt_state = "connected" if self.mqtt.connected else "disconnected"
        return Health(
            uptime_s=int(time.time() - self.started),
            state=self.manager.status.state,
            mqtt=mqtt_state,
            version=self.version,
        )

    async def update_config(self, new_cfg: Config) -> None:
        """Apply new settings; a live scale link is kept, MQTT is restarted if its settings moved."""
        old_cfg = self.cfg
        self.cfg = new_cfg
        self.manager.update_settings(new_cfg)
        self.capture.stable_only = new_cfg.capture_stable_only

        if (
            old_cfg.mqtt_host != new_cfg.mqtt_host
            or old_cfg.mqtt_port != new_cfg.mqtt_port
            or old_cfg.mqtt_user != new_cfg.mqtt_user
            or old_cfg.mqtt_pass != new_cfg.mqtt_pass
            or old_cfg.reading_topic != new_cfg.reading_topic
            or old_cfg.status_topic != new_cfg.status_topic
            or old_cfg.cmd_topic != new_cfg.cmd_topic
        ):
            await self.bridge.aclose()
            self.mqtt = self._make_mqtt(new_cfg)
            self.bridge = MQTTBridge(self.mqtt, self.bus, self.manager,
                                     new_cfg.reading_topic, new_cfg.status_topic)
            self.bridge.start()

        save_config(self.cfg)

    async def start(self):
        self.bridge.start()
        if self.cfg.auto_connect:
            connection = self.cfg.default_connection()
            logger.info(f"Auto-connecting to {connection.target} ({connection.protocol})")
            self._auto_task = asyncio.create_task(self.manager.connect(connection))

    async def stop(self):
        if self._auto_task and not self._auto_task.done():
            self._auto_task.cancel()
            try:
                await self._auto_task
            except asyncio.CancelledError:
                pass
        await self.manager.disconnect()
        self.capture.stop()
        await self.bridge.aclose()


def create_app(ctx: Optional[AppContext] = None) -> FastAPI:
    ctx = ctx or AppContext()
    app = FastAPI(title="xr5000-scalelink", version=ctx.version)
    app.state.ctx = ctx

    # CORS for local usage
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_routes.create_router(ctx))

    @app.on_event("startup")
    async def _on_start():
        await ctx.start()

    @app.on_event("shutdown")
    async def _on_stop():
        await ctx.stop()

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
