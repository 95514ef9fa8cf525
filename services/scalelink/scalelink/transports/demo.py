"""
Simulated XR5000 for demo mode and development without hardware.

Answers SCP commands like the real indicator and, when spoken to in ASCII
mode, streams `W <weight> kg S` lines on its own.
"""
from __future__ import annotations
import asyncio
import logging
import math
import random
import time
from typing import List, Optional

from ..models import ConnectionConfig, Endpoint
from .base import ClosedCallback, DataCallback, Transport

logger = logging.getLogger(__name__)


class DemoTransport(Transport):
    name = "demo"

    def __init__(self, stream_interval: float = 2.0, seed: Optional[int] = None) -> None:
        super().__init__()
        self.stream_interval = stream_interval
        self._rng = random.Random(seed)
        self._open = False
        self._stream_task: Optional[asyncio.Task] = None
        self._acks = False
        self._crlf = False
        self._record = 0
        self._t0 = time.time()

    @property
    def is_open(self) -> bool:
        return self._open

    async def list_available(self) -> List[Endpoint]:
        return [Endpoint(transport="serial", address="demo", name="Simulated XR5000",
                         description="demo mode", matches_device_family=True)]

    async def open(self, config: ConnectionConfig, on_data: DataCallback, on_closed: ClosedCallback) -> None:
        self._bind(on_data, on_closed)
        self._open = True
        if config.protocol == "ascii":
            self._stream_task = asyncio.create_task(self._stream())
        logger.info(f"Demo indicator open ({config.protocol})")

    def _weight(self) -> float:
        # slow drift around 450 kg with a little noise
        t = time.time() - self._t0
        return 450.0 + 40.0 * math.sin(t / 20.0) + self._rng.uniform(-2.0, 2.0)

    def _reply(self, text: str) -> None:
        self._deliver((text + ("\r\n" if self._crlf else "")).encode("ascii"))

    async def _stream(self) -> None:
        while self._open:
            await asyncio.sleep(self.stream_interval)
            stable = self._rng.random() > 0.3
            line = f"W {self._weight():.1f} kg{' S' if stable else ''}\r\n"
            self._deliver(line.encode("ascii"))

    async def send(self, data: bytes) -> None:
        command = data.decode("ascii", errors="ignore").strip().strip("{}").upper()
        await asyncio.sleep(0.01)
        if command == "ZA1":
            self._acks = True
        elif command == "ZA0":
            self._acks = False
        elif command == "ZC1":
            self._crlf = True
        elif command == "ZC0":
            self._crlf = False
        if command.startswith("Z") and self._acks:
            self._reply("^")
        elif command == "VM":
            self._reply("[13]")
        elif command == "ZN":
            self._reply("[3000]")
        elif command == "RW":
            stable = self._rng.random() > 0.3
            self._reply(f"[{'' if stable else 'U'}{self._weight():.1f}]")
        elif command == "FN":
            self._record += 1
            self._reply(f"{self._record},VIS{self._record:03d},"
                        f"982000{self._rng.randint(100000000, 999999999)},{self._weight():.1f}")
        elif not command.startswith("Z"):
            self._reply("(1)")

    async def close(self) -> None:
        self._closing = True
        self._open = False
        if self._stream_task is not None:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None
