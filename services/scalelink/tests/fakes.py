from __future__ import annotations
import asyncio
from typing import Dict, List, Optional

from scalelink.errors import TransportError, TransportErrorKind
from scalelink.models import Config, ConnectionConfig, Endpoint
from scalelink.transports.base import Transport


class FakeTransport(Transport):
    """Scripted indicator: each command sent gets the listed replies back."""

    name = "fake"

    def __init__(
        self,
        replies: Optional[Dict[bytes, List[str]]] = None,
        open_error: Optional[TransportError] = None,
        push_after_open: Optional[str] = None,
        push_delay: float = 0.1,
    ) -> None:
        super().__init__()
        self.replies = replies or {}
        self.open_error = open_error
        self.push_after_open = push_after_open
        self.push_delay = push_delay
        self.sent: List[bytes] = []
        self.closed = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def list_available(self) -> List[Endpoint]:
        return [Endpoint(transport="serial", address="/dev/ttyFAKE", name="Fake XR5000",
                         matches_device_family=True)]

    async def open(self, config: ConnectionConfig, on_data, on_closed) -> None:
        if self.open_error is not None:
            raise self.open_error
        self._bind(on_data, on_closed)
        self._open = True
        if self.push_after_open:
            asyncio.get_running_loop().call_later(self.push_delay, self.push, self.push_after_open)

    def push(self, text: str) -> None:
        if self._open:
            self._deliver(text.encode("ascii"))

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "fake not open")
        self.sent.append(data)
        loop = asyncio.get_running_loop()
        for text in self.replies.get(data, []):
            loop.call_soon(self.push, text)

    async def close(self) -> None:
        self._closing = True
        self._open = False
        self.closed += 1

    def drop(self, error: Optional[TransportError] = None) -> None:
        self._open = False
        self._dropped(error)


class FakeFactory:
    """transport_factory that hands out prepared transports and counts calls."""

    def __init__(self, *transports: Transport) -> None:
        self.transports = list(transports)
        self.calls: List[str] = []

    def __call__(self, kind: str) -> Transport:
        self.calls.append(kind)
        if len(self.transports) > 1:
            return self.transports.pop(0)
        return self.transports[0]


def fast_settings(**overrides) -> Config:
    values = dict(
        connect_timeout_s=0.5,
        poll_interval_s=0.05,
        passive_wait_s=0.2,
        liveness_timeout_s=60.0,
        active_window_s=30.0,
    )
    values.update(overrides)
    return Config(**values)


SCP_REPLIES = {
    b"{ZA1}": ["^\r\n"],
    b"{VM}": ["[13]\r\n"],
    b"{RW}": ["[450.5]\r\n"],
}

SERIAL_SCP = ConnectionConfig(transport="serial", protocol="scp", serial_port="/dev/ttyFAKE")
SERIAL_ASCII = ConnectionConfig(transport="serial", protocol="ascii", serial_port="/dev/ttyFAKE")
