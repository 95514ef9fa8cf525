from __future__ import annotations
import logging
from typing import List

from ..errors import TransportError, TransportErrorKind
from ..models import ConnectionConfig, Endpoint
from .base import ClosedCallback, DataCallback, Transport

logger = logging.getLogger(__name__)


class ManualTransport(Transport):
    """
    Paste/keyboard input path used when no serial capability exists on this
    host. Text posted by the operator is treated as if the indicator sent it.
    """

    name = "manual"

    def __init__(self) -> None:
        super().__init__()
        self._open = False
        self.sent: List[bytes] = []

    @property
    def is_open(self) -> bool:
        return self._open

    async def list_available(self) -> List[Endpoint]:
        return [Endpoint(transport="serial", address="manual", name="Manual input",
                         description="paste indicator output")]

    async def open(self, config: ConnectionConfig, on_data: DataCallback, on_closed: ClosedCallback) -> None:
        self._bind(on_data, on_closed)
        self._open = True
        logger.info("Manual input path active")

    def feed(self, text: str) -> None:
        if not self._open:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "manual input not active")
        if not text.endswith(("\n", "\r")):
            text += "\n"
        self._deliver(text.encode("utf-8"))

    async def send(self, data: bytes) -> None:
        # There is no device on the other end; keep it for the operator to see
        logger.info(f"Manual mode, command not delivered: {data!r}")
        self.sent.append(data)

    async def close(self) -> None:
        self._closing = True
        self._open = False
