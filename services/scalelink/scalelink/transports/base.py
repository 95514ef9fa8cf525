from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from ..errors import TransportError
from ..models import ConnectionConfig, Endpoint

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
ClosedCallback = Callable[[Optional[TransportError]], None]

# Advertised/USB names of the indicator family
DEVICE_NAME_HINTS = ("XR", "Tru-Test", "TruTest", "5000", "ID5000")


def looks_like_indicator(name: Optional[str]) -> bool:
    if not name:
        return False
    lowered = name.lower()
    return any(hint.lower() in lowered for hint in DEVICE_NAME_HINTS) or "scale" in lowered


class Transport(ABC):
    """
    Byte channel to the indicator.

    Lifecycle:
        1. open(config, on_data, on_closed) establishes the channel
        2. send(data) any number of times; inbound chunks arrive via on_data
        3. close() tears it down, safe to call repeatedly

    Every failure is raised as TransportError. on_closed fires at most once,
    and only when the channel drops without close() being called.
    """

    name = "base"

    def __init__(self) -> None:
        self._on_data: Optional[DataCallback] = None
        self._on_closed: Optional[ClosedCallback] = None
        self._closing = False

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    async def list_available(self) -> List[Endpoint]:
        return []

    @abstractmethod
    async def open(
        self,
        config: ConnectionConfig,
        on_data: DataCallback,
        on_closed: ClosedCallback,
    ) -> None:
        ...

    @abstractmethod
    async def send(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def _bind(self, on_data: DataCallback, on_closed: ClosedCallback) -> None:
        self._on_data = on_data
        self._on_closed = on_closed
        self._closing = False

    def _deliver(self, chunk: bytes) -> None:
        if self._on_data is not None and chunk:
            self._on_data(chunk)

    def _dropped(self, error: Optional[TransportError]) -> None:
        callback, self._on_closed = self._on_closed, None
        if self._closing or callback is None:
            return
        logger.warning(f"{self.name} transport dropped: {error}")
        callback(error)
