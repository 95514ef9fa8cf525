"""
Raw TCP channel to the indicator (USB-as-Ethernet or Wi-Fi), used when SCP or
ASCII is spoken over a socket. ADI goes through AdiClient instead.
"""
from __future__ import annotations
import asyncio
import errno
import logging
import socket
from typing import List, Optional

from ..errors import TransportError, TransportErrorKind
from ..models import ConnectionConfig, Endpoint
from .base import ClosedCallback, DataCallback, Transport

logger = logging.getLogger(__name__)

KNOWN_ADDRESSES = [
    ("192.168.7.1", 9000, "XR5000 USB-Ethernet"),
    ("192.168.8.1", 9000, "XR5000 Wi-Fi"),
]

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EHOSTDOWN, errno.ENETDOWN}


def map_os_error(exc: OSError, where: str) -> TransportError:
    if isinstance(exc, ConnectionRefusedError):
        return TransportError(TransportErrorKind.REFUSED, f"Connection refused by {where}")
    if isinstance(exc, PermissionError):
        return TransportError(TransportErrorKind.PERMISSION_DENIED, f"Not allowed to reach {where}")
    if isinstance(exc, socket.gaierror) or exc.errno in _UNREACHABLE_ERRNOS:
        return TransportError(TransportErrorKind.UNREACHABLE, f"{where} unreachable: {exc}")
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return TransportError(TransportErrorKind.TIMEOUT, f"Timed out reaching {where}")
    return TransportError(TransportErrorKind.UNREACHABLE, f"{where}: {exc}")


class TcpTransport(Transport):
    name = "tcp"

    def __init__(self, connect_timeout: float = 5.0, read_size: int = 1024) -> None:
        super().__init__()
        self.connect_timeout = connect_timeout
        self.read_size = read_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._where = ""

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def list_available(self) -> List[Endpoint]:
        # Nothing to enumerate on a socket; offer the addresses the indicator uses
        return [
            Endpoint(transport="tcp", address=f"{host}:{port}", name=name,
                     description="default indicator address", matches_device_family=True)
            for host, port, name in KNOWN_ADDRESSES
        ]

    async def open(self, config: ConnectionConfig, on_data: DataCallback, on_closed: ClosedCallback) -> None:
        self._where = f"{config.host}:{config.port}"
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(config.host, config.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(TransportErrorKind.TIMEOUT, f"Timed out connecting to {self._where}")
        except OSError as exc:
            raise map_os_error(exc, self._where) from exc
        self._bind(on_data, on_closed)
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info(f"TCP connected to {self._where}")

    async def _read_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        error: Optional[TransportError] = None
        try:
            while True:
                chunk = await reader.read(self.read_size)
                if not chunk:
                    break
                self._deliver(chunk)
        except asyncio.CancelledError:
            raise
        except OSError as exc:
            error = map_os_error(exc, self._where)
        self._dropped(error or TransportError(
            TransportErrorKind.UNREACHABLE, f"{self._where} closed the connection"))

    async def send(self, data: bytes) -> None:
        writer = self._writer
        if not self.is_open or writer is None:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "TCP not connected")
        try:
            writer.write(data)
            await writer.drain()
        except OSError as exc:
            raise map_os_error(exc, self._where) from exc

    async def close(self) -> None:
        self._closing = True
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self._writer is not None:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except OSError as exc:
                logger.debug(f"TCP close error (ignored): {exc}")
            finally:
                self._writer = None
                self._reader = None
