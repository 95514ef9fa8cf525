"""
Legacy USB / RS-232 link to the indicator through pyserial.

pyserial is blocking, so reads run in a worker thread via asyncio.to_thread
with a short timeout; decoded chunks are handed back on the event loop.
"""
from __future__ import annotations
import asyncio
import errno
import logging
from typing import List, Optional

import serial  # type: ignore
from serial.tools import list_ports  # type: ignore

from ..errors import TransportError, TransportErrorKind
from ..models import ConnectionConfig, Endpoint
from .base import ClosedCallback, DataCallback, Transport, looks_like_indicator

logger = logging.getLogger(__name__)

PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
}

STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

BYTESIZE_MAP = {
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


def map_serial_error(exc: Exception, port: str) -> TransportError:
    code = getattr(exc, "errno", None)
    if isinstance(exc, PermissionError) or code in (errno.EACCES, errno.EPERM):
        return TransportError(TransportErrorKind.PERMISSION_DENIED, f"Permission denied on {port}")
    if code in (errno.ENOENT, errno.ENODEV, errno.ENXIO):
        return TransportError(TransportErrorKind.UNAVAILABLE, f"Serial port {port} not present")
    if code == errno.EBUSY:
        return TransportError(TransportErrorKind.REFUSED, f"Serial port {port} is busy")
    return TransportError(TransportErrorKind.UNAVAILABLE, f"Serial port {port}: {exc}")


class SerialTransport(Transport):
    name = "serial"

    def __init__(self, read_timeout: float = 0.1) -> None:
        super().__init__()
        self.read_timeout = read_timeout
        self._ser: Optional[serial.Serial] = None
        self._read_task: Optional[asyncio.Task] = None
        self._port = ""

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    async def list_available(self) -> List[Endpoint]:
        items = []
        for p in list_ports.comports():
            desc = " ".join(filter(None, [getattr(p, "description", ""), getattr(p, "manufacturer", "")]))
            items.append(Endpoint(
                transport="serial",
                address=p.device,
                name=getattr(p, "product", None) or p.device,
                description=desc,
                matches_device_family=looks_like_indicator(desc),
            ))
        # likely indicators first
        items.sort(key=lambda e: not e.matches_device_family)
        return items

    async def open(self, config: ConnectionConfig, on_data: DataCallback, on_closed: ClosedCallback) -> None:
        if not config.serial_port:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "serial port not configured")
        self._port = config.serial_port
        try:
            self._ser = await asyncio.to_thread(
                serial.Serial,
                port=config.serial_port,
                baudrate=config.baudrate,
                bytesize=BYTESIZE_MAP.get(int(config.databits), serial.EIGHTBITS),
                parity=PARITY_MAP.get(config.parity.upper(), serial.PARITY_NONE),
                stopbits=STOPBITS_MAP.get(int(config.stopbits), serial.STOPBITS_ONE),
                timeout=self.read_timeout,
                write_timeout=1.0,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            self._ser = None
            raise map_serial_error(exc, config.serial_port) from exc
        self._bind(on_data, on_closed)
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info(f"Serial port {self._port} open @ {config.baudrate} baud")

    def _read_some(self) -> bytes:
        ser = self._ser
        if ser is None:
            return b""
        waiting = ser.in_waiting
        return ser.read(waiting or 1)

    async def _read_loop(self) -> None:
        error: Optional[TransportError] = None
        try:
            while self.is_open:
                chunk = await asyncio.to_thread(self._read_some)
                self._deliver(chunk)
        except asyncio.CancelledError:
            raise
        except (serial.SerialException, OSError) as exc:
            error = TransportError(TransportErrorKind.UNREACHABLE, f"Serial port {self._port} lost: {exc}")
        self._dropped(error)

    async def send(self, data: bytes) -> None:
        ser = self._ser
        if not self.is_open or ser is None:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "serial port not open")
        try:
            await asyncio.to_thread(ser.write, data)
        except serial.SerialTimeoutException as exc:
            raise TransportError(TransportErrorKind.TIMEOUT, f"Write timeout on {self._port}") from exc
        except (serial.SerialException, OSError) as exc:
            raise map_serial_error(exc, self._port) from exc

    async def close(self) -> None:
        self._closing = True
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        ser, self._ser = self._ser, None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError) as exc:
                logger.debug(f"Serial close error (ignored): {exc}")
