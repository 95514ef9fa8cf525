"""
Bluetooth LE link through a UART-style GATT service.

The indicator (or its Bluetooth bridge) exposes a serial-over-GATT service;
replies arrive as notifications and commands go out as characteristic writes.
"""
from __future__ import annotations
import asyncio
import logging
from typing import List, Optional, Tuple

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from ..errors import TransportError, TransportErrorKind
from ..models import ConnectionConfig, Endpoint
from .base import ClosedCallback, DataCallback, Transport, looks_like_indicator

logger = logging.getLogger(__name__)

NAME_PREFIXES = ("XR", "Tru-Test", "ID5000", "SR3000")

HM10_SERVICE = "0000ffe0-0000-1000-8000-00805f9b34fb"
HM10_CHAR = "0000ffe1-0000-1000-8000-00805f9b34fb"
NUS_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # host -> device
NUS_TX = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # device -> host

# (service, notify characteristic, write characteristic)
CANDIDATE_SERVICES: List[Tuple[str, str, str]] = [
    (HM10_SERVICE, HM10_CHAR, HM10_CHAR),
    (NUS_SERVICE, NUS_TX, NUS_RX),
]


def name_matches(name: Optional[str]) -> bool:
    if not name:
        return False
    return name.startswith(NAME_PREFIXES) or looks_like_indicator(name)


class BluetoothTransport(Transport):
    name = "bluetooth"

    def __init__(self, scan_timeout: float = 5.0, connect_timeout: float = 10.0) -> None:
        super().__init__()
        self.scan_timeout = scan_timeout
        self.connect_timeout = connect_timeout
        self._client: Optional[BleakClient] = None
        self._notify_char: Optional[BleakGATTCharacteristic] = None
        self._write_char: Optional[BleakGATTCharacteristic] = None

    @property
    def is_open(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def list_available(self) -> List[Endpoint]:
        try:
            devices = await BleakScanner.discover(timeout=self.scan_timeout)
        except (BleakError, OSError) as exc:
            raise TransportError(TransportErrorKind.UNAVAILABLE, f"Bluetooth scan failed: {exc}") from exc
        return [
            Endpoint(transport="bluetooth", address=d.address, name=d.name or "",
                     description="Bluetooth LE", matches_device_family=True)
            for d in devices
            if name_matches(d.name)
        ]

    async def _find_device(self, config: ConnectionConfig) -> BLEDevice:
        if config.bluetooth_address:
            device = await BleakScanner.find_device_by_address(
                config.bluetooth_address, timeout=self.scan_timeout)
        else:
            wanted = config.bluetooth_name

            def _match(d: BLEDevice, _adv) -> bool:
                if wanted:
                    return d.name == wanted
                return name_matches(d.name)

            device = await BleakScanner.find_device_by_filter(_match, timeout=self.scan_timeout)
        if device is None:
            raise TransportError(
                TransportErrorKind.UNREACHABLE,
                f"No indicator found over Bluetooth ({config.target})",
            )
        return device

    def _resolve(self, client: BleakClient, config: ConnectionConfig) -> BleakGATTCharacteristic:
        """Pick the notify and write characteristics; returns the notify one."""
        services = client.services
        if config.characteristic_uuid:
            char = services.get_characteristic(config.characteristic_uuid)
            if char is None:
                raise TransportError(TransportErrorKind.UNAVAILABLE,
                                     f"Characteristic {config.characteristic_uuid} not found")
            self._notify_char = self._write_char = char
            return char
        candidates = CANDIDATE_SERVICES
        if config.service_uuid:
            candidates = [c for c in CANDIDATE_SERVICES if c[0] == config.service_uuid.lower()] or [
                (config.service_uuid, "", "")]
        for service_uuid, notify_uuid, write_uuid in candidates:
            service = services.get_service(service_uuid)
            if service is None:
                continue
            notify = service.get_characteristic(notify_uuid) if notify_uuid else None
            write = service.get_characteristic(write_uuid) if write_uuid else None
            if notify is None or write is None:
                # unknown layout: first notifying and first writable characteristic
                for char in service.characteristics:
                    if notify is None and "notify" in char.properties:
                        notify = char
                    if write is None and ({"write", "write-without-response"} & set(char.properties)):
                        write = char
            if notify is not None and write is not None:
                self._notify_char, self._write_char = notify, write
                logger.info(f"Using GATT service {service_uuid}")
                return notify
        raise TransportError(TransportErrorKind.UNAVAILABLE, "No UART-style GATT service on device")

    async def open(self, config: ConnectionConfig, on_data: DataCallback, on_closed: ClosedCallback) -> None:
        try:
            device = await self._find_device(config)
            client = BleakClient(device, disconnected_callback=self._on_disconnect,
                                 timeout=self.connect_timeout)
            await client.connect()
        except asyncio.TimeoutError as exc:
            raise TransportError(TransportErrorKind.TIMEOUT, "Bluetooth connect timed out") from exc
        except BleakError as exc:
            raise TransportError(TransportErrorKind.UNAVAILABLE, f"Bluetooth error: {exc}") from exc
        except PermissionError as exc:
            raise TransportError(TransportErrorKind.PERMISSION_DENIED, str(exc)) from exc
        except OSError as exc:
            # no adapter, or BlueZ/D-Bus not running
            raise TransportError(TransportErrorKind.UNAVAILABLE, f"Bluetooth unavailable: {exc}") from exc
        self._client = client
        self._bind(on_data, on_closed)
        try:
            notify = self._resolve(client, config)
            await client.start_notify(notify, self._on_notify)
        except (BleakError, OSError) as exc:
            await self.close()
            raise TransportError(TransportErrorKind.UNAVAILABLE, f"GATT setup failed: {exc}") from exc
        except TransportError:
            await self.close()
            raise
        logger.info(f"Bluetooth connected to {device.name} ({device.address})")

    def _on_notify(self, _sender: BleakGATTCharacteristic, data: bytearray) -> None:
        self._deliver(bytes(data))

    def _on_disconnect(self, _client: BleakClient) -> None:
        self._dropped(TransportError(TransportErrorKind.UNREACHABLE, "Bluetooth link lost"))

    async def send(self, data: bytes) -> None:
        client, char = self._client, self._write_char
        if client is None or char is None or not client.is_connected:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "Bluetooth not connected")
        response = "write" in char.properties
        try:
            await client.write_gatt_char(char, data, response=response)
        except (BleakError, OSError) as exc:
            raise TransportError(TransportErrorKind.UNREACHABLE, f"Bluetooth write failed: {exc}") from exc

    async def close(self) -> None:
        self._closing = True
        client, self._client = self._client, None
        self._notify_char = self._write_char = None
        if client is None:
            return
        try:
            await client.disconnect()
        except (BleakError, OSError, asyncio.TimeoutError) as exc:
            logger.debug(f"Bluetooth disconnect error (ignored): {exc}")
