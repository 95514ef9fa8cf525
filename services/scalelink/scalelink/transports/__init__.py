from __future__ import annotations

from .base import Transport
from .manual import ManualTransport


def create_transport(kind: str, demo_mode: bool = False, connect_timeout: float = 5.0) -> Transport:
    """Build the adapter for a transport name; demo mode swaps in the simulator."""
    if demo_mode:
        from .demo import DemoTransport
        return DemoTransport()
    if kind == "serial":
        from .serial_port import SerialTransport
        return SerialTransport()
    if kind == "tcp":
        from .tcp import TcpTransport
        return TcpTransport(connect_timeout=connect_timeout)
    if kind == "bluetooth":
        from .bluetooth import BluetoothTransport
        return BluetoothTransport(connect_timeout=connect_timeout)
    raise ValueError(f"Unknown transport {kind!r}")


__all__ = ["ManualTransport", "Transport", "create_transport"]
