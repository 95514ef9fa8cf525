from __future__ import annotations
import datetime as dt
import math
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .codecs.scp import format_command

Transport = Literal["serial", "tcp", "bluetooth"]
Protocol = Literal["adi", "scp", "ascii"]
State = Literal["idle", "connecting", "connected", "stale", "error"]

DEFAULT_HOST = "192.168.7.1"  # USB-Ethernet address of the indicator
DEFAULT_PORT = 9000


class ScaleReading(BaseModel):
    weight: float = Field(description="kilograms, positive and finite")
    visual_id: Optional[str] = None
    electronic_id: Optional[str] = None
    stable: bool = False
    timestamp: dt.datetime
    source_raw: str = ""

    @field_validator("weight")
    @classmethod
    def _positive_weight(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("weight must be positive and finite")
        return v

    @property
    def animal_key(self) -> Optional[str]:
        return self.visual_id or self.electronic_id


class ConnectionConfig(BaseModel):
    transport: Transport = "tcp"
    protocol: Protocol = "adi"

    # tcp
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    # serial
    serial_port: Optional[str] = None  # e.g. /dev/ttyUSB0, COM3
    baudrate: int = 9600
    databits: int = 8   # 7 or 8
    parity: str = "N"   # N, E, O
    stopbits: int = 1   # 1 or 2

    # bluetooth
    bluetooth_name: Optional[str] = None
    bluetooth_address: Optional[str] = None
    service_uuid: Optional[str] = None
    characteristic_uuid: Optional[str] = None

    @model_validator(mode="after")
    def _check_compatible(self) -> "ConnectionConfig":
        if self.protocol == "adi" and self.transport != "tcp":
            raise ValueError("ADI protocol requires the tcp transport")
        if self.transport == "tcp" and not self.host:
            raise ValueError("tcp transport requires a host")
        if not 0 < self.port < 65536:
            raise ValueError(f"invalid TCP port {self.port}")
        return self

    @property
    def target(self) -> str:
        if self.transport == "tcp":
            return f"{self.host}:{self.port}"
        if self.transport == "serial":
            return self.serial_port or "?"
        return self.bluetooth_address or self.bluetooth_name or "?"


class ConnectionStatus(BaseModel):
    connected: bool = False
    state: State = "idle"
    transport: Optional[Transport] = None
    protocol: Optional[Protocol] = None
    target: Optional[str] = None
    input_mode: Literal["device", "manual"] = "device"
    last_response_raw: Optional[str] = None
    error: Optional[str] = None
    details: Optional[str] = None
    actionable: bool = False
    last_reading_at: Optional[dt.datetime] = None


class Endpoint(BaseModel):
    transport: Transport
    address: str
    name: str = ""
    description: str = ""
    matches_device_family: bool = False


class CapturedRecord(BaseModel):
    session_id: str
    sequence: int
    reading: ScaleReading


class SessionInfo(BaseModel):
    active: bool
    session_id: Optional[str] = None
    name: Optional[str] = None
    started_at: Optional[dt.datetime] = None
    count: int = 0


class Health(BaseModel):
    uptime_s: int
    state: State
    mqtt: str
    version: str


class Config(BaseModel):
    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_user: Optional[str] = None
    mqtt_pass: Optional[str] = None
    reading_topic: str = "scale/reading"
    status_topic: str = "scale/status"
    cmd_topic: str = "scale/cmd"

    # Default connection offered to the UI and used by auto_connect
    transport: Transport = "tcp"
    protocol: Protocol = "adi"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    serial_port: Optional[str] = None
    baudrate: int = 9600
    bluetooth_name: Optional[str] = None
    service_uuid: Optional[str] = None
    characteristic_uuid: Optional[str] = None

    # Timings (seconds)
    connect_timeout_s: float = 8.0
    poll_interval_s: float = 2.0
    liveness_timeout_s: float = 300.0
    active_window_s: float = 30.0
    passive_wait_s: float = 5.0

    # Reading normalizer
    dedupe_window_s: float = 2.0
    dedupe_tolerance_kg: float = 0.5
    max_weight_kg: float = 10000.0
    require_id: bool = False

    scp_poll_command: str = "RW"
    manual_fallback: bool = True
    demo_mode: bool = False
    auto_connect: bool = False
    capture_stable_only: bool = True

    @field_validator("scp_poll_command")
    @classmethod
    def _valid_poll_command(cls, v: str) -> str:
        # empty turns SCP polling off
        if v.strip():
            format_command(v)
        return v.strip()

    def default_connection(self) -> ConnectionConfig:
        return ConnectionConfig(
            transport=self.transport,
            protocol=self.protocol,
            host=self.host,
            port=self.port,
            serial_port=self.serial_port,
            baudrate=self.baudrate,
            bluetooth_name=self.bluetooth_name,
            service_uuid=self.service_uuid,
            characteristic_uuid=self.characteristic_uuid,
        )


class ManualInput(BaseModel):
    text: str


class CommandRequest(BaseModel):
    command: str = Field(description="SCP command, with or without braces, e.g. VM or {VM}")


class SessionStartRequest(BaseModel):
    name: Optional[str] = None


class EndpointList(BaseModel):
    endpoints: List[Endpoint]
