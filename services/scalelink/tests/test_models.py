import datetime as dt

import pytest
from pydantic import ValidationError

from scalelink.errors import ProtocolError, ProtocolErrorKind, TransportError, TransportErrorKind
from scalelink.models import Config, ConnectionConfig, ScaleReading


def test_adi_requires_tcp():
    with pytest.raises(ValidationError):
        ConnectionConfig(transport="serial", protocol="adi")
    with pytest.raises(ValidationError):
        ConnectionConfig(transport="bluetooth", protocol="adi")
    assert ConnectionConfig(transport="bluetooth", protocol="scp").protocol == "scp"


def test_connection_defaults_to_usb_address():
    cfg = ConnectionConfig()
    assert (cfg.transport, cfg.protocol) == ("tcp", "adi")
    assert cfg.target == "192.168.7.1:9000"


def test_tcp_validation():
    with pytest.raises(ValidationError):
        ConnectionConfig(transport="tcp", protocol="scp", host="")
    with pytest.raises(ValidationError):
        ConnectionConfig(transport="tcp", protocol="scp", port=70000)


def test_reading_weight_must_be_positive():
    now = dt.datetime.now(dt.timezone.utc)
    with pytest.raises(ValidationError):
        ScaleReading(weight=0, timestamp=now)
    with pytest.raises(ValidationError):
        ScaleReading(weight=float("nan"), timestamp=now)
    r = ScaleReading(weight=12.5, electronic_id="982", timestamp=now)
    assert r.animal_key == "982"


def test_default_connection_from_config():
    cfg = Config(transport="serial", protocol="scp", serial_port="/dev/ttyUSB0", baudrate=19200)
    conn = cfg.default_connection()
    assert conn.serial_port == "/dev/ttyUSB0"
    assert conn.baudrate == 19200
    assert conn.target == "/dev/ttyUSB0"


def test_error_details():
    e = ProtocolError(ProtocolErrorKind.HTTPS_REQUIRED)
    assert e.actionable
    assert "HTTPS" in e.message
    t = TransportError(TransportErrorKind.TIMEOUT)
    assert not t.actionable
    assert str(t).startswith("timeout:")
