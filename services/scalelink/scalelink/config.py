from __future__ import annotations
import json
import os
import logging
from pathlib import Path

from pydantic import ValidationError

from .codecs.scp import format_command
from .models import Config

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.getenv("DATA_DIR", "/data"))
CONFIG_PATH = DATA_DIR / "config.json"


def getenv_int(name: str, default: int) -> int:
    """Safely get an integer environment variable with fallback to default."""
    value = os.getenv(name)
    if not value or value.strip() == "":
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning(f"Invalid integer value for {name}='{value}', using default {default}")
        return default


def getenv_float(name: str, default: float) -> float:
    """Safely get a float environment variable with fallback to default."""
    value = os.getenv(name)
    if not value or value.strip() == "":
        return default
    try:
        return float(value.strip())
    except ValueError:
        logger.warning(f"Invalid float value for {name}='{value}', using default {default}")
        return default


def getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def getenv_command(name: str, default: str) -> str:
    value = os.getenv(name)
    if not value or value.strip() == "":
        return default
    try:
        format_command(value)
    except ValueError:
        logger.warning(f"Invalid SCP command for {name}='{value}', using default {default}")
        return default
    return value.strip()


def default_config() -> Config:
    return Config(
        mqtt_host=os.getenv("MQTT_HOST") or None,
        mqtt_port=getenv_int("MQTT_PORT", 1883),
        mqtt_user=os.getenv("MQTT_USER") or None,
        mqtt_pass=os.getenv("MQTT_PASS") or None,
        reading_topic=os.getenv("READING_TOPIC", "scale/reading"),
        status_topic=os.getenv("STATUS_TOPIC", "scale/status"),
        cmd_topic=os.getenv("CMD_TOPIC", "scale/cmd"),
        transport=os.getenv("SCALE_TRANSPORT", "tcp"),
        protocol=os.getenv("SCALE_PROTOCOL", "adi"),
        # XR5000 answers on 192.168.7.1 over USB-Ethernet, 192.168.8.1 over Wi-Fi
        host=os.getenv("SCALE_HOST", "192.168.7.1"),
        port=getenv_int("SCALE_PORT", 9000),
        serial_port=os.getenv("SERIAL_PORT") or None,
        baudrate=getenv_int("SERIAL_BAUD", 9600),
        bluetooth_name=os.getenv("BT_NAME") or None,
        service_uuid=os.getenv("BT_SERVICE_UUID") or None,
        characteristic_uuid=os.getenv("BT_CHAR_UUID") or None,
        connect_timeout_s=getenv_float("CONNECT_TIMEOUT", 8.0),
        poll_interval_s=getenv_float("POLL_INTERVAL", 2.0),
        liveness_timeout_s=getenv_float("LIVENESS_TIMEOUT", 300.0),
        active_window_s=getenv_float("ACTIVE_WINDOW", 30.0),
        passive_wait_s=getenv_float("PASSIVE_WAIT", 5.0),
        dedupe_window_s=getenv_float("DEDUPE_WINDOW", 2.0),
        dedupe_tolerance_kg=getenv_float("DEDUPE_TOLERANCE_KG", 0.5),
        max_weight_kg=getenv_float("MAX_WEIGHT_KG", 10000.0),
        require_id=getenv_bool("REQUIRE_ID", False),
        scp_poll_command=getenv_command("SCP_POLL_COMMAND", "RW"),
        manual_fallback=getenv_bool("MANUAL_FALLBACK", True),
        demo_mode=getenv_bool("DEMO_MODE", False),
        auto_connect=getenv_bool("AUTO_CONNECT", False),
        capture_stable_only=getenv_bool("CAPTURE_STABLE_ONLY", True),
    )


def ensure_data_dir() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def load_config() -> Config:
    ensure_data_dir()
    if CONFIG_PATH.exists():
        try:
            data = json.loads(CONFIG_PATH.read_text())
            return Config(**data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable config {CONFIG_PATH}: {e}")
    cfg = default_config()
    save_config(cfg)
    return cfg


def save_config(cfg: Config) -> None:
    ensure_data_dir()
    CONFIG_PATH.write_text(json.dumps(cfg.model_dump(), indent=2))
