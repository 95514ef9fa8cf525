import json

import pytest

from scalelink import config


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATA_DIR", tmp_path)
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")
    return tmp_path


def test_getenv_helpers(monkeypatch):
    monkeypatch.setenv("SCALE_PORT", "abc")
    assert config.getenv_int("SCALE_PORT", 9000) == 9000
    monkeypatch.setenv("SCALE_PORT", " 9100 ")
    assert config.getenv_int("SCALE_PORT", 9000) == 9100
    monkeypatch.setenv("POLL_INTERVAL", "fast")
    assert config.getenv_float("POLL_INTERVAL", 2.0) == 2.0
    monkeypatch.setenv("DEMO_MODE", "yes")
    assert config.getenv_bool("DEMO_MODE", False) is True


def test_default_config_reads_environment(monkeypatch):
    monkeypatch.setenv("SCALE_TRANSPORT", "serial")
    monkeypatch.setenv("SCALE_PROTOCOL", "ascii")
    monkeypatch.setenv("SERIAL_PORT", "/dev/ttyUSB1")
    monkeypatch.setenv("LIVENESS_TIMEOUT", "120")
    cfg = config.default_config()
    assert cfg.transport == "serial"
    assert cfg.protocol == "ascii"
    assert cfg.serial_port == "/dev/ttyUSB1"
    assert cfg.liveness_timeout_s == 120.0


def test_bad_poll_command_in_environment_falls_back(monkeypatch):
    monkeypatch.setenv("SCP_POLL_COMMAND", "R-W")
    assert config.default_config().scp_poll_command == "RW"
    monkeypatch.setenv("SCP_POLL_COMMAND", "FN")
    assert config.default_config().scp_poll_command == "FN"


def test_load_config_seeds_file(data_dir):
    cfg = config.load_config()
    saved = json.loads((data_dir / "config.json").read_text())
    assert saved["host"] == cfg.host
    assert saved["scp_poll_command"] == "RW"


def test_load_config_round_trip(data_dir):
    cfg = config.load_config()
    cfg.poll_interval_s = 3.0
    config.save_config(cfg)
    assert config.load_config().poll_interval_s == 3.0


def test_unreadable_config_falls_back_to_defaults(data_dir):
    (data_dir / "config.json").write_text("{not json")
    cfg = config.load_config()
    assert cfg.connect_timeout_s == 8.0
