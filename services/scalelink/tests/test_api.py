import pytest
from fastapi.testclient import TestClient

from fakes import FakeFactory, FakeTransport, fast_settings
from scalelink import config
from scalelink.capture import MemoryRecordSink
from scalelink.errors import TransportError, TransportErrorKind
from scalelink.main import AppContext, create_app

NO_SERIAL = TransportError(TransportErrorKind.UNAVAILABLE, "no serial here")
MANUAL_ASCII = {"transport": "serial", "protocol": "ascii"}


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATA_DIR", tmp_path)
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")
    return tmp_path


def _client(transport=None, **settings):
    ctx = AppContext(
        cfg=fast_settings(**settings),
        transport_factory=FakeFactory(transport or FakeTransport(open_error=NO_SERIAL)),
        sink=MemoryRecordSink(),
    )
    return ctx, TestClient(create_app(ctx))


def test_health_and_idle_status():
    ctx, client = _client()
    with client:
        health = client.get("/api/health").json()
        assert health["state"] == "idle"
        assert health["mqtt"] == "disabled"
        status = client.get("/api/status").json()
        assert status["connected"] is False
        assert client.get("/api/reading").status_code == 404


def test_incompatible_connection_is_rejected():
    ctx, client = _client()
    with client:
        r = client.post("/api/connect", json={"transport": "serial", "protocol": "adi"})
        assert r.status_code == 422


def test_manual_input_flow_with_capture():
    ctx, client = _client()
    with client:
        r = client.post("/api/connect", json=MANUAL_ASCII)
        body = r.json()
        assert body["connected"] is True
        assert body["status"]["input_mode"] == "manual"

        assert client.post("/api/session/start", json={"name": "Mob 4"}).json()["active"] is True
        r = client.post("/api/manual", json={"text": "W 455.0 kg S EID:982000123456789"})
        assert r.json()["reading"]["weight"] == 455.0
        assert client.get("/api/reading").json()["electronic_id"] == "982000123456789"
        client.post("/api/manual", json={"text": "W 470.0 kg"})  # unsettled, not captured

        info = client.post("/api/session/stop").json()
        assert info["active"] is False
        assert info["count"] == 1
        records = client.get("/api/session/records").json()
        assert records[0]["reading"]["weight"] == 455.0

        assert client.post("/api/disconnect").json()["state"] == "idle"


def test_manual_input_requires_manual_mode():
    ctx, client = _client()
    with client:
        r = client.post("/api/manual", json={"text": "450"})
        assert r.status_code == 409
        assert r.json()["error"] == "unavailable"


def test_scp_command_errors():
    ctx, client = _client()
    with client:
        assert client.post("/api/scp/command", json={"command": "x"}).status_code == 400
        assert client.post("/api/scp/command", json={"command": "VM"}).status_code == 409
        assert "RW" in client.get("/api/scp/commands").json()


def test_scp_command_round_trip():
    transport = FakeTransport({b"{ZA1}": ["^\r\n"], b"{VM}": ["[13]\r\n"], b"{VV}": ["[2.1.0]\r\n"]})
    ctx, client = _client(transport, poll_interval_s=10)
    with client:
        r = client.post("/api/connect", json={"transport": "serial", "protocol": "scp",
                                              "serial_port": "/dev/ttyFAKE"})
        assert r.json()["connected"] is True
        r = client.post("/api/scp/command", json={"command": "{VV}"})
        assert r.json()["reply"] == "[2.1.0]"


def test_adi_calls_need_adi_connection():
    ctx, client = _client()
    with client:
        assert client.get("/api/adi/device").status_code == 409
        assert client.get("/api/adi/sessions").status_code == 409


def test_endpoints():
    ctx, client = _client(FakeTransport())
    with client:
        assert client.get("/api/endpoints/zigbee").status_code == 404
        endpoints = client.get("/api/endpoints/serial").json()["endpoints"]
        assert endpoints[0]["address"] == "/dev/ttyFAKE"


def test_config_update(data_dir):
    ctx, client = _client()
    with client:
        cfg = client.get("/api/config").json()
        cfg["poll_interval_s"] = 3.0
        cfg["capture_stable_only"] = False
        r = client.post("/api/config", json=cfg)
        assert r.status_code == 200
        assert ctx.cfg.poll_interval_s == 3.0
        assert ctx.manager.settings.poll_interval_s == 3.0
        assert ctx.capture.stable_only is False
        assert (data_dir / "config.json").exists()


def test_events_websocket():
    ctx, client = _client()
    with client:
        with client.websocket_connect("/ws/events") as ws:
            first = ws.receive_json()
            assert first["type"] == "status_changed"
            assert first["data"]["state"] == "idle"
            ws.send_text("ping")
            assert ws.receive_text() == "pong"


def test_config_rejects_bad_poll_command(data_dir):
    ctx, client = _client()
    with client:
        cfg = client.get("/api/config").json()
        cfg["scp_poll_command"] = "R-W"
        assert client.post("/api/config", json=cfg).status_code == 422
        assert ctx.cfg.scp_poll_command == "RW"
