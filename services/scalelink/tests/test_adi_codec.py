import asyncio

import httpx
import pytest

from scalelink.codecs.adi import AdiClient, classify_body, parse_document, parse_reading
from scalelink.errors import ProtocolError, ProtocolErrorKind, TransportError, TransportErrorKind

DOCS_PAGE = "<html><title>Animal Data Transfer REST API</title><div id='swagger-ui'>Swagger</div></html>"
SESSIONS_JSON = [{"visualId": "A1", "eid": "982000111", "weight": 450.5}]
ANIMAL_XML = (
    "<animals><animal id='A12'><eid>982000123</eid>"
    "<trait><name>Weight</name><value>455.5</value></trait></animal></animals>"
)


def _client(handler) -> AdiClient:
    return AdiClient("192.168.7.1", 9000, timeout=1.0, transport=httpx.MockTransport(handler))


def _run(client: AdiClient, coro_fn):
    async def go():
        try:
            return await coro_fn(client)
        finally:
            await client.close()
    return asyncio.run(go())


def test_classify_body():
    assert classify_body(DOCS_PAGE).kind == ProtocolErrorKind.DOCUMENTATION_PAGE
    assert classify_body("Error: only public URLs are supported").kind == ProtocolErrorKind.PUBLIC_URL_REQUIRED
    assert classify_body("Only HTTPS is supported").kind == ProtocolErrorKind.HTTPS_REQUIRED
    assert classify_body('{"sessions": []}') is None


def test_connect_falls_through_to_data_path():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if request.url.path == "/":
            return httpx.Response(200, text=DOCS_PAGE)
        return httpx.Response(200, json=SESSIONS_JSON)

    body = _run(_client(handler), lambda c: c.connect())
    assert "450.5" in body
    assert seen == ["/", "/api/v1/sessions"]


@pytest.mark.parametrize("body, kind", [
    (DOCS_PAGE, ProtocolErrorKind.DOCUMENTATION_PAGE),
    ("only public URLs are supported", ProtocolErrorKind.PUBLIC_URL_REQUIRED),
    ("Only HTTPS is supported", ProtocolErrorKind.HTTPS_REQUIRED),
])
def test_connect_surfaces_device_error_pages(body, kind):
    def handler(request):
        return httpx.Response(200, text=body)

    with pytest.raises(ProtocolError) as exc_info:
        _run(_client(handler), lambda c: c.connect())
    assert exc_info.value.kind == kind
    assert exc_info.value.actionable


def test_redirect_to_https_is_reported():
    def handler(request):
        return httpx.Response(301, headers={"location": "https://192.168.7.1/"})

    with pytest.raises(ProtocolError) as exc_info:
        _run(_client(handler), lambda c: c.connect())
    assert exc_info.value.kind == ProtocolErrorKind.HTTPS_REQUIRED


def test_most_specific_error_wins():
    def handler(request):
        if request.url.path == "/":
            return httpx.Response(200, text=DOCS_PAGE)
        return httpx.Response(404, text="not found")

    with pytest.raises(ProtocolError) as exc_info:
        _run(_client(handler), lambda c: c.connect())
    assert exc_info.value.kind == ProtocolErrorKind.DOCUMENTATION_PAGE


def test_unexpected_status():
    def handler(request):
        return httpx.Response(500, text="boom")

    with pytest.raises(ProtocolError) as exc_info:
        _run(_client(handler), lambda c: c.connect())
    assert exc_info.value.kind == ProtocolErrorKind.UNEXPECTED_STATUS
    assert not exc_info.value.actionable


@pytest.mark.parametrize("exc, kind", [
    (httpx.ConnectError("[Errno 113] No route to host"), TransportErrorKind.UNREACHABLE),
    (httpx.ConnectError("[Errno 111] Connection refused"), TransportErrorKind.REFUSED),
    (httpx.ConnectTimeout("timed out"), TransportErrorKind.TIMEOUT),
])
def test_network_failures_map_to_transport_errors(exc, kind):
    def handler(request):
        raise exc

    with pytest.raises(TransportError) as exc_info:
        _run(_client(handler), lambda c: c.connect())
    assert exc_info.value.kind == kind


def test_parse_reading_xml():
    c = parse_reading(ANIMAL_XML)
    assert c.weight == 455.5
    assert c.visual_id == "A12"
    assert c.electronic_id == "982000123"


def test_parse_reading_json_nested():
    c = parse_reading('{"animals": [{"eid": "982", "liveWeight": "300.2"}]}')
    assert c.weight == pytest.approx(300.2)
    assert c.electronic_id == "982"
    assert c.visual_id is None


def test_parse_reading_without_weight():
    assert parse_reading('{"sessions": []}') is None
    assert parse_reading("") is None


def test_parse_document_xml():
    doc = parse_document("<device><model>XR5000</model><serial>123</serial></device>")
    assert doc == {"model": "XR5000", "serial": "123"}

    with pytest.raises(ProtocolError):
        parse_document("{broken")


def test_typed_calls():
    def handler(request):
        if request.url.path == "/api/v1/device":
            return httpx.Response(200, json={"model": "XR5000"})
        if request.url.path == "/api/v1/sessions":
            return httpx.Response(200, text="<sessions><session><name>Mob 1</name></session></sessions>")
        if request.url.path == "/api/v1/traits":
            return httpx.Response(404)
        return httpx.Response(200, text=ANIMAL_XML)

    async def calls(client):
        return (await client.get_device_info(), await client.get_sessions(), await client.get_live_weight())

    device, sessions, live = _run(_client(handler), calls)
    assert device == {"model": "XR5000"}
    assert sessions == {"session": {"name": "Mob 1"}}
    assert live.weight == 455.5
