"""
Animal Data Interface: the indicator's REST API (XML or JSON over plain HTTP).

The XR5000 serves it on http://192.168.7.1:9000 over USB-Ethernet. Some
firmware/configuration combinations answer with a page instead of data; those
pages are recognized by an ordered rule list and surfaced as distinct,
actionable protocol errors.
"""
from __future__ import annotations
import json
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..errors import ProtocolError, ProtocolErrorKind, TransportError, TransportErrorKind
from .base import ReadingCandidate

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
PROBE_PATHS = ("/", f"{API_PREFIX}/sessions")
DEVICE_PATH = f"{API_PREFIX}/device"
SESSIONS_PATH = f"{API_PREFIX}/sessions"
LIVE_WEIGHT_PATHS = (f"{API_PREFIX}/sessions", f"{API_PREFIX}/traits", f"{API_PREFIX}/animals")

ACCEPT = "application/xml, text/xml, application/json, */*"
USER_AGENT = "ADI-Client/1.0"

# (pattern, kind): checked in order against every response body
ERROR_PAGE_RULES: List[Tuple[re.Pattern, ProtocolErrorKind]] = [
    (re.compile(r"only\s+public\s+urls?\s+(are\s+)?supported", re.IGNORECASE),
     ProtocolErrorKind.PUBLIC_URL_REQUIRED),
    (re.compile(r"only\s+https(\s+urls?)?\s+(is\s+|are\s+)?(supported|allowed)", re.IGNORECASE),
     ProtocolErrorKind.HTTPS_REQUIRED),
    (re.compile(r"Swagger|Animal Data Transfer REST API"),
     ProtocolErrorKind.DOCUMENTATION_PAGE),
]

_WEIGHT_KEYS = ("weight", "liveWeight", "live_weight", "Weight", "value")
_VISUAL_KEYS = ("visualId", "visual_id", "vid", "animalId", "id")
_EID_KEYS = ("electronicId", "electronic_id", "eid", "EID")


def classify_body(body: str) -> Optional[ProtocolError]:
    """Return the device error a body represents, or None for real data."""
    for pattern, kind in ERROR_PAGE_RULES:
        if pattern.search(body):
            return ProtocolError(kind)
    return None


def _first(mapping: Dict[str, Any], keys) -> Any:
    for key in keys:
        if key in mapping and mapping[key] not in (None, ""):
            return mapping[key]
    return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_json(data: Any, raw: str) -> Optional[ReadingCandidate]:
    if isinstance(data, list):
        # latest record last, as the indicator lists them
        for item in reversed(data):
            found = _parse_json(item, raw)
            if found is not None:
                return found
        return None
    if not isinstance(data, dict):
        return None
    for nested in ("animals", "records", "items", "data"):
        if nested in data:
            found = _parse_json(data[nested], raw)
            if found is not None:
                return found
    weight = _as_float(_first(data, _WEIGHT_KEYS))
    if weight is None:
        return None
    visual = _first(data, _VISUAL_KEYS)
    eid = _first(data, _EID_KEYS)
    stable = data.get("stable", True)
    return ReadingCandidate(
        weight=weight,
        visual_id=str(visual) if visual is not None else None,
        electronic_id=str(eid) if eid is not None else None,
        stable=bool(stable),
        raw=raw,
    )


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def _child_text(elem: ET.Element, *names: str) -> Optional[str]:
    wanted = {n.lower() for n in names}
    for child in elem:
        if _local(child.tag) in wanted and child.text and child.text.strip():
            return child.text.strip()
    return None


def _parse_xml(root: ET.Element, raw: str) -> Optional[ReadingCandidate]:
    animals = [e for e in root.iter() if _local(e.tag) == "animal"]
    if animals:
        latest = animals[-1]
        weight = None
        for trait in (e for e in latest.iter() if _local(e.tag) == "trait"):
            name = (_child_text(trait, "name") or "").lower()
            if "weight" in name or "peso" in name:
                weight = _as_float(_child_text(trait, "value"))
        if weight is None:
            weight = _as_float(_child_text(latest, "weight"))
        if weight is not None:
            visual = (latest.get("id") or _child_text(latest, "visualId", "vid", "id", "animalId"))
            eid = _child_text(latest, "eid", "electronicId")
            return ReadingCandidate(weight=weight, visual_id=visual, electronic_id=eid, raw=raw)
    for elem in root.iter():
        if _local(elem.tag) == "weight":
            weight = _as_float(elem.text)
            if weight is not None:
                return ReadingCandidate(weight=weight, raw=raw)
    return None


def parse_reading(body: str) -> Optional[ReadingCandidate]:
    """Pull the most recent weight out of an XML or JSON ADI payload."""
    text = body.strip()
    if not text:
        return None
    if text[0] in "[{":
        try:
            return _parse_json(json.loads(text), text)
        except ValueError:
            logger.debug("ADI body looked like JSON but did not parse")
    if text.startswith("<"):
        try:
            return _parse_xml(ET.fromstring(text), text)
        except ET.ParseError as e:
            logger.debug(f"ADI XML parse error: {e}")
    return None


def parse_document(body: str) -> Any:
    """Decode a JSON or XML body into plain Python data."""
    text = body.strip()
    if text[:1] in "[{":
        try:
            return json.loads(text)
        except ValueError:
            raise ProtocolError(ProtocolErrorKind.MALFORMED_RESPONSE, "Invalid JSON from indicator")
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        raise ProtocolError(ProtocolErrorKind.MALFORMED_RESPONSE, "Invalid XML from indicator")
    return _element_to_dict(root)


def _element_to_dict(elem: ET.Element) -> Any:
    children = list(elem)
    if not children:
        return (elem.text or "").strip()
    out: Dict[str, Any] = dict(elem.attrib)
    for child in children:
        key = _local(child.tag)
        value = _element_to_dict(child)
        if key in out:
            if not isinstance(out[key], list):
                out[key] = [out[key]]
            out[key].append(value)
        else:
            out[key] = value
    return out


def _transport_error(exc: httpx.HTTPError, url: str) -> TransportError:
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(TransportErrorKind.TIMEOUT, f"No answer from {url} in time")
    cause = exc.__cause__ or exc.__context__
    if isinstance(cause, ConnectionRefusedError) or "refused" in str(exc).lower():
        return TransportError(TransportErrorKind.REFUSED, f"Connection refused by {url}")
    return TransportError(TransportErrorKind.UNREACHABLE, f"Cannot reach {url}: {exc}")


class AdiClient:
    """
    Thin async client for the ADI REST surface. Plain http only: the
    indicator does not do TLS on its local interfaces and redirects are not
    followed, so a scheme upgrade is reported instead of silently taken.
    """

    def __init__(
        self,
        host: str,
        port: int = 9000,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            headers={"Accept": ACCEPT, "User-Agent": USER_AGENT},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug(f"ADI GET {url}")
        try:
            return await self._client.get(path)
        except httpx.HTTPError as exc:
            raise _transport_error(exc, url) from exc

    def _check(self, response: httpx.Response) -> str:
        location = response.headers.get("location", "")
        if response.is_redirect and location.lower().startswith("https://"):
            raise ProtocolError(ProtocolErrorKind.HTTPS_REQUIRED)
        body = response.text
        device_error = classify_body(body)
        if device_error is not None:
            raise device_error
        if not response.is_success:
            raise ProtocolError(
                ProtocolErrorKind.UNEXPECTED_STATUS,
                f"HTTP {response.status_code} from {response.request.url.path}",
            )
        return body

    async def connect(self) -> str:
        """
        Probe the root, then a known data path. Returns the first good body;
        if all fail, raises the most specific error seen.
        """
        errors: List[Exception] = []
        for path in PROBE_PATHS:
            try:
                body = self._check(await self._get(path))
                logger.info(f"ADI connected via {self.base_url}{path}")
                return body
            except ProtocolError as exc:
                logger.warning(f"ADI probe {path} rejected: {exc}")
                errors.append(exc)
            except TransportError:
                # Nothing listening; the next path will not fare better
                raise
        raise _most_specific(errors)

    async def get(self, path: str) -> str:
        return self._check(await self._get(path))

    async def get_device_info(self) -> Any:
        return parse_document(await self.get(DEVICE_PATH))

    async def get_sessions(self) -> Any:
        return parse_document(await self.get(SESSIONS_PATH))

    async def get_live_weight(self) -> Optional[ReadingCandidate]:
        for path in LIVE_WEIGHT_PATHS:
            try:
                body = await self.get(path)
            except ProtocolError as exc:
                if exc.actionable:
                    raise
                logger.debug(f"ADI {path}: {exc}")
                continue
            candidate = parse_reading(body)
            if candidate is not None:
                return candidate
        return None


def _most_specific(errors: List[Exception]) -> Exception:
    for exc in errors:
        if isinstance(exc, ProtocolError) and exc.actionable:
            return exc
    return errors[-1] if errors else ProtocolError(ProtocolErrorKind.MALFORMED_RESPONSE)
