"""
Serial Command Protocol of the Tru-Test 3000/5000 indicators.

Commands are short tokens wrapped in braces, `{RW}` reads the current weight,
`{FN}` fetches the next animal record. Replies are either a lone `^`
acknowledgement, a bracketed value (`[450.5]`, `[U451.2]` while unsettled),
a comma separated record `id,visualId,electronicId,weight`, or a parenthesised
hex error code.
"""
from __future__ import annotations
import asyncio
import logging
import re
from typing import Dict, Optional

from ..errors import ProtocolError, ProtocolErrorKind
from .base import Channel, Frame, FrameKind, ReadingCandidate, StreamCodec, apply_rules

logger = logging.getLogger(__name__)

ACK = "^"

SCP_COMMANDS: Dict[str, str] = {
    "RW": "Read current weight, [w] or [Uw] while unstable",
    "RI": "Read weight and current animal ID",
    "RD": "Read the complete current record",
    "FN": "Fetch next animal record id,visualId,electronicId,weight",
    "ZA1": "Enable acknowledgements (^)",
    "ZA0": "Disable acknowledgements",
    "ZE1": "Enable error codes",
    "ZE0": "Disable error codes",
    "ZC1": "Enable CR/LF after replies",
    "ZC0": "Disable CR/LF after replies",
    "ZN": "Model name, [3000]",
    "VM": "Model number, 8=SR 13=XR",
    "VV": "Software version",
    "VS": "Serial number",
    "RN": "Number of records in the current session",
    "RS": "Current session name",
    "RT": "Indicator date/time",
}

MODEL_NUMBERS = {"8": "SR", "13": "XR"}

_COMMAND_RE = re.compile(r"^\{?([A-Z]{2}[0-9A-Z]*)\}?$")
_WEIGHT_RE = re.compile(r"^\[(U?)\s*([0-9]+(?:\.[0-9]+)?)\]$")
_ERROR_RE = re.compile(r"^\(([0-9A-F]+)\)$")
_BRACKET_RE = re.compile(r"^\[(.*)\]$")
_MODEL_TOKEN_RE = re.compile(r"(XR|SR|ID)\s*-?\s*\d{4}|\b(5000|3000)\b", re.IGNORECASE)


def format_command(command: str) -> bytes:
    """`format_command("VM") == b"{VM}"`; braces in the input are tolerated."""
    token = command.strip().upper()
    m = _COMMAND_RE.match(token)
    if not m:
        raise ValueError(f"Not an SCP command: {command!r}")
    return ("{" + m.group(1) + "}").encode("ascii")


def parse_model(text: str) -> Optional[str]:
    """Recognize the reply to {VM}/{ZN}; returns a model label or None."""
    body = text.strip()
    m = _BRACKET_RE.match(body)
    if m:
        body = m.group(1).strip()
    if body in MODEL_NUMBERS:
        return MODEL_NUMBERS[body]
    token = _MODEL_TOKEN_RE.search(body)
    if token:
        return token.group(0).upper()
    return None


def _parse_number(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


def _rule_ack(text: str) -> Optional[Frame]:
    if text == ACK:
        return Frame(FrameKind.ACK, text)
    return None


def _rule_error_code(text: str) -> Optional[Frame]:
    m = _ERROR_RE.match(text)
    if not m:
        return None
    code = m.group(1)
    err = ProtocolError(ProtocolErrorKind.MALFORMED_RESPONSE, f"SCP error code {code}")
    return Frame(FrameKind.DEVICE_ERROR, text, error=err, code=code)


def _rule_weight(text: str) -> Optional[Frame]:
    m = _WEIGHT_RE.match(text)
    if not m:
        return None
    return Frame.reading(ReadingCandidate(
        weight=float(m.group(2)),
        stable=m.group(1) != "U",
        raw=text,
    ))


def _rule_record(text: str) -> Optional[Frame]:
    m = _BRACKET_RE.match(text)
    body = m.group(1) if m else text
    parts = [p.strip() for p in body.split(",")]
    if len(parts) != 4:
        return None
    _record_id, visual_id, electronic_id, weight_txt = parts
    stable = True
    if weight_txt[:1].upper() == "U":
        stable = False
        weight_txt = weight_txt[1:]
    weight = _parse_number(weight_txt)
    if weight is None:
        return None
    return Frame.reading(ReadingCandidate(
        weight=weight,
        visual_id=visual_id or None,
        electronic_id=electronic_id or None,
        stable=stable,
        raw=text,
    ))


def _rule_info(text: str) -> Optional[Frame]:
    m = _BRACKET_RE.match(text)
    if m:
        return Frame(FrameKind.INFO, text, info=m.group(1).strip())
    return None


RULES = [
    ("ack", _rule_ack),
    ("error_code", _rule_error_code),
    ("weight", _rule_weight),
    ("record", _rule_record),
    ("info", _rule_info),
]


class ScpCodec(StreamCodec):
    name = "scp"
    terminators = "]^)"

    def __init__(self, poll: str = "RW") -> None:
        self._poll = format_command(poll) if poll else None

    def decode(self, text: str) -> Frame:
        return apply_rules(RULES, text.strip())

    def poll_command(self) -> Optional[bytes]:
        return self._poll

    async def handshake(self, channel: Channel, timeout: float) -> str:
        """
        Turn acknowledgements on and ask for the model number. Either an
        acknowledgement or a recognizable model reply proves a live indicator.
        """
        step = max(0.5, timeout / 2)
        proof: Optional[str] = None
        try:
            frame = await channel.request(format_command("ZA1"), step)
            if frame.kind == FrameKind.ACK:
                proof = frame.raw
                # error codes and CR/LF framing; their acks are harmless later
                await channel.send(format_command("ZE1"))
                await channel.send(format_command("ZC1"))
            elif frame.kind == FrameKind.DEVICE_ERROR:
                logger.warning(f"Indicator rejected {{ZA1}}: {frame.raw}")
        except asyncio.TimeoutError:
            logger.info("No acknowledgement to {ZA1}, trying {VM}")
        try:
            # [13] also looks like a weight, so match on the model instead
            frame = await channel.request(
                format_command("VM"), step, accept=lambda f: parse_model(f.raw) is not None
            )
            logger.info(f"Indicator model {parse_model(frame.raw)} ({frame.raw})")
            return frame.raw
        except asyncio.TimeoutError:
            pass
        if proof is not None:
            return proof
        raise asyncio.TimeoutError()
