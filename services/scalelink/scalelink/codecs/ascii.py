"""
Best-effort parser for indicators streaming free-form text lines.

Three weight shapes are recognized, first match wins:
    W 123.5 kg S                  weight, optional unit, S when settled
    Weight:450,ID:BR1234,Stable:1
    450.5                         bare number, only inside a plausible range
An `EID:<tag>` token anywhere on the line is merged into the same record.
"""
from __future__ import annotations
import logging
import re
from typing import Optional

from .base import Frame, ReadingCandidate, StreamCodec, apply_rules

logger = logging.getLogger(__name__)

LB_TO_KG = 0.45359237
MAX_BARE_WEIGHT = 10000.0

_W_RE = re.compile(r"\bW\s+([0-9]+(?:\.[0-9]+)?)\s*(kg|lb)?\s*(S)?\b", re.IGNORECASE)
_KV_RE = re.compile(
    r"Weight:\s*([0-9]+(?:\.[0-9]+)?)"
    r"(?:.*?\bID:\s*([A-Za-z0-9]+))?"
    r"(?:.*?Stable:\s*([01]))?",
    re.IGNORECASE,
)
_BARE_RE = re.compile(r"(?<![\w.])([-+]?[0-9]+(?:\.[0-9]+)?)(?![\w.])")
_EID_RE = re.compile(r"\bEID\s*[:=]?\s*([A-Za-z0-9]+)", re.IGNORECASE)


def _to_kg(value: float, unit: Optional[str]) -> float:
    if unit and unit.lower() == "lb":
        return round(value * LB_TO_KG, 3)
    return value


def _rule_w_line(text: str) -> Optional[Frame]:
    m = _W_RE.search(text)
    if not m:
        return None
    return Frame.reading(ReadingCandidate(
        weight=_to_kg(float(m.group(1)), m.group(2)),
        stable=bool(m.group(3)),
        raw=text,
    ))


def _rule_key_values(text: str) -> Optional[Frame]:
    m = _KV_RE.search(text)
    if not m:
        return None
    return Frame.reading(ReadingCandidate(
        weight=float(m.group(1)),
        visual_id=m.group(2) or None,
        stable=m.group(3) == "1",
        raw=text,
    ))


def _rule_bare_number(text: str) -> Optional[Frame]:
    # The EID digits must not be taken for a weight
    scrubbed = _EID_RE.sub(" ", text)
    m = _BARE_RE.search(scrubbed)
    if not m:
        return None
    weight = float(m.group(1))
    if not 0 < weight < MAX_BARE_WEIGHT:
        logger.debug(f"Implausible bare weight {weight} in {text!r}")
        return None
    return Frame.reading(ReadingCandidate(weight=weight, stable=True, raw=text))


def _rule_eid_only(text: str) -> Optional[Frame]:
    m = _EID_RE.search(text)
    if not m:
        return None
    return Frame.reading(ReadingCandidate(electronic_id=m.group(1), raw=text))


RULES = [
    ("w_line", _rule_w_line),
    ("key_values", _rule_key_values),
    ("bare_number", _rule_bare_number),
    ("eid_only", _rule_eid_only),
]


def parse_line(text: str) -> Frame:
    frame = apply_rules(RULES, text.strip())
    eid = _EID_RE.search(text)
    if frame.candidate is not None and eid and not frame.candidate.electronic_id:
        frame.candidate.electronic_id = eid.group(1)
    return frame


class AsciiCodec(StreamCodec):
    name = "ascii"

    def decode(self, text: str) -> Frame:
        return parse_line(text)
