"""
Shared codec plumbing: the tagged result every decoder returns, the partial
reading it may carry, and a line framer that turns arbitrarily chunked
transport text back into whole device replies.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from ..errors import ProtocolError

logger = logging.getLogger(__name__)


class FrameKind(str, Enum):
    READING = "reading"
    ACK = "ack"
    INFO = "info"
    DEVICE_ERROR = "device_error"
    UNRECOGNIZED = "unrecognized"


@dataclass
class ReadingCandidate:
    """Whatever a single device reply told us; any field may be missing."""

    weight: Optional[float] = None
    visual_id: Optional[str] = None
    electronic_id: Optional[str] = None
    stable: bool = True
    raw: str = ""

    @property
    def has_ids(self) -> bool:
        return bool(self.visual_id or self.electronic_id)


@dataclass
class Frame:
    kind: FrameKind
    raw: str
    candidate: Optional[ReadingCandidate] = None
    info: Optional[str] = None
    error: Optional[ProtocolError] = None
    code: Optional[str] = None

    @classmethod
    def reading(cls, candidate: ReadingCandidate) -> "Frame":
        return cls(FrameKind.READING, candidate.raw, candidate=candidate)

    @classmethod
    def unrecognized(cls, raw: str) -> "Frame":
        return cls(FrameKind.UNRECOGNIZED, raw)


# A rule inspects one frame of text and returns a Frame or None to pass.
Rule = Callable[[str], Optional[Frame]]


def apply_rules(rules: List[Tuple[str, Rule]], text: str) -> Frame:
    """Run ordered rules; the first one that matches wins."""
    for name, rule in rules:
        frame = rule(text)
        if frame is not None:
            logger.debug(f"Rule {name} matched {text!r} -> {frame.kind.value}")
            return frame
    return Frame.unrecognized(text)


class LineFramer:
    """
    Reassemble chunked text into complete replies.

    Lines end on CR and/or LF. With `terminators` set (SCP), a reply also ends
    right after any of those characters so indicators with carriage returns
    turned off ({ZC0}) still frame correctly.
    """

    def __init__(self, terminators: str = "", max_buffer: int = 4096) -> None:
        self.terminators = terminators
        self.max_buffer = max_buffer
        self._buf = ""

    def feed(self, text: str) -> List[str]:
        self._buf += text
        frames: List[str] = []
        start = 0
        for i, ch in enumerate(self._buf):
            if ch in "\r\n":
                chunk = self._buf[start:i].strip()
                if chunk:
                    frames.append(chunk)
                start = i + 1
            elif ch in self.terminators:
                chunk = self._buf[start:i + 1].strip()
                if chunk:
                    frames.append(chunk)
                start = i + 1
        self._buf = self._buf[start:]
        if len(self._buf) > self.max_buffer:
            logger.warning(f"Dropping {len(self._buf)} unterminated characters")
            self._buf = ""
        return frames

    def flush(self) -> List[str]:
        rest = self._buf.strip()
        self._buf = ""
        return [rest] if rest else []

    def reset(self) -> None:
        self._buf = ""


class Channel:
    """
    What a codec handshake gets to talk through: send raw bytes and wait for
    the next decoded frame. Provided by the connection manager.
    """

    def __init__(
        self,
        send: Callable[[bytes], Awaitable[None]],
        frames: "asyncio.Queue[Frame]",
    ) -> None:
        self._send = send
        self._frames = frames

    async def send(self, data: bytes) -> None:
        await self._send(data)

    async def receive(self, timeout: float) -> Frame:
        return await asyncio.wait_for(self._frames.get(), timeout=timeout)

    async def request(
        self,
        data: bytes,
        timeout: float,
        accept: Optional[Callable[[Frame], bool]] = None,
    ) -> Frame:
        """
        Send a command and return the first reply `accept` agrees with; by
        default the first reply that is not a weight reading, since a
        streaming indicator keeps pushing readings in between.
        """
        await self.send(data)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            frame = await self.receive(remaining)
            if accept is None and frame.kind != FrameKind.READING:
                return frame
            if accept is not None and accept(frame):
                return frame


class StreamCodec:
    """Base for codecs that ride on a byte transport (SCP, ASCII)."""

    name = "base"
    terminators = ""
    encoding = "ascii"

    def new_framer(self) -> LineFramer:
        return LineFramer(self.terminators)

    def decode(self, text: str) -> Frame:
        raise NotImplementedError

    def poll_command(self) -> Optional[bytes]:
        return None

    async def handshake(self, channel: Channel, timeout: float) -> str:
        """Return the reply that proved the device is there."""
        return ""
