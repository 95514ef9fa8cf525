from __future__ import annotations

from .adi import AdiClient
from .ascii import AsciiCodec
from .base import Frame, FrameKind, LineFramer, ReadingCandidate, StreamCodec
from .scp import ScpCodec


def stream_codec(protocol: str, scp_poll_command: str = "RW") -> StreamCodec:
    """Codec for a byte-stream protocol; ADI is handled by AdiClient."""
    if protocol == "scp":
        return ScpCodec(poll=scp_poll_command)
    if protocol == "ascii":
        return AsciiCodec()
    raise ValueError(f"{protocol!r} is not a stream protocol")


__all__ = [
    "AdiClient",
    "AsciiCodec",
    "Frame",
    "FrameKind",
    "LineFramer",
    "ReadingCandidate",
    "ScpCodec",
    "StreamCodec",
    "stream_codec",
]
