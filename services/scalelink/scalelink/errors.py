from __future__ import annotations
from enum import Enum
from typing import Optional


class TransportErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    REFUSED = "refused"
    UNREACHABLE = "unreachable"
    PERMISSION_DENIED = "permission_denied"


class ProtocolErrorKind(str, Enum):
    MALFORMED_RESPONSE = "malformed_response"
    DOCUMENTATION_PAGE = "documentation_page"
    HTTPS_REQUIRED = "https_required"
    PUBLIC_URL_REQUIRED = "public_url_required"
    UNEXPECTED_STATUS = "unexpected_status"


# Device-side misconfiguration: fixing these needs a settings change on the
# indicator, retrying the same request cannot succeed.
MISCONFIGURATION_KINDS = frozenset({
    ProtocolErrorKind.DOCUMENTATION_PAGE,
    ProtocolErrorKind.HTTPS_REQUIRED,
    ProtocolErrorKind.PUBLIC_URL_REQUIRED,
})

_TRANSPORT_DETAILS = {
    TransportErrorKind.UNAVAILABLE: "Transport not available in this environment",
    TransportErrorKind.TIMEOUT: "The indicator did not answer in time",
    TransportErrorKind.REFUSED: "Connection refused by the indicator",
    TransportErrorKind.UNREACHABLE: "Indicator unreachable, check cable/network and address",
    TransportErrorKind.PERMISSION_DENIED: "Permission denied opening the device",
}

_PROTOCOL_DETAILS = {
    ProtocolErrorKind.MALFORMED_RESPONSE: "Unrecognized reply from the indicator",
    ProtocolErrorKind.DOCUMENTATION_PAGE: (
        "The indicator returned its API documentation page instead of data; "
        "use data endpoints such as /api/v1/sessions"
    ),
    ProtocolErrorKind.HTTPS_REQUIRED: (
        "The indicator is configured to accept HTTPS only; "
        "enable plain HTTP in the indicator network settings"
    ),
    ProtocolErrorKind.PUBLIC_URL_REQUIRED: (
        "The indicator is configured to accept public URLs only; "
        "allow local addresses in the indicator settings"
    ),
    ProtocolErrorKind.UNEXPECTED_STATUS: "Unexpected HTTP status from the indicator",
}


class ScaleLinkError(Exception):
    """Base class for errors raised by the scale-link layer."""

    kind: Enum

    def __init__(self, kind: Enum, message: Optional[str] = None) -> None:
        self.kind = kind
        self.message = message or self.default_details()
        super().__init__(f"{kind.value}: {self.message}")

    def default_details(self) -> str:
        return self.kind.value

    @property
    def actionable(self) -> bool:
        return False


class TransportError(ScaleLinkError):
    kind: TransportErrorKind

    def __init__(self, kind: TransportErrorKind, message: Optional[str] = None) -> None:
        super().__init__(TransportErrorKind(kind), message)

    def default_details(self) -> str:
        return _TRANSPORT_DETAILS[self.kind]


class ProtocolError(ScaleLinkError):
    kind: ProtocolErrorKind

    def __init__(self, kind: ProtocolErrorKind, message: Optional[str] = None) -> None:
        super().__init__(ProtocolErrorKind(kind), message)

    def default_details(self) -> str:
        return _PROTOCOL_DETAILS[self.kind]

    @property
    def actionable(self) -> bool:
        return self.kind in MISCONFIGURATION_KINDS


class ReadingValidationError(ValueError):
    """A single reading was rejected; the connection itself is unaffected."""

    def __init__(self, reason: str, raw: str = "") -> None:
        self.reason = reason
        self.raw = raw
        super().__init__(f"{reason} ({raw!r})" if raw else reason)
