from __future__ import annotations

from enum import Enum


class OriginError(RuntimeError):
    """Base class for failures raised by the Origin session layer."""


class OriginConnectionError(OriginError, ConnectionError):
    """Raised when the Origin control channel cannot be opened."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        super().__init__(f"Unable to connect to Origin at {host}:{port}: {reason}")
        self.host = host
        self.port = port
        self.reason = reason


class ProtocolError(OriginError):
    """Raised when an inbound frame cannot be decoded."""


class DispatchError(OriginError):
    """Raised when a command is sent while the control channel is down."""

    def __init__(self, command: str, destination: str, reason: str = "not_connected") -> None:
        super().__init__(f"Origin command {destination}:{command} not sent ({reason})")
        self.command = command
        self.destination = destination
        self.reason = reason


class BusyError(OriginError):
    """Raised when an exposure is requested while another one is active."""


class FetchErrorKind(str, Enum):
    UNRESOLVABLE = "unresolvable"
    CONNECT_FAILED = "connect_failed"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    EMPTY_BODY = "empty_body"
    BAD_STATUS = "bad_status"


class FetchError(OriginError):
    """Raised when an image file cannot be retrieved from the Origin."""

    def __init__(self, kind: FetchErrorKind, url: str, detail: str = "") -> None:
        message = f"Image fetch {kind.value} for {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.detail = detail


__all__ = [
    "BusyError",
    "DispatchError",
    "FetchError",
    "FetchErrorKind",
    "OriginConnectionError",
    "OriginError",
    "ProtocolError",
]
