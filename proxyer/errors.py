from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .head_parser import HandshakeResult

# Exception tree:
#   ProxyerError
#   +-- ArgumentError      (missing/invalid startup configuration)
#   +-- ProtocolError      (handshake protocol failure)
#   |   +-- ParseError     (malformed handshake response)
#   +-- TunnelRejected     (handshake completed, status != 200)
#   +-- SocketError        (transport failure on any leg)
#       +-- WriteError     (write/drain failure on any leg)


class ProxyerError(Exception):
    """Base exception for all proxyer errors."""


class ArgumentError(ProxyerError):
    """Required startup configuration is missing or unusable."""


class ProtocolError(ProxyerError):
    pass


class ParseError(ProtocolError):
    """The peer's HTTP response head could not be parsed."""


class TunnelRejected(ProxyerError):
    """
    The proxy answered the CONNECT with something other than 200.
    The parsed response is kept so callers can log it.
    """

    def __init__(self, response: "HandshakeResult") -> None:
        self.response = response
        self.status_code = response.status_code
        super().__init__(f"proxy refused tunnel: {response.status_code} {response.status_message}")


class SocketError(ProxyerError):
    def __init__(self, message: str, *, leg: Optional[str] = None) -> None:
        self.leg = leg
        super().__init__(message if leg is None else f"{leg}: {message}")


class WriteError(SocketError):
    pass
