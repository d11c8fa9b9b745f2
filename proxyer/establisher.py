from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .auth import AUTH_HEADER_NAME, AuthTokenGenerator
from .config import HostPort, ProxyerConfig
from .errors import ProxyerError, SocketError, TunnelRejected, WriteError
from .head_parser import HandshakeResult, HeadCaptureParser

logger = logging.getLogger("proxyer.establisher")

READ_CHUNK = 65536


class HandshakeState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING_TO_PROXY = "connecting_to_proxy"
    SENDING_CONNECT_REQUEST = "sending_connect_request"
    AWAITING_HANDSHAKE_RESPONSE = "awaiting_handshake_response"
    ESTABLISHED = "established"
    FAILED = "failed"


_TERMINAL = (HandshakeState.ESTABLISHED, HandshakeState.FAILED)
_ORDER = [
    HandshakeState.DISCONNECTED,
    HandshakeState.CONNECTING_TO_PROXY,
    HandshakeState.SENDING_CONNECT_REQUEST,
    HandshakeState.AWAITING_HANDSHAKE_RESPONSE,
]


@dataclass
class HandshakeAttempt:
    """
    Progress record for one handshake. States only move forward, and exactly one
    terminal state (ESTABLISHED or FAILED) is ever entered.
    """

    target: Optional[HostPort] = None
    cid: str = "-"
    state: HandshakeState = HandshakeState.DISCONNECTED
    result: Optional[HandshakeResult] = None
    error: Optional[BaseException] = None
    history: List[HandshakeState] = field(default_factory=lambda: [HandshakeState.DISCONNECTED])

    def advance(self, new: HandshakeState) -> None:
        if self.state in _TERMINAL:
            raise RuntimeError(f"handshake already {self.state.value}, cannot move to {new.value}")
        if new not in _TERMINAL and _ORDER.index(new) <= _ORDER.index(self.state):
            raise RuntimeError(f"handshake cannot go back from {self.state.value} to {new.value}")
        logger.debug("tunnel[%s]: handshake %s -> %s target=%s", self.cid, self.state.value, new.value, self.target)
        self.state = new
        self.history.append(new)

    def succeed(self, result: HandshakeResult) -> None:
        self.result = result
        self.advance(HandshakeState.ESTABLISHED)

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.advance(HandshakeState.FAILED)


@dataclass
class EstablishedTunnel:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    head_bytes: bytes = b""


def _close_quietly(w: asyncio.StreamWriter) -> None:
    try:
        if not w.is_closing():
            w.close()
    except (OSError, RuntimeError):
        pass


class TunnelEstablisher:
    """
    Drives the CONNECT handshake through the Upstream Proxy.

    No retry and no timeout: each attempt ends in exactly one of a returned
    value (ESTABLISHED) or a raised ProxyerError (FAILED).
    """

    def __init__(
        self,
        config: ProxyerConfig,
        diag: Optional[bool] = None,
        auth: Optional[AuthTokenGenerator] = None,
    ) -> None:
        self.config = config
        self.auth = auth if auth is not None else AuthTokenGenerator(config.secret)
        self.diag = config.diag if diag is None else bool(diag)

    def connect_request(self, target: HostPort, send_auth: bool) -> Tuple[HeadCaptureParser, bytes]:
        parser = HeadCaptureParser("CONNECT", str(target))
        extra: List[Tuple[str, str]] = []
        if send_auth:
            extra.append((AUTH_HEADER_NAME, self.auth.current(str(target))))
        return parser, parser.request_bytes(extra)

    async def connect_through_proxy(
        self,
        target: HostPort,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        send_auth: bool = False,
        attempt: Optional[HandshakeAttempt] = None,
    ) -> bytes:
        """
        Issue CONNECT for `target` on an already-open proxy connection and wait
        for the response head. Returns the bytes pipelined after the head.
        Raises TunnelRejected, ParseError, SocketError or WriteError.
        """
        if attempt is None:
            attempt = HandshakeAttempt(target=target)
        attempt.target = target
        try:
            attempt.advance(HandshakeState.SENDING_CONNECT_REQUEST)
            parser, request = self.connect_request(target, send_auth)
            try:
                writer.write(request)
                await writer.drain()
            except (OSError, RuntimeError) as e:
                raise WriteError(f"CONNECT write failed: {e}", leg="proxy") from e
            logger.debug("tunnel[%s]: wrote CONNECT %s to proxy auth=%s", attempt.cid, target, send_auth)

            attempt.advance(HandshakeState.AWAITING_HANDSHAKE_RESPONSE)
            result = await self._read_head(parser, reader, attempt)
        except ProxyerError as e:
            attempt.fail(e)
            raise

        if result.status_code != 200:
            err = TunnelRejected(result)
            attempt.fail(err)
            raise err
        attempt.succeed(result)
        logger.debug(
            "tunnel[%s]: received %d from proxy, tunnel to %s established head=%d",
            attempt.cid, result.status_code, target, len(result.head_bytes),
        )
        return result.head_bytes

    async def _read_head(
        self,
        parser: HeadCaptureParser,
        reader: asyncio.StreamReader,
        attempt: HandshakeAttempt,
    ) -> HandshakeResult:
        while True:
            try:
                chunk = await reader.read(READ_CHUNK)
            except (OSError, RuntimeError) as e:
                raise SocketError(f"read failed awaiting CONNECT response: {e}", leg="proxy") from e
            if not chunk:
                raise SocketError("connection closed before CONNECT response completed", leg="proxy")
            if self.diag:
                logger.info("tunnel[%s]: proxy sent %r", attempt.cid, chunk[:512])
            result = parser.feed(chunk)
            if result is not None:
                return result

    async def connect_to_this_proxy(self, attempt: Optional[HandshakeAttempt] = None) -> EstablishedTunnel:
        """
        Open a fresh connection to the Upstream Proxy and CONNECT (authenticated)
        to the Tunnel Endpoint on port 443. The upstream socket is closed before
        any error propagates.
        """
        target = self.config.tunnel_target
        if attempt is None:
            attempt = HandshakeAttempt(target=target)
        attempt.target = target
        up = self.config.upstream_proxy

        attempt.advance(HandshakeState.CONNECTING_TO_PROXY)
        try:
            reader, writer = await asyncio.open_connection(host=up.host, port=up.port)
        except OSError as e:
            err = SocketError(f"connect to {up} failed: {e}", leg="proxy")
            attempt.fail(err)
            raise err from e
        logger.debug("tunnel[%s]: connected to real proxy %s", attempt.cid, up)

        try:
            head = await self.connect_through_proxy(target, reader, writer, send_auth=True, attempt=attempt)
        except BaseException:
            _close_quietly(writer)
            raise
        return EstablishedTunnel(reader=reader, writer=writer, head_bytes=head)


__all__ = [
    "EstablishedTunnel",
    "HandshakeAttempt",
    "HandshakeState",
    "TunnelEstablisher",
]
