from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from typing import Callable, List, Optional, Set, Tuple

import aiohttp
import h11

from .auth import AUTH_HEADER_NAME, DEST_HEADER_NAME, REAL_HOST_HEADER_NAME, AuthTokenGenerator
from .config import HostPort, ProxyerConfig
from .errors import ProtocolError, ProxyerError, WriteError
from .establisher import HandshakeAttempt, TunnelEstablisher
from .session import SpliceStats, TunnelSession

# Disguising local proxy in front of a restrictive upstream proxy.
# - CONNECT: double CONNECT through the upstream proxy to the tunnel endpoint,
#   authenticated payload prefix, then a raw splice. No TLS termination.
# - Anything else: re-issued through the upstream proxy to the tunnel endpoint
#   under a cache-busting path, with the real destination in x-proxyer-* headers.

logger = logging.getLogger("proxyer.tunnel")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("PROXYER_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
    )

READ_CHUNK = 65536

RESPONSE_OK = b"HTTP/1.1 200 OK\r\n\r\n"
RESPONSE_BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\n\r\n"
RESPONSE_BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\n\r\n"

# Framing is recomputed on each leg, so these never cross it
_REQUEST_DROP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-connection",
    "transfer-encoding",
    "content-length",
    "te",
    DEST_HEADER_NAME,
    AUTH_HEADER_NAME,
    REAL_HOST_HEADER_NAME,
})
_RESPONSE_DROP_HEADERS = frozenset({b"connection", b"keep-alive", b"transfer-encoding"})
# Don't let aiohttp add headers the client never sent
_SKIP_AUTO_HEADERS = ("User-Agent", "Accept", "Accept-Encoding", "Content-Type")


def _new_cid() -> str:
    n = time.time_ns() ^ os.getpid() ^ threading.get_ident()
    return f"{n & 0xFFFFFFFFFFFF:012x}"


async def _write(w: asyncio.StreamWriter, data: bytes, leg: str) -> None:
    try:
        w.write(data)
        await w.drain()
    except (OSError, RuntimeError) as e:
        raise WriteError(f"write failed: {e}", leg=leg) from e


def _with_connect_host(head: bytes) -> bytes:
    """
    CONNECT is routed on its request line alone. h11 insists on Host for
    HTTP/1.1, so a CONNECT without one gets Host copied from its target.
    """
    line_end = head.find(b"\r\n")
    head_end = head.find(b"\r\n\r\n")
    if line_end < 0 or head_end < 0:
        return head
    parts = head[:line_end].split(b" ")
    if len(parts) != 3 or parts[0].upper() != b"CONNECT":
        return head
    for line in head[line_end + 2:head_end].split(b"\r\n"):
        if line.split(b":", 1)[0].strip().lower() == b"host":
            return head
    return head[:line_end] + b"\r\nHost: " + parts[1] + head[line_end:]


class DisguiseServer:
    """
    Inbound proxy server. Routes each connection by request method:

    CONNECT: tunnels raw bytes to the requested target via the tunnel endpoint.
    other:   forwards the request through the upstream proxy in disguise.
    """

    def __init__(
        self,
        config: ProxyerConfig,
        emit: Optional[Callable[[dict], None]] = None,
        max_header_bytes: int = 64 * 1024,
        auth: Optional[AuthTokenGenerator] = None,
    ) -> None:
        self.config = config
        self.host = config.listen_host
        self.port = int(config.listen_port)
        self.emit = emit
        self.max_header_bytes = int(max_header_bytes)
        self.diag = bool(config.diag)
        self.auth = auth if auth is not None else AuthTokenGenerator(config.secret)
        self.establisher = TunnelEstablisher(config, auth=self.auth)
        self._server: Optional[asyncio.AbstractServer] = None
        # Track active client handler tasks for graceful shutdown
        self._client_tasks: Set[asyncio.Task] = set()

    @property
    def bound_port(self) -> Optional[int]:
        srv = self._server
        if srv is None or not srv.sockets:
            return None
        return srv.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port, start_serving=True)
        addrs = ", ".join(str(s.getsockname()) for s in (self._server.sockets or []))
        logger.info(
            "tunnel: listening on %s (upstream=%s tunnel=%s)",
            addrs, self.config.upstream_proxy, self.config.tunnel_target,
        )

    async def stop(self) -> None:
        srv = self._server
        if srv:
            srv.close()
        # Cancel and await active client tasks to avoid "Task was destroyed but it is pending!"
        # wait_closed() also waits for open connections, so this has to come first.
        tasks = list(self._client_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if srv:
            await srv.wait_closed()
            self._server = None

    async def serve_until(self, stop_evt: threading.Event) -> None:
        await self.start()
        # poll stop event
        while not stop_evt.is_set():
            await asyncio.sleep(0.2)
        await self.stop()

    def _emit(self, evt: dict) -> None:
        if self.emit is None:
            return
        try:
            self.emit(evt)
        except Exception as e:
            logger.debug("tunnel: status emit failed: %s", e)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        cid = _new_cid()
        cur = asyncio.current_task()
        if cur is not None:
            self._client_tasks.add(cur)
        try:
            conn = h11.Connection(our_role=h11.SERVER, max_incomplete_event_size=self.max_header_bytes)
            try:
                request = await self._read_request_head(conn, reader)
            except (h11.RemoteProtocolError, ProtocolError) as e:
                logger.info("tunnel[%s]: reject peer=%s reason=bad_request err=%s", cid, peer, e)
                await self._respond_raw(writer, RESPONSE_BAD_REQUEST)
                return
            except OSError as e:
                logger.debug("tunnel[%s]: client read error peer=%s err=%s", cid, peer, e)
                return
            if request is None:
                return

            method = request.method.decode("latin1").upper()
            target = request.target.decode("latin1")
            if self.diag:
                logger.info("tunnel[%s]: accept peer=%s %s %s", cid, peer, method, target)

            if method == "CONNECT":
                # Bytes the client pipelined after its CONNECT head
                conn_head, _closed = conn.trailing_data
                await self._handle_connect(target, bytes(conn_head), reader, writer, cid=cid)
            else:
                await self._handle_http(conn, request, reader, writer, cid=cid)
        finally:
            try:
                if not writer.is_closing():
                    writer.close()
            except (OSError, RuntimeError):
                pass
            if cur is not None:
                self._client_tasks.discard(cur)

    async def _read_request_head(self, conn: h11.Connection, reader: asyncio.StreamReader) -> Optional[h11.Request]:
        # Collect the whole head first so a Host-less CONNECT can be fixed up
        # before h11 sees it
        buf = bytearray()
        eof = False
        while b"\r\n\r\n" not in buf:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                eof = True
                break
            buf += chunk
            if len(buf) > self.max_header_bytes and b"\r\n\r\n" not in buf:
                raise ProtocolError(f"request head exceeds {self.max_header_bytes} bytes")
        if not buf:
            return None
        conn.receive_data(_with_connect_host(bytes(buf)))
        if eof:
            conn.receive_data(b"")
        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                # b"" tells h11 the peer closed
                conn.receive_data(await reader.read(READ_CHUNK))
                continue
            if isinstance(event, h11.Request):
                return event
            if isinstance(event, h11.ConnectionClosed):
                return None
            raise ProtocolError(f"unexpected event before request head: {event!r}")

    async def _handle_connect(
        self,
        target: str,
        conn_head: bytes,
        client_r: asyncio.StreamReader,
        client_w: asyncio.StreamWriter,
        cid: str = "-",
    ) -> None:
        try:
            hp = HostPort.parse(target)
        except ValueError as e:
            logger.warning("tunnel[%s]: reject reason=bad_connect_target target=%r err=%s", cid, target, e)
            await self._respond_raw(client_w, RESPONSE_BAD_GATEWAY)
            return
        logger.info("tunnel[%s]: received CONNECT request for %s", cid, hp)

        # The tunnel endpoint reads the token first, then the client's own bytes
        payload_head = self.auth.current(str(hp)).encode("ascii") + conn_head

        attempt = HandshakeAttempt(target=self.config.tunnel_target, cid=cid)
        t0 = time.monotonic()
        try:
            tunnel = await self.establisher.connect_to_this_proxy(attempt)
        except ProxyerError as e:
            logger.warning("tunnel[%s]: CONNECT failed target=%s state=%s err=%s", cid, hp, attempt.state.value, e)
            self._emit({"type": "tunnel_fail", "target": str(hp), "error": str(e), "ts": time.time()})
            await self._respond_raw(client_w, RESPONSE_BAD_GATEWAY)
            return
        hs_ms = (time.monotonic() - t0) * 1000.0
        if self.diag:
            logger.info("tunnel[%s]: connected through proxy to %s hs_ms=%.0f", cid, self.config.tunnel_target, hs_ms)

        session = TunnelSession(client_r, client_w, tunnel.reader, tunnel.writer)
        self._emit({"type": "tunnel_open", "target": str(hp), "ts": time.time()})
        t_pipe0 = time.monotonic()
        try:
            stats = await self.open_tunnel(session, payload_head, tunnel.head_bytes, cid=cid)
        except WriteError as e:
            logger.warning("tunnel[%s]: CONNECT aborted target=%s err=%s", cid, hp, e)
            self._emit({"type": "tunnel_closed", "target": str(hp), "up": 0, "down": 0, "ts": time.time()})
            return
        finally:
            # stop() may cancel this mid-write
            session.close()
        dur_ms = (time.monotonic() - t_pipe0) * 1000.0
        self._emit({
            "type": "tunnel_closed",
            "target": str(hp),
            "up": stats.client_to_upstream,
            "down": stats.upstream_to_client,
            "ts": time.time(),
        })
        logger.info(
            "tunnel[%s]: CONNECT closed target=%s c2u=%d u2c=%d end=%s|%s dur_ms=%.0f",
            cid, hp, stats.client_to_upstream, stats.upstream_to_client,
            stats.end_client, stats.end_upstream, dur_ms,
        )

    async def open_tunnel(
        self,
        session: TunnelSession,
        payload_head: bytes,
        head_bytes: bytes,
        cid: str = "-",
    ) -> SpliceStats:
        """
        Finish an established CONNECT: payload head upstream, then 200 OK to the
        client, then the upstream's pipelined head bytes, then the live splice.
        Each write completes before the next starts. Before the 200 is out a
        failure answers 502; after it, both sockets are simply closed.
        """
        ok_sent = False
        try:
            await _write(session.upstream_writer, payload_head, "upstream")
            await _write(session.client_writer, RESPONSE_OK, "client")
            ok_sent = True
            if head_bytes:
                await _write(session.client_writer, head_bytes, "client")
        except WriteError:
            if not ok_sent:
                await self._respond_raw(session.client_writer, RESPONSE_BAD_GATEWAY)
            session.close()
            raise
        if self.diag:
            logger.info(
                "tunnel[%s]: splice start payload_head=%d head_bytes=%d",
                cid, len(payload_head), len(head_bytes),
            )
        return await session.splice(bufsize=READ_CHUNK)

    async def _handle_http(
        self,
        conn: h11.Connection,
        request: h11.Request,
        client_r: asyncio.StreamReader,
        client_w: asyncio.StreamWriter,
        cid: str = "-",
    ) -> None:
        method = request.method.decode("latin1").upper()
        url = request.target.decode("latin1")
        logger.info("tunnel[%s]: basic HTTP proxy: %s %s", cid, method, url)

        head_sent = False
        try:
            body = await self._read_request_body(conn, client_r)
            headers = self.disguise_headers(request, url)
            # Only there to defeat caches between here and the tunnel endpoint
            dont_cache = str(int(time.time() * 1000))
            up = self.config.upstream_proxy
            decoy_url = f"http://{self.config.tunnel_host}/{dont_cache}"
            if self.diag:
                logger.info("tunnel[%s]: sending %s %s via %s", cid, method, decoy_url, up)

            connector = aiohttp.TCPConnector(force_close=True)
            timeout = aiohttp.ClientTimeout(total=None)
            async with aiohttp.ClientSession(
                connector=connector, timeout=timeout, auto_decompress=False, trust_env=False,
            ) as http:
                async with http.request(
                    method,
                    decoy_url,
                    headers=headers,
                    data=body or None,
                    proxy=f"http://{up.host}:{up.port}",
                    allow_redirects=False,
                    skip_auto_headers=_SKIP_AUTO_HEADERS,
                ) as resp:
                    out_headers: List[Tuple[bytes, bytes]] = [
                        (k, v) for k, v in resp.raw_headers if k.lower() not in _RESPONSE_DROP_HEADERS
                    ]
                    # One request per inbound connection
                    out_headers.append((b"Connection", b"close"))
                    data = conn.send(
                        h11.Response(
                            status_code=resp.status,
                            reason=(resp.reason or "").encode("latin1", "replace"),
                            headers=out_headers,
                        )
                    )
                    await _write(client_w, data, "client")
                    head_sent = True
                    total = 0
                    async for chunk in resp.content.iter_chunked(READ_CHUNK):
                        total += len(chunk)
                        await _write(client_w, conn.send(h11.Data(data=chunk)), "client")
                    await _write(client_w, conn.send(h11.EndOfMessage()), "client")
            self._emit({"type": "http_forward", "url": url, "status": resp.status, "bytes": total, "ts": time.time()})
            logger.info("tunnel[%s]: basic HTTP proxy done %s status=%d bytes=%d", cid, url, resp.status, total)
        except (
            ProxyerError,
            aiohttp.ClientError,
            h11.ProtocolError,
            OSError,
            ValueError,
        ) as e:
            logger.warning("tunnel[%s]: HTTP forward failed url=%s head_sent=%s err=%s", cid, url, head_sent, e)
            self._emit({"type": "http_fail", "url": url, "error": str(e), "ts": time.time()})
            if not head_sent:
                await self._respond_raw(client_w, RESPONSE_BAD_GATEWAY)

    async def _read_request_body(self, conn: h11.Connection, reader: asyncio.StreamReader) -> bytes:
        body = bytearray()
        while True:
            try:
                event = conn.next_event()
            except h11.RemoteProtocolError as e:
                raise ProtocolError(f"bad request body: {e}") from e
            if event is h11.NEED_DATA:
                conn.receive_data(await reader.read(READ_CHUNK))
                continue
            if isinstance(event, h11.Data):
                body += event.data
            elif isinstance(event, h11.EndOfMessage):
                return bytes(body)
            else:
                raise ProtocolError(f"unexpected event in request body: {event!r}")

    def disguise_headers(self, request: h11.Request, url: str) -> List[Tuple[str, str]]:
        """
        The client's headers minus framing and any x-proxyer-* it sent, plus the
        original destination, a token bound to it, and the original Host.
        """
        out: List[Tuple[str, str]] = []
        real_host: Optional[str] = None
        for k, v in request.headers.raw_items():
            kn = k.decode("latin1")
            vn = v.decode("latin1")
            kl = kn.lower()
            if kl == "host":
                real_host = vn
            if kl in _REQUEST_DROP_HEADERS:
                continue
            out.append((kn, vn))
        out.append((DEST_HEADER_NAME, url))
        out.append((AUTH_HEADER_NAME, self.auth.current(url)))
        # The upstream proxy will likely rewrite Host, so keep the original too
        if real_host is not None:
            out.append((REAL_HOST_HEADER_NAME, real_host))
        return out

    async def _respond_raw(self, w: asyncio.StreamWriter, data: bytes) -> None:
        try:
            w.write(data)
            await w.drain()
        except (OSError, RuntimeError) as e:
            logger.debug("tunnel: best-effort response failed: %s", e)


def run_disguise_proxy(
    stop_event: threading.Event,
    config: ProxyerConfig,
    emit: Optional[Callable[[dict], None]] = None,
) -> None:
    """
    Blocking entry-point: runs an asyncio server until stop_event is set.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = DisguiseServer(config, emit=emit)

    async def _main():
        await server.serve_until(stop_event)

    try:
        loop.run_until_complete(_main())
    finally:
        pending = asyncio.all_tasks(loop)
        for t in pending:
            t.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
