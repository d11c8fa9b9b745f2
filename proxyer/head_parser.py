from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import h11

from .errors import ParseError

# Parses only the status line and headers of a proxy's reply to a request we sent.
# The body is never read: a CONNECT 200 carries none, and on any other status the
# connection is torn down anyway.

DEFAULT_MAX_HEAD_BYTES = 64 * 1024


@dataclass(frozen=True)
class HandshakeResult:
    status_code: int
    status_message: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    # Bytes after the header terminator in the buffer that completed the head.
    # They belong to the next protocol layer and must be forwarded, not dropped.
    head_bytes: bytes = b""

    def header(self, name: str) -> Optional[str]:
        n = name.lower()
        for k, v in self.headers:
            if k.lower() == n:
                return v
        return None


class HeadCaptureParser:
    """
    Single-shot incremental HTTP/1.1 response head parser.

    The parser is primed with the request it answers so that CONNECT semantics
    apply (a 2xx reply switches protocols, so nothing after the head is treated
    as body). Feed raw chunks as they arrive; `feed` returns None until the head
    is complete, then the HandshakeResult exactly once. Any further feed is an
    error: build a new parser for every handshake.
    """

    def __init__(
        self,
        request_method: str = "CONNECT",
        request_target: str = "",
        max_head_bytes: int = DEFAULT_MAX_HEAD_BYTES,
    ) -> None:
        self.request_method = request_method.upper()
        self.request_target = request_target
        self._conn = h11.Connection(our_role=h11.CLIENT, max_incomplete_event_size=max_head_bytes)
        self._request_sent = False
        self._finished = False
        self.result: Optional[HandshakeResult] = None

    @property
    def finished(self) -> bool:
        return self._finished

    def request_bytes(self, extra_headers: Iterable[Tuple[str, str]] = ()) -> bytes:
        """
        Serialize the request this parser answers: request line, Host, then
        `extra_headers` in order, then the blank line.
        """
        if self._request_sent:
            raise ParseError("request already serialized for this parser")
        headers = [("Host", self.request_target)]
        headers.extend(extra_headers)
        try:
            data = self._conn.send(
                h11.Request(
                    method=self.request_method.encode("ascii"),
                    target=self.request_target.encode("ascii"),
                    headers=[(k.encode("latin1"), v.encode("latin1")) for k, v in headers],
                )
            )
            data += self._conn.send(h11.EndOfMessage())
        except h11.LocalProtocolError as e:
            raise ParseError(f"cannot build {self.request_method} request: {e}") from e
        self._request_sent = True
        return data

    def feed(self, data: bytes) -> Optional[HandshakeResult]:
        if self._finished:
            raise ParseError("parser already finished")
        if not self._request_sent:
            self.request_bytes()
        try:
            self._conn.receive_data(data)
            while True:
                event = self._conn.next_event()
                if event is h11.NEED_DATA:
                    return None
                if isinstance(event, h11.InformationalResponse):
                    # 1xx interim replies precede the real head
                    continue
                if isinstance(event, h11.Response):
                    return self._complete(event)
                raise ParseError(f"unexpected event before response head: {event!r}")
        except h11.RemoteProtocolError as e:
            self._finished = True
            raise ParseError(f"malformed response head: {e}") from e
        except ParseError:
            self._finished = True
            raise

    def _complete(self, event: h11.Response) -> HandshakeResult:
        self._finished = True
        # Everything h11 has not consumed lies after the terminator, and it can
        # only come from the chunk that completed the head.
        leftover, _closed = self._conn.trailing_data
        self.result = HandshakeResult(
            status_code=event.status_code,
            status_message=event.reason.decode("latin1", "replace"),
            headers=[
                (k.decode("latin1"), v.decode("latin1"))
                for k, v in event.headers.raw_items()
            ],
            head_bytes=bytes(leftover),
        )
        return self.result
