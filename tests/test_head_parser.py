"""Tests for the single-shot response head parser and its leftover capture."""

import pytest

from proxyer.errors import ParseError
from proxyer.head_parser import HandshakeResult, HeadCaptureParser

HEAD = b"HTTP/1.1 200 Connection established\r\nProxy-Agent: test-proxy\r\n\r\n"
EXTRA = b"\x16\x03\x01TAIL"


def _parser() -> HeadCaptureParser:
    return HeadCaptureParser("CONNECT", "tunnel.example:443")


class TestRequestBytes:
    def test_connect_request_layout(self):
        p = _parser()
        data = p.request_bytes([("x-proxyer-proxy-auth", "abc123")])
        assert data == (
            b"CONNECT tunnel.example:443 HTTP/1.1\r\n"
            b"Host: tunnel.example:443\r\n"
            b"x-proxyer-proxy-auth: abc123\r\n"
            b"\r\n"
        )

    def test_without_auth(self):
        data = _parser().request_bytes()
        assert data == b"CONNECT tunnel.example:443 HTTP/1.1\r\nHost: tunnel.example:443\r\n\r\n"

    def test_only_once(self):
        p = _parser()
        p.request_bytes()
        with pytest.raises(ParseError):
            p.request_bytes()


class TestFeed:
    def test_parses_status_and_headers(self):
        result = _parser().feed(HEAD)
        assert isinstance(result, HandshakeResult)
        assert result.status_code == 200
        assert result.status_message == "Connection established"
        assert result.headers == [("Proxy-Agent", "test-proxy")]
        assert result.header("proxy-agent") == "test-proxy"

    def test_terminator_at_end_of_buffer(self):
        result = _parser().feed(HEAD)
        assert result.head_bytes == b""

    def test_terminator_in_middle_of_buffer(self):
        result = _parser().feed(HEAD + EXTRA)
        assert result.head_bytes == EXTRA

    def test_terminator_at_start_of_buffer(self):
        p = _parser()
        assert p.feed(HEAD[:-1]) is None
        result = p.feed(HEAD[-1:] + EXTRA)
        assert result.head_bytes == EXTRA

    @pytest.mark.parametrize("split", [1, 9, 17, len(HEAD) - 4, len(HEAD) - 2])
    def test_head_split_across_buffers(self, split):
        p = _parser()
        assert p.feed(HEAD[:split]) is None
        result = p.feed(HEAD[split:] + EXTRA)
        assert result.status_code == 200
        assert result.head_bytes == EXTRA

    def test_byte_at_a_time(self):
        p = _parser()
        stream = HEAD + EXTRA
        result = None
        for i in range(len(HEAD)):
            result = p.feed(stream[i:i + 1])
        assert result is not None
        assert result.head_bytes == b""
        assert p.finished

    def test_non_200_status(self):
        result = _parser().feed(b"HTTP/1.1 403 Forbidden\r\nContent-Length: 0\r\n\r\n")
        assert result.status_code == 403
        assert result.status_message == "Forbidden"

    def test_http10_connect_reply(self):
        result = _parser().feed(b"HTTP/1.0 200 Connection established\r\n\r\nXYZ")
        assert result.status_code == 200
        assert result.head_bytes == b"XYZ"

    def test_interim_response_skipped(self):
        result = _parser().feed(b"HTTP/1.1 100 Continue\r\n\r\nHTTP/1.1 200 OK\r\n\r\nXY")
        assert result.status_code == 200
        assert result.head_bytes == b"XY"

    def test_malformed(self):
        p = _parser()
        with pytest.raises(ParseError):
            p.feed(b"NOT HTTP AT ALL\r\n\r\n")
        assert p.finished
        assert p.result is None

    def test_single_shot(self):
        p = _parser()
        p.feed(HEAD)
        with pytest.raises(ParseError, match="already finished"):
            p.feed(b"more")

    def test_oversized_head(self):
        p = HeadCaptureParser("CONNECT", "tunnel.example:443", max_head_bytes=64)
        with pytest.raises(ParseError):
            p.feed(b"HTTP/1.1 200 OK\r\nX-Pad: " + b"a" * 200)
