"""Shared fixtures: a recording stand-in for asyncio.StreamWriter and a base config."""

import asyncio
from typing import List, Optional, Tuple

import pytest

from proxyer.config import HostPort, ProxyerConfig


class RecordingWriter:
    """Records every write (optionally into a log shared with other writers).

    `fail_after` makes drain() raise once more than that many writes happened.
    """

    def __init__(
        self,
        name: str = "w",
        log: Optional[List[Tuple[str, bytes]]] = None,
        fail_after: Optional[int] = None,
    ):
        self.name = name
        self.log = log if log is not None else []
        self.writes: List[bytes] = []
        self.fail_after = fail_after
        self.closed = False
        self.close_calls = 0

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        self.log.append((self.name, bytes(data)))

    async def drain(self) -> None:
        if self.fail_after is not None and len(self.writes) > self.fail_after:
            raise ConnectionResetError("simulated reset")

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name, default=None):
        return default

    @property
    def data(self) -> bytes:
        return b"".join(self.writes)


def feed_reader(data: bytes = b"", eof: bool = False) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


@pytest.fixture
def recording_writer():
    return RecordingWriter


@pytest.fixture
def make_reader():
    return feed_reader


@pytest.fixture
def config() -> ProxyerConfig:
    return ProxyerConfig(
        upstream_proxy=HostPort("127.0.0.1", 3128),
        tunnel_host="tunnel.example",
        secret="s3cr3t",
        listen_host="127.0.0.1",
        listen_port=0,
    )
