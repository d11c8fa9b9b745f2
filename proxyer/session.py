from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Tuple

logger = logging.getLogger("proxyer.session")


@dataclass
class SpliceStats:
    client_to_upstream: int = 0
    upstream_to_client: int = 0
    end_client: str = "-"
    end_upstream: str = "-"


class TunnelSession:
    """
    A client socket and an upstream socket with linked lifetime.
    close() closes both, is idempotent, and is safe to call from either side's
    failure path. splice() copies bytes both ways until either side ends.
    """

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
    ) -> None:
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.upstream_reader = upstream_reader
        self.upstream_writer = upstream_writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for w in (self.client_writer, self.upstream_writer):
            try:
                if not w.is_closing():
                    w.close()
            except (OSError, RuntimeError) as e:
                # transport already gone, or its loop is closed
                logger.debug("session: close ignored err=%s", e)

    async def wait_closed(self, timeout: float = 1.0) -> None:
        for w in (self.client_writer, self.upstream_writer):
            try:
                await asyncio.wait_for(w.wait_closed(), timeout=timeout)
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug("session: wait_closed ended err=%r", e)

    async def splice(self, bufsize: int = 65536) -> SpliceStats:
        stats = SpliceStats()

        async def pump(name: str, src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> Tuple[str, int, str]:
            total = 0
            reason = "eof"
            try:
                while True:
                    chunk = await src.read(bufsize)
                    if not chunk:
                        break
                    total += len(chunk)
                    dst.write(chunk)
                    await dst.drain()
            except asyncio.CancelledError:
                reason = "closed"
            except (OSError, RuntimeError) as e:
                logger.debug("session: pump %s ended err=%s", name, e)
                reason = "error"
            return name, total, reason

        t1 = asyncio.create_task(pump("c->u", self.client_reader, self.upstream_writer))
        t2 = asyncio.create_task(pump("u->c", self.upstream_reader, self.client_writer))
        try:
            # Whichever direction ends first takes the other one down with it
            done, pending = await asyncio.wait({t1, t2}, return_when=asyncio.FIRST_COMPLETED)
            self.close()
            for t in pending:
                t.cancel()
            results: List[Tuple[str, int, str]] = [t.result() for t in done]
            if pending:
                for r in await asyncio.gather(*pending, return_exceptions=True):
                    if isinstance(r, tuple):
                        results.append(r)
            for name, total, reason in results:
                if name == "c->u":
                    stats.client_to_upstream = total
                    stats.end_client = reason
                else:
                    stats.upstream_to_client = total
                    stats.end_upstream = reason
        except asyncio.CancelledError:
            t1.cancel()
            t2.cancel()
            await asyncio.gather(t1, t2, return_exceptions=True)
            raise
        finally:
            self.close()
            await self.wait_closed()
        return stats
