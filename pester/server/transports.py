from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Optional

import websockets
from websockets.asyncio.server import ServerConnection

from pester.core.proto import error_frame
from pester.utils import canonical

log = logging.getLogger("pester.server.transports")

DEFAULT_OUTBOX_LIMIT = 1000


class Connection:
    """One client link, whatever the wire.

    ``send`` never blocks: frames go onto an outbox drained by a writer task,
    so a slow reader only ever delays itself. ``close`` lets the writer flush
    what is already queued before the socket is shut.
    """

    kind = "unknown"

    def __init__(self, *, remote: str = "?", outbox_limit: int = DEFAULT_OUTBOX_LIMIT) -> None:
        self.user_id: Optional[str] = None
        self.remote = remote
        self.outbox_limit = outbox_limit
        self._outbox: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._closing = False
        self._writer: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Core-facing
    # ------------------------------------------------------------------

    def send(self, event: dict) -> bool:
        if self._closing:
            return False
        if self._outbox.qsize() >= self.outbox_limit:
            log.warning(
                "Outbox of %s (%s) is full; dropped %s",
                self.user_id or self.remote, self.kind, event.get("type"),
            )
            return False
        self._outbox.put_nowait(canonical.dumps(event))
        return True

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._writer = asyncio.create_task(self._drain(), name=f"{self.kind}-writer:{self.remote}")

    async def wait_closed(self) -> None:
        if self._writer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer

    async def _drain(self) -> None:
        try:
            while True:
                data = await self._outbox.get()
                if data is None:
                    break
                await self._write(data)
        except (websockets.ConnectionClosed, ConnectionError) as exc:
            log.debug("Writer for %s (%s) stopped: %s", self.user_id or self.remote, self.kind, exc)
        finally:
            self._closing = True
            await self._shutdown()

    def frames(self) -> AsyncIterator[bytes | str]:
        raise NotImplementedError

    async def _write(self, data: bytes) -> None:
        raise NotImplementedError

    async def _shutdown(self) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.user_id or '-'} {self.remote}>"


class WebSocketConnection(Connection):
    kind = "ws"

    def __init__(self, websocket: ServerConnection, **kwargs) -> None:
        super().__init__(remote=_fmt_remote(websocket.remote_address), **kwargs)
        self.websocket = websocket

    async def frames(self) -> AsyncIterator[bytes | str]:
        try:
            async for raw in self.websocket:
                yield raw
        except websockets.ConnectionClosed:
            return

    async def _write(self, data: bytes) -> None:
        await self.websocket.send(data.decode("utf-8"))

    async def _shutdown(self) -> None:
        await self.websocket.close()


class StreamConnection(Connection):
    """Raw TCP link carrying one JSON object per line."""

    kind = "tcp"

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, **kwargs) -> None:
        super().__init__(remote=_fmt_remote(writer.get_extra_info("peername")), **kwargs)
        self.reader = reader
        self.writer = writer

    async def frames(self) -> AsyncIterator[bytes | str]:
        while True:
            try:
                line = await self.reader.readline()
            except ValueError:
                # line longer than the stream limit; the reader already discarded it
                log.warning("Oversized frame from %s discarded", self.remote)
                self.send(error_frame("Invalid JSON"))
                continue
            except ConnectionError:
                return
            if not line:
                return
            line = line.strip()
            if line:
                yield line

    async def _write(self, data: bytes) -> None:
        self.writer.write(data + b"\n")
        await self.writer.drain()

    async def _shutdown(self) -> None:
        self.writer.close()
        with contextlib.suppress(ConnectionError):
            await self.writer.wait_closed()


def _fmt_remote(peer) -> str:
    if isinstance(peer, tuple):
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


__all__ = ["Connection", "WebSocketConnection", "StreamConnection", "DEFAULT_OUTBOX_LIMIT"]
