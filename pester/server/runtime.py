from __future__ import annotations

import asyncio
import logging
from typing import Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection

from pester.core.router import Router
from pester.server.config import ServerConfig, parse_listen
from pester.server.transports import Connection, StreamConnection, WebSocketConnection

log = logging.getLogger("pester.server.runtime")


class ServerRuntime:
    """Serves one Router over a WebSocket listener and an optional raw TCP listener."""

    def __init__(self, config: ServerConfig, router: Optional[Router] = None) -> None:
        self.cfg = config
        self.router = router or Router.create(
            mailbox_limit=config.mailbox_limit,
            auto_rejoin=config.auto_rejoin,
        )
        self.listen_host, self.listen_port = parse_listen(config.listen)
        self.tcp_addr = parse_listen(config.tcp_listen) if config.tcp_listen else None

        self._connections: set[Connection] = set()
        self._ws_server: Optional[Server] = None
        self._tcp_server: Optional[asyncio.Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ws_server = await websockets.serve(self._handle_websocket, self.listen_host, self.listen_port)
        log.info("Pester relay listening on ws://%s:%d", self.listen_host, self.ws_port)

        if self.tcp_addr is not None:
            host, port = self.tcp_addr
            self._tcp_server = await asyncio.start_server(self._handle_stream, host, port)
            log.info("Raw TCP listener on %s:%d", host, self.tcp_port)

    async def stop(self) -> None:
        connections = list(self._connections)
        for conn in connections:
            conn.close()
        await asyncio.gather(*(conn.wait_closed() for conn in connections), return_exceptions=True)

        if self._tcp_server is not None:
            self._tcp_server.close()
            await self._tcp_server.wait_closed()
            self._tcp_server = None
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        log.info("Pester relay stopped")

    @property
    def ws_port(self) -> Optional[int]:
        return _bound_port(self._ws_server)

    @property
    def tcp_port(self) -> Optional[int]:
        return _bound_port(self._tcp_server)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_websocket(self, websocket: ServerConnection) -> None:
        await self._serve(WebSocketConnection(websocket, outbox_limit=self.cfg.outbox_limit))

    async def _handle_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await self._serve(StreamConnection(reader, writer, outbox_limit=self.cfg.outbox_limit))

    async def _serve(self, conn: Connection) -> None:
        conn.start()
        self._connections.add(conn)
        log.debug("Accepted %s connection from %s", conn.kind, conn.remote)
        try:
            async for raw in conn.frames():
                self.router.handle_raw(conn, raw)
        finally:
            self.router.disconnect(conn)
            conn.close()
            self._connections.discard(conn)
            await conn.wait_closed()
            log.debug("Closed %s connection from %s", conn.kind, conn.remote)


def _bound_port(server) -> Optional[int]:
    if server is None or not server.sockets:
        return None
    return server.sockets[0].getsockname()[1]


__all__ = ["ServerRuntime"]
