"""Newline-delimited JSON TCP server speaking the MCP envelope protocol."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .auth import AuthGate
from .ble_manager import BLECollaborator
from .connection import Connection
from .const import (
    DEFAULT_MCP_HOST,
    DEFAULT_MCP_PORT,
    READ_CHUNK_SIZE,
    SERVER_NAME,
    SERVER_VERSION,
)
from .dispatcher import Dispatcher
from .envelope import LineFramer, decode_record, error_envelope, handshake_envelope
from .exception import McpError
from .executions import ExecutionEngine
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


class McpServer:
    """Accepts connections and drives each one's read loop.

    Records from one connection are dispatched strictly in receipt order;
    executions and BLE I/O they start run as independent tasks.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        ble: Optional[BLECollaborator] = None,
        *,
        host: str = DEFAULT_MCP_HOST,
        port: int = DEFAULT_MCP_PORT,
        token: Optional[str] = None,
    ) -> None:
        """Create a server; the registry is frozen when it starts listening."""
        self.registry = registry
        self.engine = ExecutionEngine(registry)
        self.dispatcher = Dispatcher(self.engine, ble)
        self.auth = AuthGate(token)
        self.host = host
        self._port = port
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[Connection] = set()

    @property
    def port(self) -> int:
        """Bound port (useful when listening on port 0)."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    @property
    def connections(self) -> Set[Connection]:
        """Currently open connections."""
        return set(self._connections)

    @property
    def is_serving(self) -> bool:
        """Whether the listening socket is open."""
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        """Freeze the tool registry and start listening."""
        if self._server is not None:
            return
        self.registry.freeze()
        self._server = await asyncio.start_server(
            self._handle_client_connection, self.host, self._port
        )
        logger.info(
            "MCP server listening on %s:%d (auth %s, %d tools)",
            self.host,
            self.port,
            "required" if self.auth.required else "disabled",
            len(self.registry),
        )

    async def serve_forever(self) -> None:
        """Start (if needed) and serve until cancelled."""
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Close the listener, every connection and outstanding executions."""
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for connection in list(self._connections):
            await connection.close()
        await self.engine.shutdown()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for MCP listener to close")
        logger.info("MCP server stopped")

    async def _handle_client_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = Connection(writer, authenticated=self.auth.initial_state())
        connection.start()
        self._connections.add(connection)
        logger.info("%r: connected", connection)
        try:
            connection.send(handshake_envelope(SERVER_NAME, SERVER_VERSION))
            await self._process_client_messages(connection, reader)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as exc:
            logger.info("%r: transport error: %s", connection, exc)
        finally:
            await self._disconnect_client(connection)

    async def _process_client_messages(
        self, connection: Connection, reader: asyncio.StreamReader
    ) -> None:
        framer = LineFramer()
        while not connection.closed:
            data = await reader.read(READ_CHUNK_SIZE)
            if not data:
                break
            for record in framer.feed(data):
                await self._handle_record(connection, record)
        if framer.pending:
            logger.debug(
                "%r: dropping %d bytes of unterminated input",
                connection,
                framer.pending,
            )

    async def _handle_record(self, connection: Connection, record: str) -> None:
        try:
            envelope = decode_record(record)
        except McpError as exc:
            logger.debug("%r: rejected record: %s", connection, exc.code)
            connection.send(error_envelope(exc.code))
            return
        if not self.auth.admit(connection, envelope):
            return
        await self.dispatcher.dispatch(connection, envelope)

    async def _disconnect_client(self, connection: Connection) -> None:
        self._connections.discard(connection)
        try:
            await self.dispatcher.teardown(connection)
        finally:
            await connection.close()
        logger.info("%r: disconnected", connection)
