"""Per-connection state for the MCP server."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from .envelope import Envelope, encode_envelope

logger = logging.getLogger(__name__)

NotificationListener = Callable[[bytes], Any]


def subscription_key(device_id: str, characteristic_uuid: str) -> str:
    """Key under which a connection stores a BLE notification listener."""
    return f"{device_id}:{characteristic_uuid}"


def split_subscription_key(key: str) -> Tuple[str, str]:
    """Inverse of :func:`subscription_key`.

    Device ids are often MAC addresses containing ``:``, so split on the last
    separator only.
    """
    device_id, _, characteristic_uuid = key.rpartition(":")
    return device_id, characteristic_uuid


class Connection:
    """One accepted socket.

    Outgoing envelopes go through a queue drained by a single writer task, so
    ``send`` never blocks and every envelope reaches the socket in the order
    it was issued.
    """

    def __init__(
        self,
        writer: asyncio.StreamWriter,
        *,
        authenticated: bool = False,
    ) -> None:
        """Wrap ``writer``; call :meth:`start` before sending."""
        self.connection_id = uuid.uuid4().hex[:12]
        self.writer = writer
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.authenticated = authenticated
        self.ble_listeners: Dict[str, NotificationListener] = {}
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<Connection {self.connection_id} {self.peer}>"

    @property
    def closed(self) -> bool:
        """Whether the connection has been torn down."""
        return self._closed

    def start(self) -> None:
        """Start the writer task."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(
                self._write_loop(), name=f"mcp-writer-{self.connection_id}"
            )

    def send(self, envelope: Envelope) -> None:
        """Queue ``envelope`` for delivery.

        Raises ``ConnectionError`` once the connection is closed; broadcasters
        are expected to tolerate that.
        """
        if self._closed:
            raise ConnectionError(f"{self!r} is closed")
        self._queue.put_nowait(encode_envelope(envelope))

    async def _write_loop(self) -> None:
        while True:
            data = await self._queue.get()
            if data is None:
                break
            try:
                self.writer.write(data)
                await self.writer.drain()
            except (ConnectionError, OSError) as exc:
                logger.warning("%r: write failed: %s", self, exc)
                # Reader side notices the dead socket and tears down
                self._closed = True
                break

    async def close(self) -> None:
        """Flush queued envelopes, stop the writer and close the socket."""
        if self._writer_task is not None and not self._closed:
            self._queue.put_nowait(None)
            try:
                await asyncio.wait_for(self._writer_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._writer_task.cancel()
        self._closed = True
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except (asyncio.TimeoutError, ConnectionError, OSError) as exc:
            logger.debug("%r: error while closing: %s", self, exc)
