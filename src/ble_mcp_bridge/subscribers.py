"""Per-execution subscriber sets and event fan-out."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Set

from .connection import Connection
from .envelope import Envelope

logger = logging.getLogger(__name__)


class SubscriberFanout:
    """Tracks which connections receive each execution's event stream."""

    def __init__(self) -> None:
        """Start with no subscriber sets."""
        self._subscribers: Dict[str, Set[Connection]] = {}

    def create(self, exec_id: str, initiator: Connection) -> None:
        """Open the set for a new execution, seeded with its initiator."""
        self._subscribers[exec_id] = {initiator}

    def known(self, exec_id: str) -> bool:
        """Whether a set exists for ``exec_id``."""
        return exec_id in self._subscribers

    def subscribe(self, exec_id: str, connection: Connection) -> None:
        """Idempotently add ``connection``; caller checks the execution exists."""
        self._subscribers.setdefault(exec_id, set()).add(connection)

    def unsubscribe(self, exec_id: str, connection: Connection) -> None:
        """Idempotently remove ``connection`` from one set."""
        subs = self._subscribers.get(exec_id)
        if subs is not None:
            subs.discard(connection)

    def remove_connection(self, connection: Connection) -> None:
        """Drop ``connection`` from every set (connection teardown)."""
        for subs in self._subscribers.values():
            subs.discard(connection)

    def subscribers(self, exec_id: str) -> FrozenSet[Connection]:
        """Snapshot of the current set for ``exec_id``."""
        return frozenset(self._subscribers.get(exec_id, ()))

    def broadcast(self, exec_id: str, envelope: Envelope) -> int:
        """Send ``envelope`` to every subscriber of ``exec_id``.

        A failed write is logged and skipped; the connection stays in the set
        until its own teardown removes it. Returns the number of deliveries.
        """
        delivered = 0
        for connection in self.subscribers(exec_id):
            try:
                connection.send(envelope)
            except Exception as exc:
                logger.warning(
                    "Broadcast for %s to %r failed: %s", exec_id, connection, exc
                )
                continue
            delivered += 1
        logger.debug(
            "Broadcast %s for %s to %d subscribers",
            envelope.payload.get("event"),
            exec_id,
            delivered,
        )
        return delivered
