"""Shared fixtures for the bridge tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import pytest

from ble_mcp_bridge.ble_manager import BLEManager
from ble_mcp_bridge.envelope import Envelope


class RecordingConnection:
    """Connection double that records every envelope it is asked to send."""

    def __init__(self, name: str = "conn", authenticated: bool = True) -> None:
        self.name = name
        self.authenticated = authenticated
        self.ble_listeners: Dict[str, Any] = {}
        self.sent: List[Envelope] = []
        self._closed = False
        self.fail_sends = False

    def __repr__(self) -> str:
        return f"<RecordingConnection {self.name}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, envelope: Envelope) -> None:
        if self.fail_sends or self._closed:
            raise ConnectionError("closed")
        self.sent.append(envelope)

    def types(self) -> List[str]:
        return [env.type for env in self.sent]

    def events(self) -> List[str]:
        return [
            env.payload["event"]
            for env in self.sent
            if env.type == "mcp.tool.event"
        ]

    def last(self) -> Envelope:
        return self.sent[-1]


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def connection() -> RecordingConnection:
    """An authenticated recording connection."""
    return RecordingConnection()


@pytest.fixture
def ble() -> AsyncMock:
    """BLE collaborator double with canned answers."""
    mock = AsyncMock(spec=BLEManager)
    mock.list_devices.return_value = [
        {
            "id": "AA:BB:CC:DD:EE:FF",
            "address": "AA:BB:CC:DD:EE:FF",
            "name": "Sensor",
            "advertisedServices": [],
            "rssi": -60,
            "state": "disconnected",
        }
    ]
    mock.connect.return_value = {"id": "AA:BB:CC:DD:EE:FF", "state": "connected"}
    mock.disconnect.return_value = {
        "id": "AA:BB:CC:DD:EE:FF",
        "message": "Disconnected successfully",
    }
    mock.list_services.return_value = [{"uuid": "180f", "name": "Battery"}]
    mock.list_characteristics.return_value = [
        {"uuid": "2a19", "properties": ["read", "notify"]}
    ]
    mock.read.return_value = "64"
    mock.write.return_value = {"message": "Write successful"}
    mock.subscribe.return_value = {"message": "Subscription successful"}
    mock.unsubscribe.return_value = {"message": "Unsubscription successful"}
    mock.get_notifications.return_value = []
    return mock
