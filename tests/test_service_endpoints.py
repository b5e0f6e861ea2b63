"""Tests for the FastAPI BLE endpoints and service lifespan."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from ble_mcp_bridge.config import BridgeSettings
from ble_mcp_bridge.exception import (
    CharacteristicNotReadable,
    DeviceAlreadyConnected,
    DeviceNotConnected,
    DeviceNotFound,
    DeviceOperationError,
    ServiceNotFound,
)
from ble_mcp_bridge.service import create_app

DEVICE = "AA:BB:CC:DD:EE:FF"
CHAR = "2a19"


@pytest.fixture()
def test_client(ble: AsyncMock):
    """Provide a TestClient with lifespan and a mocked BLE collaborator."""
    settings = BridgeSettings(auto_scan=False, mcp_host="127.0.0.1", mcp_port=0)
    app = create_app(settings, ble, start_mcp=False)
    with TestClient(app) as client:
        yield client


def test_lifespan_starts_and_stops_ble(ble: AsyncMock):
    """The BLE manager and MCP server follow the app lifecycle."""
    settings = BridgeSettings(auto_scan=False, mcp_host="127.0.0.1", mcp_port=0)
    app = create_app(settings, ble)
    with TestClient(app):
        ble.start.assert_awaited_once_with(scan=False)
        server = app.state.mcp_server
        assert server.is_serving
        assert server.port != 0
        assert "echo" in server.registry
        assert "ble.capture" in server.registry
    ble.stop.assert_awaited_once_with()
    assert not server.is_serving


def test_list_devices(test_client: TestClient, ble: AsyncMock):
    resp = test_client.get("/ble/devices")
    assert resp.status_code == 200
    assert resp.json()[0]["id"] == DEVICE


def test_list_devices_failure(test_client: TestClient, ble: AsyncMock):
    ble.list_devices.side_effect = RuntimeError("adapter off")
    resp = test_client.get("/ble/devices")
    assert resp.status_code == 500
    assert resp.json() == {
        "error": "Failed to get discovered devices",
        "details": "adapter off",
    }


def test_connect_device(test_client: TestClient, ble: AsyncMock):
    resp = test_client.post(f"/ble/devices/{DEVICE}/connect")
    assert resp.status_code == 200
    assert resp.json() == {
        "message": "Connection successful",
        "device": {"id": DEVICE, "state": "connected"},
    }
    ble.connect.assert_awaited_once_with(DEVICE)


@pytest.mark.parametrize(
    "exc, status",
    [
        (DeviceNotFound("Peripheral not found"), 404),
        (DeviceAlreadyConnected("Peripheral already connected or connecting"), 400),
        (DeviceOperationError("Failed to connect to peripheral: timeout"), 500),
    ],
)
def test_connect_errors(test_client: TestClient, ble: AsyncMock, exc, status):
    """Collaborator errors map onto HTTP status codes."""
    ble.connect.side_effect = exc
    resp = test_client.post(f"/ble/devices/{DEVICE}/connect")
    assert resp.status_code == status
    body = resp.json()
    assert body["error"] == f"Failed to connect to device {DEVICE}"
    assert body["details"] == str(exc)


def test_disconnect_device(test_client: TestClient, ble: AsyncMock):
    resp = test_client.post(f"/ble/devices/{DEVICE}/disconnect")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Disconnection successful"


def test_disconnect_not_connected(test_client: TestClient, ble: AsyncMock):
    ble.disconnect.side_effect = DeviceNotConnected(
        "Peripheral not connected or not found"
    )
    resp = test_client.post(f"/ble/devices/{DEVICE}/disconnect")
    assert resp.status_code == 404


def test_services_and_characteristics(test_client: TestClient, ble: AsyncMock):
    resp = test_client.get(f"/ble/devices/{DEVICE}/services")
    assert resp.json() == [{"uuid": "180f", "name": "Battery"}]

    resp = test_client.get(f"/ble/devices/{DEVICE}/services/180f/characteristics")
    assert resp.status_code == 200
    assert resp.json()[0]["uuid"] == "2a19"

    ble.list_characteristics.side_effect = ServiceNotFound("Service not found")
    resp = test_client.get(f"/ble/devices/{DEVICE}/services/dead/characteristics")
    assert resp.status_code == 404
    assert resp.json()["details"] == "Service not found"


def test_read_characteristic(test_client: TestClient, ble: AsyncMock):
    resp = test_client.get(f"/ble/devices/{DEVICE}/characteristics/{CHAR}")
    assert resp.status_code == 200
    assert resp.json() == {"characteristicUuid": CHAR, "value": "64"}

    ble.read.side_effect = CharacteristicNotReadable("Characteristic not readable")
    resp = test_client.get(f"/ble/devices/{DEVICE}/characteristics/{CHAR}")
    assert resp.status_code == 404


def test_write_characteristic(test_client: TestClient, ble: AsyncMock):
    resp = test_client.post(
        f"/ble/devices/{DEVICE}/characteristics/{CHAR}",
        json={"value": "0aFF", "withoutResponse": True},
    )
    assert resp.status_code == 200
    assert resp.json() == {"message": "Write successful"}
    ble.write.assert_awaited_once_with(DEVICE, CHAR, "0aFF", True)


def test_write_empty_value_allowed(test_client: TestClient, ble: AsyncMock):
    resp = test_client.post(
        f"/ble/devices/{DEVICE}/characteristics/{CHAR}", json={"value": ""}
    )
    assert resp.status_code == 200
    ble.write.assert_awaited_once_with(DEVICE, CHAR, "", False)


def test_write_missing_value(test_client: TestClient, ble: AsyncMock):
    resp = test_client.post(f"/ble/devices/{DEVICE}/characteristics/{CHAR}", json={})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith('Missing "value"')
    ble.write.assert_not_awaited()


@pytest.mark.parametrize("value", ["abc", "zz", "0x01"])
def test_write_invalid_hex(test_client: TestClient, ble: AsyncMock, value):
    """Odd-length or non-hex values are rejected before touching BLE."""
    resp = test_client.post(
        f"/ble/devices/{DEVICE}/characteristics/{CHAR}", json={"value": value}
    )
    assert resp.status_code == 400
    assert resp.json()["error"].startswith('Invalid "value" format')
    ble.write.assert_not_awaited()
