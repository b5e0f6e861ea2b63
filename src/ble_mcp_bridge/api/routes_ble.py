"""HTTP routes for direct BLE access (devices, GATT, read/write)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..ble_manager import BLECollaborator, parse_hex_value
from ..exception import (
    CharacteristicMissingError,
    CharacteristicNotReadable,
    CharacteristicNotWritable,
    DeviceAlreadyConnected,
    DeviceNotConnected,
    DeviceNotFound,
    ServiceNotFound,
)
from ..schemas import WriteCharacteristicRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ble", tags=["ble"])

NOT_FOUND_ERRORS = (
    DeviceNotFound,
    DeviceNotConnected,
    ServiceNotFound,
    CharacteristicMissingError,
    CharacteristicNotReadable,
    CharacteristicNotWritable,
)
BAD_REQUEST_ERRORS = (DeviceAlreadyConnected, ValueError)


class BLERouteError(Exception):
    """Rendered as ``{"error": ..., "details": ...}`` by the app."""

    def __init__(self, status_code: int, error: str, details: str = "") -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details

    def to_response(self) -> JSONResponse:
        body: Dict[str, Any] = {"error": self.error}
        if self.details:
            body["details"] = self.details
        return JSONResponse(status_code=self.status_code, content=body)


def _route_error(error: str, exc: Exception) -> BLERouteError:
    """Map a collaborator exception onto an HTTP status."""
    if isinstance(exc, NOT_FOUND_ERRORS):
        status_code = 404
    elif isinstance(exc, BAD_REQUEST_ERRORS):
        status_code = 400
    else:
        status_code = 500
        logger.error("%s: %s", error, exc, exc_info=True)
    return BLERouteError(status_code, error, str(exc))


def _ble(request: Request) -> BLECollaborator:
    return request.app.state.ble


@router.get("/devices")
async def list_devices(request: Request) -> List[Dict[str, Any]]:
    """Return every discovered peripheral."""
    try:
        return await _ble(request).list_devices()
    except Exception as exc:
        raise _route_error("Failed to get discovered devices", exc) from exc


@router.post("/devices/{device_id}/connect")
async def connect_device(request: Request, device_id: str) -> Dict[str, Any]:
    """Connect to a discovered peripheral."""
    logger.info("Request to connect to %s", device_id)
    try:
        device = await _ble(request).connect(device_id)
    except Exception as exc:
        raise _route_error(
            f"Failed to connect to device {device_id}", exc
        ) from exc
    return {"message": "Connection successful", "device": device}


@router.post("/devices/{device_id}/disconnect")
async def disconnect_device(request: Request, device_id: str) -> Dict[str, Any]:
    """Disconnect a connected peripheral."""
    logger.info("Request to disconnect from %s", device_id)
    try:
        device = await _ble(request).disconnect(device_id)
    except Exception as exc:
        raise _route_error(
            f"Failed to disconnect from device {device_id}", exc
        ) from exc
    return {"message": "Disconnection successful", "device": device}


@router.get("/devices/{device_id}/services")
async def list_services(request: Request, device_id: str) -> List[Dict[str, Any]]:
    """List GATT services of a connected peripheral."""
    try:
        return await _ble(request).list_services(device_id)
    except Exception as exc:
        raise _route_error(
            f"Failed to get services for device {device_id}", exc
        ) from exc


@router.get("/devices/{device_id}/services/{service_uuid}/characteristics")
async def list_characteristics(
    request: Request, device_id: str, service_uuid: str
) -> List[Dict[str, Any]]:
    """List the characteristics of one service."""
    try:
        return await _ble(request).list_characteristics(device_id, service_uuid)
    except Exception as exc:
        raise _route_error(
            f"Failed to get characteristics for device {device_id}, "
            f"service {service_uuid}",
            exc,
        ) from exc


@router.get("/devices/{device_id}/characteristics/{characteristic_uuid}")
async def read_characteristic(
    request: Request, device_id: str, characteristic_uuid: str
) -> Dict[str, Any]:
    """Read a characteristic value as hex."""
    try:
        value = await _ble(request).read(device_id, characteristic_uuid)
    except Exception as exc:
        raise _route_error(
            f"Failed to read characteristic {characteristic_uuid} "
            f"for device {device_id}",
            exc,
        ) from exc
    return {"characteristicUuid": characteristic_uuid, "value": value}


@router.post("/devices/{device_id}/characteristics/{characteristic_uuid}")
async def write_characteristic(
    request: Request,
    device_id: str,
    characteristic_uuid: str,
    body: WriteCharacteristicRequest,
) -> Dict[str, Any]:
    """Write a hex value to a characteristic."""
    if body.value is None:
        raise BLERouteError(
            400,
            'Missing "value" in request body. Please provide a hex string.',
        )
    try:
        parse_hex_value(body.value)
    except ValueError as exc:
        raise BLERouteError(400, str(exc)) from exc

    try:
        return await _ble(request).write(
            device_id, characteristic_uuid, body.value, body.without_response
        )
    except Exception as exc:
        raise _route_error(
            f"Failed to write to characteristic {characteristic_uuid} "
            f"for device {device_id}",
            exc,
        ) from exc
