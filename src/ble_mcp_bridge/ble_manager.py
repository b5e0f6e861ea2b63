"""BLE collaborator: discovery, GATT access and notification fan-in via bleak.

The MCP dispatcher and the HTTP routes only depend on :class:`BLECollaborator`;
:class:`BLEManager` is the bleak-backed implementation used in production.
Error messages are part of the wire contract (they become ``mcp/error`` codes
and HTTP ``details``), so they are kept stable.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from bleak import BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError
from bleak_retry_connector import (
    BleakClientWithServiceCache,
    BleakNotFoundError,
    establish_connection,
)

from .connection import NotificationListener, subscription_key
from .const import DEFAULT_NOTIFICATION_BUFFER
from .envelope import utc_timestamp
from .exception import (
    CharacteristicMissingError,
    CharacteristicNotReadable,
    CharacteristicNotWritable,
    DeviceAlreadyConnected,
    DeviceNotConnected,
    DeviceNotFound,
    DeviceOperationError,
    NotificationsNotSupported,
    ServiceNotFound,
)

logger = logging.getLogger(__name__)

INVALID_VALUE_MESSAGE = (
    'Invalid "value" format. Must be a valid hex string with an even '
    "number of characters, or an empty string."
)


class BLECollaborator(Protocol):
    """Operations the bridge consumes from the BLE layer."""

    async def list_devices(self) -> List[Dict[str, Any]]: ...

    async def connect(self, device_id: str) -> Dict[str, Any]: ...

    async def disconnect(self, device_id: str) -> Dict[str, Any]: ...

    async def list_services(self, device_id: str) -> List[Dict[str, Any]]: ...

    async def list_characteristics(
        self, device_id: str, service_uuid: str
    ) -> List[Dict[str, Any]]: ...

    async def read(
        self, device_id: str, characteristic_uuid: str
    ) -> Optional[str]: ...

    async def write(
        self,
        device_id: str,
        characteristic_uuid: str,
        value: Union[str, bytes],
        without_response: bool = False,
    ) -> Dict[str, Any]: ...

    async def subscribe(
        self,
        device_id: str,
        characteristic_uuid: str,
        on_data: NotificationListener,
    ) -> Dict[str, Any]: ...

    async def unsubscribe(
        self,
        device_id: str,
        characteristic_uuid: str,
        listener: Optional[NotificationListener] = None,
    ) -> Dict[str, Any]: ...

    async def get_notifications(
        self, device_id: str, characteristic_uuid: str
    ) -> List[Dict[str, Any]]: ...


def parse_hex_value(value: Union[str, bytes, bytearray]) -> bytes:
    """Convert a hex string (or raw bytes) to bytes for a GATT write."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str):
        raise ValueError(INVALID_VALUE_MESSAGE)
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise ValueError(INVALID_VALUE_MESSAGE) from exc


class BLEManager:
    """Tracks discovered and connected peripherals."""

    def __init__(
        self, notification_buffer: int = DEFAULT_NOTIFICATION_BUFFER
    ) -> None:
        """Create a manager; call :meth:`start` to begin discovery."""
        self._discovered: Dict[
            str, Tuple[BLEDevice, Optional[AdvertisementData]]
        ] = {}
        self._clients: Dict[str, BleakClientWithServiceCache] = {}
        self._device_locks: Dict[str, asyncio.Lock] = {}
        self._listeners: Dict[str, List[NotificationListener]] = {}
        self._notifications: Dict[str, Deque[Dict[str, Any]]] = {}
        self._notification_buffer = notification_buffer
        self._scanner: Optional[BleakScanner] = None

    def _get_device_lock(self, device_id: str) -> asyncio.Lock:
        """Get or create a lock for connect/disconnect of one device."""
        if device_id not in self._device_locks:
            self._device_locks[device_id] = asyncio.Lock()
        return self._device_locks[device_id]

    # Discovery

    async def start(self, scan: bool = True) -> None:
        """Start continuous background discovery."""
        if not scan or self._scanner is not None:
            return
        scanner = BleakScanner(detection_callback=self._on_detection)
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            logger.warning("BLE scanning unavailable: %s", exc)
            return
        self._scanner = scanner
        logger.info("BLE scanning started")

    async def stop(self) -> None:
        """Stop discovery and disconnect every peripheral."""
        if self._scanner is not None:
            try:
                await self._scanner.stop()
            except (BleakError, OSError) as exc:
                logger.debug("Failed to stop scanner: %s", exc)
            self._scanner = None
        for device_id in list(self._clients):
            try:
                await self.disconnect(device_id)
            except Exception as exc:
                logger.debug("Disconnect of %s on stop failed: %s", device_id, exc)

    def _on_detection(
        self, device: BLEDevice, advertisement_data: AdvertisementData
    ) -> None:
        if device.address not in self._discovered:
            logger.info(
                "Discovered %s (%s)",
                device.address,
                advertisement_data.local_name or device.name or "Unknown",
            )
        self._discovered[device.address] = (device, advertisement_data)

    async def scan(self, timeout: float = 5.0) -> List[Dict[str, Any]]:
        """Run a one-shot scan, merge the results and return all devices."""
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)
        for device, advertisement_data in found.values():
            self._on_detection(device, advertisement_data)
        return await self.list_devices()

    def _summarize(self, device_id: str) -> Dict[str, Any]:
        device, adv = self._discovered[device_id]
        client = self._clients.get(device_id)
        return {
            "id": device_id,
            "address": device.address,
            "name": (adv.local_name if adv else None) or device.name,
            "advertisedServices": list(adv.service_uuids) if adv else [],
            "rssi": adv.rssi if adv else None,
            "state": (
                "connected"
                if client is not None and client.is_connected
                else "disconnected"
            ),
        }

    async def list_devices(self) -> List[Dict[str, Any]]:
        """Return a summary of every discovered peripheral."""
        return [self._summarize(device_id) for device_id in self._discovered]

    # Connection management

    async def connect(self, device_id: str) -> Dict[str, Any]:
        """Connect to a discovered peripheral and resolve its services."""
        lock = self._get_device_lock(device_id)
        if lock.locked():
            raise DeviceAlreadyConnected(
                "Peripheral already connected or connecting"
            )
        async with lock:
            client = self._clients.get(device_id)
            if client is not None and client.is_connected:
                logger.info("Peripheral already connected: %s", device_id)
                return self._summarize(device_id)

            entry = self._discovered.get(device_id)
            if entry is None:
                raise DeviceNotFound("Peripheral not found")
            device = entry[0]

            logger.info("Connecting to %s", device_id)
            try:
                client = await establish_connection(
                    BleakClientWithServiceCache,
                    device,
                    device.name or device.address,
                    self._on_disconnected,
                    use_services_cache=True,
                    ble_device_callback=lambda: self._discovered[device_id][0],
                )
            except BleakNotFoundError as exc:
                raise DeviceNotFound("Peripheral not found") from exc
            except BleakError as exc:
                raise DeviceOperationError(
                    f"Failed to connect to peripheral: {exc}"
                ) from exc

            self._clients[device_id] = client
            logger.info(
                "Connected to %s; services: %s",
                device_id,
                [service.uuid for service in client.services],
            )
            return self._summarize(device_id)

    def _on_disconnected(self, client: BleakClientWithServiceCache) -> None:
        for device_id, known in list(self._clients.items()):
            if known is client:
                self._clients.pop(device_id, None)
                self._drop_listeners(device_id)
                logger.warning("Peripheral %s disconnected", device_id)

    def _drop_listeners(self, device_id: str) -> None:
        prefix = f"{device_id}:"
        for key in [k for k in self._listeners if k.startswith(prefix)]:
            del self._listeners[key]

    async def disconnect(self, device_id: str) -> Dict[str, Any]:
        """Disconnect a connected peripheral."""
        async with self._get_device_lock(device_id):
            client = self._clients.pop(device_id, None)
            if client is None:
                raise DeviceNotConnected("Peripheral not connected or not found")
            self._drop_listeners(device_id)
            logger.info("Disconnecting from %s", device_id)
            try:
                await client.disconnect()
            except BleakError as exc:
                raise DeviceOperationError(
                    f"Failed to disconnect from peripheral: {exc}"
                ) from exc
        return {"id": device_id, "message": "Disconnected successfully"}

    def _require_client(self, device_id: str) -> BleakClientWithServiceCache:
        client = self._clients.get(device_id)
        if client is None or not client.is_connected:
            raise DeviceNotConnected("Peripheral not connected")
        return client

    # GATT access

    async def list_services(self, device_id: str) -> List[Dict[str, Any]]:
        """List GATT services of a connected peripheral."""
        client = self._require_client(device_id)
        return [
            {
                "uuid": service.uuid,
                "name": service.description,
                "handle": service.handle,
            }
            for service in client.services
        ]

    async def list_characteristics(
        self, device_id: str, service_uuid: str
    ) -> List[Dict[str, Any]]:
        """List characteristics of one service."""
        client = self._require_client(device_id)
        service = client.services.get_service(service_uuid)
        if service is None:
            raise ServiceNotFound("Service not found")
        return [
            {
                "uuid": char.uuid,
                "name": char.description,
                "handle": char.handle,
                "properties": list(char.properties),
            }
            for char in service.characteristics
        ]

    def _find_characteristic(
        self, client: BleakClientWithServiceCache, characteristic_uuid: str
    ) -> BleakGATTCharacteristic:
        try:
            char = client.services.get_characteristic(characteristic_uuid)
        except BleakError as exc:
            raise CharacteristicMissingError(
                "Characteristic not found"
            ) from exc
        if char is None:
            raise CharacteristicMissingError("Characteristic not found")
        return char

    async def read(
        self, device_id: str, characteristic_uuid: str
    ) -> Optional[str]:
        """Read a characteristic and return its value as hex."""
        client = self._require_client(device_id)
        char = self._find_characteristic(client, characteristic_uuid)
        if "read" not in char.properties:
            raise CharacteristicNotReadable("Characteristic not readable")
        data = await client.read_gatt_char(char)
        return bytes(data).hex() if data else None

    async def write(
        self,
        device_id: str,
        characteristic_uuid: str,
        value: Union[str, bytes],
        without_response: bool = False,
    ) -> Dict[str, Any]:
        """Write ``value`` (hex string or bytes) to a characteristic.

        Falls back to the other write mode when the requested one is not
        supported by the characteristic.
        """
        payload = parse_hex_value(value)
        client = self._require_client(device_id)
        char = self._find_characteristic(client, characteristic_uuid)

        can_write = "write" in char.properties
        can_write_no_response = "write-without-response" in char.properties
        if not can_write and not can_write_no_response:
            raise CharacteristicNotWritable("Characteristic not writable")

        use_without_response = without_response
        if without_response and not can_write_no_response:
            logger.warning(
                "%s does not support write-without-response; using write",
                characteristic_uuid,
            )
            use_without_response = False
        elif not without_response and not can_write:
            logger.warning(
                "%s does not support write with response; "
                "using write-without-response",
                characteristic_uuid,
            )
            use_without_response = True

        await client.write_gatt_char(
            char, payload, response=not use_without_response
        )
        return {"message": "Write successful"}

    # Notifications

    def _make_notify_handler(
        self, key: str
    ) -> Callable[[BleakGATTCharacteristic, bytearray], None]:
        def handle(_sender: BleakGATTCharacteristic, data: bytearray) -> None:
            value = bytes(data)
            buffer = self._notifications.setdefault(
                key, deque(maxlen=self._notification_buffer)
            )
            buffer.append({"value": value.hex(), "timestamp": utc_timestamp()})
            for listener in list(self._listeners.get(key, ())):
                try:
                    outcome = listener(value)
                    if inspect.isawaitable(outcome):
                        asyncio.ensure_future(outcome)
                except Exception:
                    logger.exception("Notification listener for %s failed", key)

        return handle

    async def subscribe(
        self,
        device_id: str,
        characteristic_uuid: str,
        on_data: NotificationListener,
    ) -> Dict[str, Any]:
        """Register ``on_data`` for notifications of a characteristic.

        Several listeners may share one characteristic; the GATT subscription
        is opened for the first and closed with the last.
        """
        client = self._require_client(device_id)
        char = self._find_characteristic(client, characteristic_uuid)
        can_notify = "notify" in char.properties
        can_indicate = "indicate" in char.properties
        if not can_notify and not can_indicate:
            raise NotificationsNotSupported(
                "Characteristic does not support notifications or indications"
            )

        key = subscription_key(device_id, characteristic_uuid)
        listeners = self._listeners.get(key)
        if listeners is None:
            await client.start_notify(char, self._make_notify_handler(key))
            listeners = self._listeners.setdefault(key, [])
        listeners.append(on_data)
        logger.debug("Listener added for %s (%d total)", key, len(listeners))
        return {
            "message": "Subscription successful",
            "characteristicUuid": characteristic_uuid,
            "supportsNotify": can_notify,
            "supportsIndicate": can_indicate,
        }

    async def unsubscribe(
        self,
        device_id: str,
        characteristic_uuid: str,
        listener: Optional[NotificationListener] = None,
    ) -> Dict[str, Any]:
        """Remove ``listener`` (or all listeners when ``None``)."""
        key = subscription_key(device_id, characteristic_uuid)
        listeners = self._listeners.get(key)
        if listeners is None:
            client = self._require_client(device_id)
            self._find_characteristic(client, characteristic_uuid)
        else:
            if listener is None:
                listeners.clear()
            elif listener in listeners:
                listeners.remove(listener)
            if not listeners:
                del self._listeners[key]
                client = self._clients.get(device_id)
                if client is not None and client.is_connected:
                    await client.stop_notify(characteristic_uuid)
        return {
            "message": "Unsubscription successful",
            "characteristicUuid": characteristic_uuid,
        }

    async def get_notifications(
        self, device_id: str, characteristic_uuid: str
    ) -> List[Dict[str, Any]]:
        """Return the most recent notifications buffered for a characteristic."""
        key = subscription_key(device_id, characteristic_uuid)
        return list(self._notifications.get(key, ()))

    def notification_count(self) -> int:
        """Total buffered notifications, for diagnostics."""
        return sum(len(buf) for buf in self._notifications.values())

    @property
    def connected_devices(self) -> List[str]:
        """Ids of currently connected peripherals."""
        return [
            device_id
            for device_id, client in self._clients.items()
            if client.is_connected
        ]
