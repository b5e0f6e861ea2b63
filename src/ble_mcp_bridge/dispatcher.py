"""Routes admitted envelopes to the tool, execution and BLE handlers."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .ble_manager import BLECollaborator
from .connection import (
    Connection,
    NotificationListener,
    split_subscription_key,
    subscription_key,
)
from .const import BLE_NOTIFICATION_TYPE, MessageType
from .envelope import Envelope, error_envelope, make_envelope, utc_timestamp
from .exception import McpError
from .executions import ExecutionEngine

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Envelope], Awaitable[Optional[Dict[str, Any]]]]


def _require(payload: Dict[str, Any], field: str, code: str) -> Any:
    value = payload.get(field)
    if value is None or value == "":
        raise McpError(code)
    return value


class Dispatcher:
    """Maps each :class:`MessageType` to a handler and its reply type.

    A handler returns the reply payload, or ``None`` when it has already
    queued its own replies (execute and cancel, whose ordering matters).
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        ble: Optional[BLECollaborator] = None,
    ) -> None:
        """Bind to the execution engine and an optional BLE collaborator."""
        self.engine = engine
        self.registry = engine.registry
        self.ble = ble
        self._handlers: Dict[MessageType, Tuple[Handler, Optional[str]]] = {
            MessageType.TOOLS_DISCOVER: (
                self._handle_tools_list,
                "mcp.tools.list.result",
            ),
            MessageType.TOOLS_LIST: (
                self._handle_tools_list,
                "mcp.tools.list.result",
            ),
            MessageType.TOOL_INFO: (
                self._handle_tool_info,
                "mcp.tool.info.result",
            ),
            MessageType.TOOL_EXECUTE: (self._handle_tool_execute, None),
            MessageType.EXEC_SUBSCRIBE: (
                self._handle_exec_subscribe,
                "mcp.exec.subscribe.ack",
            ),
            MessageType.EXEC_UNSUBSCRIBE: (
                self._handle_exec_unsubscribe,
                "mcp.exec.unsubscribe.ack",
            ),
            MessageType.EXEC_STATUS: (
                self._handle_exec_status,
                "mcp.exec.status.result",
            ),
            MessageType.EXEC_CANCEL: (self._handle_exec_cancel, None),
            MessageType.BLE_DEVICES: (self._handle_ble_devices, None),
            MessageType.BLE_CONNECT: (self._handle_ble_connect, None),
            MessageType.BLE_DISCONNECT: (self._handle_ble_disconnect, None),
            MessageType.BLE_SERVICES: (self._handle_ble_services, None),
            MessageType.BLE_CHARACTERISTICS: (
                self._handle_ble_characteristics,
                None,
            ),
            MessageType.BLE_READ: (self._handle_ble_read, None),
            MessageType.BLE_WRITE: (self._handle_ble_write, None),
            MessageType.BLE_SUBSCRIBE: (self._handle_ble_subscribe, None),
            MessageType.BLE_UNSUBSCRIBE: (self._handle_ble_unsubscribe, None),
            MessageType.BLE_GET_NOTIFICATIONS: (
                self._handle_ble_get_notifications,
                None,
            ),
        }

    async def dispatch(self, connection: Connection, envelope: Envelope) -> None:
        """Handle one admitted envelope and queue its reply or error."""
        try:
            msg_type = MessageType(envelope.type)
        except ValueError:
            logger.debug("%r: unsupported type %r", connection, envelope.type)
            connection.send(error_envelope("unsupported_command", envelope.id))
            return

        handler, reply_type = self._handlers.get(msg_type, (None, None))
        if handler is None:
            # mcp/auth is consumed by the auth gate
            connection.send(error_envelope("unsupported_command", envelope.id))
            return

        # BLE replies reuse the request type with a .result suffix
        if reply_type is None and msg_type.value.startswith("mcp.ble."):
            reply_type = f"{msg_type.value}.result"

        logger.debug("%r: dispatching %s", connection, msg_type.value)
        try:
            payload = await handler(connection, envelope)
        except McpError as exc:
            connection.send(error_envelope(exc.code, envelope.id))
            return
        except Exception as exc:
            if msg_type.value.startswith("mcp.ble."):
                logger.warning(
                    "%r: %s failed: %s", connection, msg_type.value, exc
                )
            else:
                logger.error(
                    "%r: unexpected error handling %s",
                    connection,
                    msg_type.value,
                    exc_info=True,
                )
            connection.send(
                error_envelope(str(exc) or exc.__class__.__name__, envelope.id)
            )
            return

        if payload is not None and reply_type is not None:
            connection.send(make_envelope(reply_type, payload, envelope.id))

    # Tools

    async def _handle_tools_list(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        return {"tools": self.registry.list()}

    async def _handle_tool_info(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        tool_id = _require(envelope.payload, "toolId", "missing_toolId")
        return {"tool": self.registry.describe(tool_id)}

    async def _handle_tool_execute(
        self, connection: Connection, envelope: Envelope
    ) -> None:
        payload = envelope.payload
        tool_id = _require(payload, "toolId", "missing_toolId")
        context = payload.get("context")
        self.engine.execute(
            tool_id,
            payload.get("input"),
            context if isinstance(context, dict) else {},
            connection,
            envelope.id,
        )

    # Executions

    async def _handle_exec_subscribe(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        exec_id = _require(envelope.payload, "execId", "missing_execId")
        self.engine.subscribe(exec_id, connection)
        return {"execId": exec_id}

    async def _handle_exec_unsubscribe(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        exec_id = _require(envelope.payload, "execId", "missing_execId")
        self.engine.unsubscribe(exec_id, connection)
        return {"execId": exec_id}

    async def _handle_exec_status(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        exec_id = _require(envelope.payload, "execId", "missing_execId")
        return self.engine.status(exec_id)

    async def _handle_exec_cancel(
        self, connection: Connection, envelope: Envelope
    ) -> None:
        exec_id = _require(envelope.payload, "execId", "missing_execId")
        await self.engine.cancel(exec_id, connection, envelope.id)

    # BLE

    def _ble(self) -> BLECollaborator:
        if self.ble is None:
            raise McpError("ble_unavailable")
        return self.ble

    def _device_id(self, envelope: Envelope) -> str:
        return _require(envelope.payload, "deviceId", "missing_deviceId")

    def _device_and_characteristic(self, envelope: Envelope) -> Tuple[str, str]:
        device_id = self._device_id(envelope)
        char_uuid = _require(
            envelope.payload, "characteristicUuid", "missing_params"
        )
        return device_id, char_uuid

    async def _handle_ble_devices(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        return {"devices": await self._ble().list_devices()}

    async def _handle_ble_connect(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id = self._device_id(envelope)
        return {"device": await self._ble().connect(device_id)}

    async def _handle_ble_disconnect(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id = self._device_id(envelope)
        ble = self._ble()
        # Listeners of this connection die with the device link
        self._forget_device_listeners(connection, device_id)
        return {"device": await ble.disconnect(device_id)}

    async def _handle_ble_services(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id = self._device_id(envelope)
        return {"services": await self._ble().list_services(device_id)}

    async def _handle_ble_characteristics(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id = self._device_id(envelope)
        service_uuid = _require(envelope.payload, "serviceUuid", "missing_params")
        characteristics = await self._ble().list_characteristics(
            device_id, service_uuid
        )
        return {"characteristics": characteristics}

    async def _handle_ble_read(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id, char_uuid = self._device_and_characteristic(envelope)
        value = await self._ble().read(device_id, char_uuid)
        return {"characteristicUuid": char_uuid, "value": value}

    async def _handle_ble_write(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id, char_uuid = self._device_and_characteristic(envelope)
        value = envelope.payload.get("value")
        if value is None:
            raise McpError("missing_params")
        await self._ble().write(
            device_id,
            char_uuid,
            value,
            bool(envelope.payload.get("withoutResponse", False)),
        )
        return {"msg": "written"}

    async def _handle_ble_subscribe(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id, char_uuid = self._device_and_characteristic(envelope)
        ble = self._ble()
        key = subscription_key(device_id, char_uuid)

        previous = connection.ble_listeners.pop(key, None)
        if previous is not None:
            await ble.unsubscribe(device_id, char_uuid, previous)

        listener = self._notification_forwarder(connection, device_id, char_uuid)
        await ble.subscribe(device_id, char_uuid, listener)
        connection.ble_listeners[key] = listener
        logger.info("%r: subscribed to %s", connection, key)
        return {"msg": "subscribed"}

    async def _handle_ble_unsubscribe(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id, char_uuid = self._device_and_characteristic(envelope)
        ble = self._ble()
        key = subscription_key(device_id, char_uuid)
        listener = connection.ble_listeners.pop(key, None)
        if listener is None:
            raise McpError("not_subscribed")
        await ble.unsubscribe(device_id, char_uuid, listener)
        logger.info("%r: unsubscribed from %s", connection, key)
        return {"msg": "unsubscribed"}

    async def _handle_ble_get_notifications(
        self, connection: Connection, envelope: Envelope
    ) -> Dict[str, Any]:
        device_id, char_uuid = self._device_and_characteristic(envelope)
        notifications = await self._ble().get_notifications(device_id, char_uuid)
        return {"notifications": notifications}

    def _notification_forwarder(
        self, connection: Connection, device_id: str, char_uuid: str
    ) -> NotificationListener:
        def forward(data: bytes) -> None:
            if connection.closed:
                return
            connection.send(
                make_envelope(
                    BLE_NOTIFICATION_TYPE,
                    {
                        "deviceId": device_id,
                        "characteristicUuid": char_uuid,
                        "data": bytes(data).hex(),
                        "timestamp": utc_timestamp(),
                    },
                )
            )

        return forward

    def _forget_device_listeners(
        self, connection: Connection, device_id: str
    ) -> None:
        for key in list(connection.ble_listeners):
            if split_subscription_key(key)[0] == device_id:
                del connection.ble_listeners[key]

    # Teardown

    async def teardown(self, connection: Connection) -> None:
        """Release everything ``connection`` holds (best effort)."""
        self.engine.remove_connection(connection)
        listeners = list(connection.ble_listeners.items())
        connection.ble_listeners.clear()
        for key, listener in listeners:
            device_id, char_uuid = split_subscription_key(key)
            if self.ble is None:
                break
            try:
                await self.ble.unsubscribe(device_id, char_uuid, listener)
            except Exception as exc:
                logger.warning(
                    "%r: failed to unsubscribe %s on close: %s",
                    connection,
                    key,
                    exc,
                )
