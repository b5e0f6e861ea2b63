"""Tools registered by the bridge process before the MCP server listens."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional

from .ble_manager import BLECollaborator
from .envelope import utc_timestamp
from .executions import Cancellable
from .tools import ProgressCallback, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_COUNT = 10

ECHO_METADATA: Dict[str, Any] = {
    "name": "Echo",
    "description": "Returns its input unchanged.",
    "inputSchema": {"type": "object"},
}

CAPTURE_METADATA: Dict[str, Any] = {
    "name": "BLE notification capture",
    "description": (
        "Subscribes to a characteristic and collects notifications until "
        "`count` have arrived or `duration` seconds have passed."
    ),
    "inputSchema": {
        "type": "object",
        "properties": {
            "deviceId": {"type": "string"},
            "characteristicUuid": {"type": "string"},
            "count": {"type": "integer", "minimum": 1},
            "duration": {"type": "number", "exclusiveMinimum": 0},
        },
        "required": ["deviceId", "characteristicUuid"],
    },
}


async def echo(
    input_data: Any, context: Dict[str, Any], on_progress: ProgressCallback
) -> Dict[str, Any]:
    """Report completion progress and return the input."""
    on_progress({"percent": 100})
    return {"echoed": input_data}


class NotificationCapture:
    """Collect notifications of one characteristic for a capture execution."""

    def __init__(
        self,
        ble: BLECollaborator,
        device_id: str,
        characteristic_uuid: str,
        on_progress: ProgressCallback,
        count: int = DEFAULT_CAPTURE_COUNT,
        duration: Optional[float] = None,
    ) -> None:
        self.ble = ble
        self.device_id = device_id
        self.characteristic_uuid = characteristic_uuid
        self.count = count
        self.duration = duration
        self.notifications: List[Dict[str, Any]] = []
        self._on_progress = on_progress
        self._done = asyncio.Event()
        self._subscribed = False
        self._listener = self._on_data

    def _on_data(self, data: bytes) -> None:
        if self._done.is_set():
            return
        value = bytes(data).hex()
        self.notifications.append({"value": value, "timestamp": utc_timestamp()})
        self._on_progress({"count": len(self.notifications), "data": value})
        if len(self.notifications) >= self.count:
            self._done.set()

    async def start(self) -> None:
        """Subscribe to the characteristic."""
        await self.ble.subscribe(
            self.device_id, self.characteristic_uuid, self._listener
        )
        self._subscribed = True
        logger.debug(
            "Capturing %s:%s (count=%d, duration=%s)",
            self.device_id,
            self.characteristic_uuid,
            self.count,
            self.duration,
        )

    async def _stop(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        await self.ble.unsubscribe(
            self.device_id, self.characteristic_uuid, self._listener
        )

    async def wait(self) -> Dict[str, Any]:
        """Wait for the capture to finish and return what was collected."""
        try:
            if self.duration is None:
                await self._done.wait()
            else:
                try:
                    await asyncio.wait_for(self._done.wait(), self.duration)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._done.set()
            await self._stop()
        return self.result()

    async def cancel(self) -> None:
        """Stop capturing and release the subscription."""
        self._done.set()
        await self._stop()

    def result(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "characteristicUuid": self.characteristic_uuid,
            "notifications": list(self.notifications),
        }


def _capture_options(input_data: Any) -> Dict[str, Any]:
    params = input_data if isinstance(input_data, dict) else {}
    device_id = params.get("deviceId")
    char_uuid = params.get("characteristicUuid")
    if not device_id:
        raise ValueError("missing_deviceId")
    if not char_uuid:
        raise ValueError("missing_params")

    count = params.get("count", DEFAULT_CAPTURE_COUNT)
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValueError("invalid_count")

    duration = params.get("duration")
    if duration is not None:
        if isinstance(duration, bool) or not isinstance(duration, (int, float)):
            raise ValueError("invalid_duration")
        if duration <= 0:
            raise ValueError("invalid_duration")
        duration = float(duration)

    return {
        "device_id": device_id,
        "characteristic_uuid": char_uuid,
        "count": count,
        "duration": duration,
    }


async def ble_capture(
    ble: BLECollaborator,
    input_data: Any,
    context: Dict[str, Any],
    on_progress: ProgressCallback,
) -> Cancellable:
    """Start a capture; the execution stays running until it finishes."""
    capture = NotificationCapture(ble, on_progress=on_progress, **_capture_options(input_data))
    await capture.start()
    return Cancellable(cancel=capture.cancel, result=capture.wait())


def register_builtin_tools(
    registry: ToolRegistry, ble: Optional[BLECollaborator] = None
) -> ToolRegistry:
    """Register ``echo`` and, when BLE is available, ``ble.capture``."""
    registry.register("echo", ECHO_METADATA, echo)
    if ble is not None:
        registry.register(
            "ble.capture", CAPTURE_METADATA, functools.partial(ble_capture, ble)
        )
    return registry
