"""Exceptions module."""


class McpError(Exception):
    """Raised for request and protocol errors reported as ``mcp/error``."""

    def __init__(self, code: str) -> None:
        """Create an error carrying the wire ``code``."""
        super().__init__(code)
        self.code = code


class ToolRegistrationError(Exception):
    """Raised when a tool cannot be registered (configuration error)."""


class DeviceNotFound(Exception):
    """Raised when BLE device is not found."""


class DeviceNotConnected(Exception):
    """Raised when an operation needs a connected device."""


class DeviceAlreadyConnected(Exception):
    """Raised when a device is already connected or connecting."""


class ServiceNotFound(Exception):
    """Raised when a GATT service is not present on a device."""


class CharacteristicMissingError(Exception):
    """Raised when a characteristic is missing."""


class CharacteristicNotReadable(Exception):
    """Raised when reading a characteristic without the read property."""


class CharacteristicNotWritable(Exception):
    """Raised when writing a characteristic that supports no write mode."""


class NotificationsNotSupported(Exception):
    """Raised when a characteristic supports neither notify nor indicate."""


class DeviceOperationError(Exception):
    """Raised when a device operation fails."""
