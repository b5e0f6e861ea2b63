"""Bridge BLE peripherals to remote clients over HTTP and the MCP TCP protocol."""

from .const import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION

__all__ = ["SERVER_NAME", "SERVER_VERSION", "__version__"]
