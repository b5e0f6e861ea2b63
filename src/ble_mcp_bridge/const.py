"""Protocol constants shared by the MCP server and the HTTP surface."""

from enum import Enum

SERVER_NAME = "BLE2WebSvc MCP"
SERVER_VERSION = "1.0"

DEFAULT_MCP_HOST = "0.0.0.0"
DEFAULT_MCP_PORT = 8123
DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 8111
DEFAULT_NOTIFICATION_BUFFER = 100
DEFAULT_SCAN_TIMEOUT = 5.0

RECORD_DELIMITER = b"\n"
READ_CHUNK_SIZE = 65536

# Server-pushed envelope types
HANDSHAKE_TYPE = "mcp/handshake"
AUTH_OK_TYPE = "mcp/auth.ok"
ERROR_TYPE = "mcp/error"
TOOL_EVENT_TYPE = "mcp.tool.event"
BLE_NOTIFICATION_TYPE = "mcp.ble.notification"


class MessageType(Enum):
    """Client request types understood by the dispatcher."""

    AUTH = "mcp/auth"

    # Tool discovery
    TOOLS_DISCOVER = "mcp.tools.discover"
    TOOLS_LIST = "mcp.tools.list"
    TOOL_INFO = "mcp.tool.info"

    # Executions
    TOOL_EXECUTE = "mcp.tool.execute"
    EXEC_SUBSCRIBE = "mcp.exec.subscribe"
    EXEC_UNSUBSCRIBE = "mcp.exec.unsubscribe"
    EXEC_STATUS = "mcp.exec.status"
    EXEC_CANCEL = "mcp.exec.cancel"

    # BLE operations
    BLE_DEVICES = "mcp.ble.devices"
    BLE_CONNECT = "mcp.ble.connect"
    BLE_DISCONNECT = "mcp.ble.disconnect"
    BLE_SERVICES = "mcp.ble.services"
    BLE_CHARACTERISTICS = "mcp.ble.characteristics"
    BLE_READ = "mcp.ble.read"
    BLE_WRITE = "mcp.ble.write"
    BLE_SUBSCRIBE = "mcp.ble.subscribe"
    BLE_UNSUBSCRIBE = "mcp.ble.unsubscribe"
    BLE_GET_NOTIFICATIONS = "mcp.ble.getnotifications"


class ExecutionEvent(Enum):
    """Events broadcast on an execution's channel."""

    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
