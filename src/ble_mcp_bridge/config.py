"""Runtime configuration for the bridge.

Settings come from the environment. The original deployment used ``MCP_PORT``,
``MCP_TOKEN`` and ``PORT``; those names are still honoured as fallbacks for the
``BLE_MCP_*`` names.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .const import (
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_MCP_HOST,
    DEFAULT_MCP_PORT,
    DEFAULT_NOTIFICATION_BUFFER,
    DEFAULT_SCAN_TIMEOUT,
)

logger = logging.getLogger(__name__)

# Environment variable mapping: new name -> legacy name
ENV_VAR_MAPPING = {
    "BLE_MCP_PORT": "MCP_PORT",
    "BLE_MCP_TOKEN": "MCP_TOKEN",
    "BLE_MCP_HTTP_PORT": "PORT",
}

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"

_migration_logged = False


def get_env_with_fallback(
    new_name: str, default: str | None = None
) -> str | None:
    """Get environment variable with fallback to the legacy name.

    Args:
        new_name: Environment variable name (e.g., "BLE_MCP_PORT")
        default: Default value if neither new nor legacy name is set

    Returns:
        Environment variable value, or default if not found
    """
    global _migration_logged

    value = os.getenv(new_name)
    if value is not None:
        return value

    old_name = ENV_VAR_MAPPING.get(new_name)
    if old_name:
        value = os.getenv(old_name)
        if value is not None:
            if not _migration_logged:
                logger.warning(
                    "Using legacy environment variable '%s'. "
                    "Please update to '%s'.",
                    old_name,
                    new_name,
                )
                _migration_logged = True
            return value

    return default


def get_env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback support."""
    raw = get_env_with_fallback(name)
    if raw is None:
        return default

    s = raw.strip()
    if s == "":
        return default

    lowered = s.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False

    try:
        return bool(int(s))
    except ValueError:
        return default


def get_env_int(name: str, default: int) -> int:
    """Get integer environment variable, keeping the default on bad input."""
    raw = get_env_with_fallback(name)
    if raw is None:
        return default

    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer value for %s: '%s'. Using default: %s",
            name,
            raw,
            default,
        )
        return default


def get_env_float(name: str, default: float) -> float:
    """Get float environment variable, keeping the default on bad input."""
    raw = get_env_with_fallback(name)
    if raw is None:
        return default

    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Invalid float value for %s: '%s'. Using default: %s",
            name,
            raw,
            default,
        )
        return default


@dataclass(frozen=True)
class BridgeSettings:
    """Resolved settings for the MCP server and the HTTP surface."""

    mcp_host: str = DEFAULT_MCP_HOST
    mcp_port: int = DEFAULT_MCP_PORT
    auth_token: Optional[str] = None
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT
    log_level: str = "INFO"
    auto_scan: bool = True
    notification_buffer: int = DEFAULT_NOTIFICATION_BUFFER
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        """Build settings from the process environment."""
        token = get_env_with_fallback("BLE_MCP_TOKEN")
        return cls(
            mcp_host=get_env_with_fallback("BLE_MCP_HOST", DEFAULT_MCP_HOST)
            or DEFAULT_MCP_HOST,
            mcp_port=get_env_int("BLE_MCP_PORT", DEFAULT_MCP_PORT),
            # An empty token means "no authentication"
            auth_token=token or None,
            http_host=get_env_with_fallback(
                "BLE_MCP_HTTP_HOST", DEFAULT_HTTP_HOST
            )
            or DEFAULT_HTTP_HOST,
            http_port=get_env_int("BLE_MCP_HTTP_PORT", DEFAULT_HTTP_PORT),
            log_level=(
                get_env_with_fallback("BLE_MCP_LOG_LEVEL", "INFO") or "INFO"
            ).upper(),
            auto_scan=get_env_bool("BLE_MCP_AUTO_SCAN", True),
            notification_buffer=max(
                1,
                get_env_int(
                    "BLE_MCP_NOTIFY_BUFFER", DEFAULT_NOTIFICATION_BUFFER
                ),
            ),
            scan_timeout=get_env_float(
                "BLE_MCP_SCAN_TIMEOUT", DEFAULT_SCAN_TIMEOUT
            ),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install the default log format unless the host already configured one."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("ble_mcp_bridge").setLevel(resolved)
