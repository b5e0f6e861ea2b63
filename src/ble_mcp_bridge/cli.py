"""BLE MCP bridge CLI entrypoint."""

import asyncio
import logging
from dataclasses import replace
from typing import Optional

import typer
from rich import print
from rich.table import Table
from typing_extensions import Annotated

from .ble_manager import BLEManager
from .builtin_tools import register_builtin_tools
from .config import BridgeSettings, configure_logging
from .service import build_mcp_server, create_app
from .tools import ToolRegistry

app = typer.Typer()

logger = logging.getLogger(__name__)


def _settings(
    mcp_port: Optional[int], http_port: Optional[int], token: Optional[str]
) -> BridgeSettings:
    """Environment settings with command-line overrides applied."""
    settings = BridgeSettings.from_env()
    overrides = {}
    if mcp_port is not None:
        overrides["mcp_port"] = mcp_port
    if http_port is not None:
        overrides["http_port"] = http_port
    if token is not None:
        overrides["auth_token"] = token or None
    return replace(settings, **overrides)


async def _serve_mcp(settings: BridgeSettings) -> None:
    manager = BLEManager(notification_buffer=settings.notification_buffer)
    await manager.start(scan=settings.auto_scan)
    server = build_mcp_server(settings, manager)
    try:
        await server.serve_forever()
    finally:
        await manager.stop()


@app.command()
def serve(
    mcp_only: Annotated[
        bool, typer.Option(help="Run only the MCP TCP server.")
    ] = False,
    mcp_port: Annotated[Optional[int], typer.Option(min=0, max=65535)] = None,
    http_port: Annotated[Optional[int], typer.Option(min=0, max=65535)] = None,
    token: Annotated[
        Optional[str], typer.Option(help="Shared secret for mcp/auth.")
    ] = None,
) -> None:
    """Run the bridge (HTTP API and MCP server)."""
    settings = _settings(mcp_port, http_port, token)
    configure_logging(settings.log_level)

    if mcp_only:
        try:
            asyncio.run(_serve_mcp(settings))
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        return

    import uvicorn

    uvicorn.run(
        create_app(settings),
        host=settings.http_host,
        port=settings.http_port,
    )


@app.command()
def scan(
    timeout: Annotated[Optional[float], typer.Option(min=0.5)] = None,
) -> None:
    """List nearby bluetooth devices."""
    if timeout is None:
        timeout = BridgeSettings.from_env().scan_timeout
    devices = asyncio.run(BLEManager().scan(timeout=timeout))
    if not devices:
        print("No devices found.")
        return

    table = Table("Name", "Address", "RSSI", "Services")
    for device in devices:
        table.add_row(
            device["name"] or "Unknown",
            device["address"],
            str(device["rssi"]) if device["rssi"] is not None else "--",
            ", ".join(device["advertisedServices"]),
        )
    print("Discovered the following devices:")
    print(table)


@app.command()
def tools() -> None:
    """List the tools exposed over MCP."""
    registry = register_builtin_tools(ToolRegistry(), BLEManager())
    table = Table("Id", "Name", "Description")
    for tool in registry.list():
        table.add_row(tool["id"], tool["name"], tool["description"])
    print(table)


if __name__ == "__main__":
    app()
