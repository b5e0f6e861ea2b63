"""FastAPI service hosting the HTTP BLE routes and the MCP TCP server.

The lifespan owns the process-scoped objects: the BLE manager, the tool
registry and the MCP server. They are exposed on ``app.state`` so routers
(and tests) can reach them.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes_ble import BLERouteError
from .api.routes_ble import router as ble_router
from .ble_manager import BLEManager
from .builtin_tools import register_builtin_tools
from .config import BridgeSettings, configure_logging
from .const import SERVER_NAME, SERVER_VERSION
from .server import McpServer
from .tools import ToolRegistry


def build_mcp_server(settings: BridgeSettings, ble) -> McpServer:
    """Register the built-in tools and create the MCP server."""
    registry = register_builtin_tools(ToolRegistry(), ble)
    return McpServer(
        registry,
        ble,
        host=settings.mcp_host,
        port=settings.mcp_port,
        token=settings.auth_token,
    )


def create_app(
    settings: Optional[BridgeSettings] = None,
    ble=None,
    *,
    start_mcp: bool = True,
) -> FastAPI:
    """Build the FastAPI app; ``ble`` defaults to a bleak ``BLEManager``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage BLE and MCP startup and shutdown via FastAPI lifespan."""
        resolved = settings or BridgeSettings.from_env()
        configure_logging(resolved.log_level)
        manager = ble or BLEManager(
            notification_buffer=resolved.notification_buffer
        )
        app.state.settings = resolved
        app.state.ble = manager
        app.state.mcp_server = None

        await manager.start(scan=resolved.auto_scan)
        try:
            if start_mcp:
                app.state.mcp_server = build_mcp_server(resolved, manager)
                await app.state.mcp_server.start()
            yield
        finally:
            if app.state.mcp_server is not None:
                await app.state.mcp_server.stop()
            await manager.stop()

    app = FastAPI(title=SERVER_NAME, version=SERVER_VERSION, lifespan=lifespan)

    @app.exception_handler(BLERouteError)
    async def _ble_route_error(
        request: Request, exc: BLERouteError
    ) -> JSONResponse:
        return exc.to_response()

    app.include_router(ble_router)
    return app


app = create_app()


def main() -> None:  # pragma: no cover - thin CLI wrapper
    """Run the FastAPI service under Uvicorn."""
    import uvicorn

    settings = BridgeSettings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(
        "ble_mcp_bridge.service:app",
        host=settings.http_host,
        port=settings.http_port,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
