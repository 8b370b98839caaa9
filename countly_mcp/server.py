"""
Core server bootstrap for the Countly MCP server.

Owns the FastMCP instance, the shared httpx client and the single
AppResolutionCache that every tool call resolves application names through.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from fastmcp import FastMCP  # type: ignore[import-not-found]
from starlette.requests import Request
from starlette.responses import JSONResponse

from countly_mcp.app_cache import AppResolutionCache
from countly_mcp.context import fetch_app_list
from countly_mcp.http_client import create_countly_client
from countly_mcp.settings import Settings
from countly_mcp.tools import CountlyToolDependencies, register_countly_tools
from countly_mcp.tools_config import ToolsConfig, config_summary, load_tools_config


class ServerApp:
    """Server container wiring settings, HTTP resources and tools together."""

    def __init__(self, settings: Settings, tools_config: ToolsConfig | None = None) -> None:
        self._logger = logging.getLogger(__name__)
        self._settings = settings
        self._tools_config = tools_config if tools_config is not None else load_tools_config()
        self._http_client: httpx.AsyncClient | None = None
        self._app_cache: AppResolutionCache | None = None
        self._tool_dependencies = CountlyToolDependencies()
        self._mcp_app = FastMCP(
            name="countly-mcp-server",
            instructions=(
                "Query and manage a Countly analytics server. Most tools accept either "
                "app_id or app_name to select the application."
            ),
        )
        self._logger.info(config_summary(self._tools_config))
        self.tool_names = register_countly_tools(
            self._mcp_app, self._tool_dependencies, self._tools_config
        )
        self._mcp_app.custom_route("/health", methods=["GET"])(self._health)

    async def _health(self, request: Request) -> JSONResponse:
        return JSONResponse(
            {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    def startup(self) -> None:
        """Create the HTTP client and the process-wide app cache."""
        self._logger.info("Starting server bootstrap")
        self._http_client = create_countly_client(self._settings)
        self._app_cache = AppResolutionCache(
            fetch_app_list(self._http_client),
            ttl=self._settings.app_cache_ttl,
        )
        self._tool_dependencies.attach(self._http_client, self._app_cache)

    async def aclose(self) -> None:
        """Release acquired resources from inside a running event loop."""
        self._logger.info("Shutting down server bootstrap")
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._app_cache = None
        self._tool_dependencies.detach()

    def shutdown(self) -> None:
        """Release acquired resources once the transport has stopped."""
        asyncio.run(self.aclose())

    def serve_forever(self) -> None:
        """Run the configured transport until interrupted."""
        transport = self._settings.mcp_transport
        if transport == "stdio":
            self._logger.info("Starting stdio transport")
            self._mcp_app.run(transport="stdio")
            return
        host = self._settings.mcp_host
        port = self._settings.mcp_port
        self._logger.info(
            "Starting %s transport", transport, extra={"host": host, "port": port}
        )
        self._mcp_app.run(transport=transport, host=host, port=port)

    async def serve_http_async(self, host: str | None = None, transport: str = "sse") -> None:
        """Async helper for running an HTTP transport (used by smoke tests)."""
        await self._mcp_app.run_http_async(
            transport=transport,
            host=host or self._settings.mcp_host,
            port=self._settings.mcp_port,
        )

    @property
    def mcp(self) -> FastMCP:
        """Expose the configured FastMCP instance."""
        return self._mcp_app

    @property
    def state(self) -> dict[str, Any]:
        return {
            "settings": self._settings,
            "initialized": self._http_client is not None,
            "tools": list(self.tool_names),
        }


def build_server(settings: Settings, tools_config: ToolsConfig | None = None) -> ServerApp:
    """Factory used by main.py to create the configured server instance."""
    return ServerApp(settings, tools_config)
