"""Environment-driven configuration utilities for the Countly MCP server."""

import os
from dataclasses import dataclass
from urllib.parse import urlparse

from dotenv import load_dotenv

TRANSPORTS = ("stdio", "http", "sse")


def normalize_server_url(url: str) -> str:
    """Strip trailing slashes so paths can be joined onto the base URL."""
    return url.strip().rstrip("/")


def _positive_number(name: str, raw: str, cast: type) -> float | int:
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a numeric value.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero.")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    """Container for runtime configuration."""

    countly_server_url: str
    api_timeout: float = 30.0
    app_cache_ttl: float = 300.0
    mcp_transport: str = "stdio"
    mcp_host: str = "127.0.0.1"
    mcp_port: int = 3101

    @classmethod
    def load(cls) -> "Settings":
        """
        Load configuration from environment variables.

        Python-dotenv is used so developers can rely on a local .env file without
        exporting variables globally. Auth variables are deliberately not read
        here; they are resolved per call.
        """
        load_dotenv()

        server_url = normalize_server_url(os.getenv("COUNTLY_SERVER_URL", ""))
        if not server_url:
            raise ValueError("COUNTLY_SERVER_URL is required but was not provided.")
        parsed = urlparse(server_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(
                f"Invalid COUNTLY_SERVER_URL: {server_url}. Must be a valid HTTP or HTTPS URL."
            )

        # COUNTLY_TIMEOUT is expressed in milliseconds.
        timeout_raw = os.getenv("COUNTLY_TIMEOUT", "").strip() or "30000"
        api_timeout = _positive_number("COUNTLY_TIMEOUT", timeout_raw, int) / 1000

        ttl_raw = os.getenv("COUNTLY_APP_CACHE_TTL", "").strip() or "300"
        app_cache_ttl = float(_positive_number("COUNTLY_APP_CACHE_TTL", ttl_raw, float))

        transport = os.getenv("MCP_TRANSPORT", "").strip().lower() or "stdio"
        if transport not in TRANSPORTS:
            raise ValueError(f"MCP_TRANSPORT must be one of: {', '.join(TRANSPORTS)}.")

        mcp_host = os.getenv("MCP_HOST", "").strip() or "127.0.0.1"

        port_raw = os.getenv("MCP_PORT", "").strip() or "3101"
        try:
            mcp_port = int(port_raw)
        except ValueError as exc:
            raise ValueError("MCP_PORT must be an integer.") from exc
        if mcp_port <= 0:
            raise ValueError("MCP_PORT must be greater than zero.")

        return cls(
            countly_server_url=server_url,
            api_timeout=api_timeout,
            app_cache_ttl=app_cache_ttl,
            mcp_transport=transport,
            mcp_host=mcp_host,
            mcp_port=mcp_port,
        )
