"""HTTP client factory for talking to the Countly server."""

import httpx

from countly_mcp.settings import Settings


def create_countly_client(settings: Settings) -> httpx.AsyncClient:
    """
    Build an AsyncClient configured for the Countly REST API.

    Authentication is not baked in: the ``countly-token`` header is attached
    per request because the token can differ between tool calls.
    """
    return httpx.AsyncClient(
        base_url=settings.countly_server_url,
        timeout=settings.api_timeout,
        headers={"Accept": "application/json"},
    )
