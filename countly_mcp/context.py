"""
Per-invocation request context handed to every Countly tool handler.

The context wires the auth resolver, the shared app cache and the httpx client
together. It is cheap to build and is created once per tool call.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import anyio
import httpx

from countly_mcp.app_cache import AppFetcher, AppResolutionCache, AppTable
from countly_mcp.auth import AuthSources, require_auth_token
from countly_mcp.errors import safe_api_call

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_HEADER = "countly-token"
APPS_PATH = "/o/apps/mine"

# Token of the call that triggered an app table fetch; read by the fetcher.
_active_token: ContextVar[str | None] = ContextVar("countly_active_token", default=None)


async def get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    params: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> Any:
    """Issue a GET and return the decoded JSON body; non-2xx raises."""
    logger.debug("Countly request", extra={"method": "GET", "path": path})
    response = await client.get(path, params=params, headers=headers)
    response.raise_for_status()
    return response.json()


def parse_app_list(data: Any) -> list[Mapping[str, Any]]:
    """Accept a bare list, ``admin_of``/``user_of`` maps or an ``apps`` list."""
    if isinstance(data, list):
        return [app for app in data if isinstance(app, Mapping)]
    if not isinstance(data, Mapping):
        return []
    if isinstance(data.get("apps"), list):
        return [app for app in data["apps"] if isinstance(app, Mapping)]

    apps: list[Mapping[str, Any]] = []
    seen: set[str] = set()
    for key in ("admin_of", "user_of"):
        group = data.get(key)
        if not isinstance(group, Mapping):
            continue
        for app in group.values():
            if not isinstance(app, Mapping):
                continue
            app_id = str(app.get("_id") or app.get("id") or "")
            if app_id in seen:
                continue
            seen.add(app_id)
            apps.append(app)
    return apps


def fetch_app_list(client: httpx.AsyncClient) -> AppFetcher:
    """Build the fetcher injected into ``AppResolutionCache``."""

    async def _fetch() -> list[Mapping[str, Any]]:
        token = _active_token.get()
        headers = {AUTH_HEADER: token} if token else None
        data = await safe_api_call(
            lambda: get_json(client, APPS_PATH, headers=headers),
            "Failed to fetch app list",
        )
        return parse_app_list(data)

    return _fetch


def _has_app_identifier(args: Mapping[str, Any]) -> bool:
    return any(
        isinstance(args.get(key), str) and args[key].strip() for key in ("app_id", "app_name")
    )


@dataclass(slots=True)
class RequestContext:
    """Everything a tool handler needs to talk to Countly."""

    http_client: httpx.AsyncClient
    app_cache: AppResolutionCache
    auth_sources: AuthSources

    async def get_auth_params(self) -> dict[str, str]:
        """Resolve the token for this call and return the auth header."""
        # Reading COUNTLY_AUTH_TOKEN_FILE touches the filesystem.
        token = await anyio.to_thread.run_sync(require_auth_token, self.auth_sources)
        return {AUTH_HEADER: token}

    async def _authenticated(self, call: Callable[[], Awaitable[T]]) -> T:
        headers = await self.get_auth_params()
        reset = _active_token.set(headers[AUTH_HEADER])
        try:
            return await call()
        finally:
            _active_token.reset(reset)

    async def get_apps(self) -> AppTable:
        return await self._authenticated(self.app_cache.get_apps)

    def cached_apps(self) -> AppTable | None:
        return self.app_cache.snapshot()

    async def resolve_app_id(self, args: Mapping[str, Any]) -> str:
        return await self._authenticated(lambda: self.app_cache.resolve_app_id(args))

    async def resolve_optional_app_id(self, args: Mapping[str, Any]) -> str | None:
        """
        Best-effort resolution for tools where the app filter is optional.

        Returns None when no identifier was given or when it could not be
        resolved; transport faults from the app list fetch still propagate.
        """
        if not _has_app_identifier(args):
            return None
        resolution = await self._authenticated(lambda: self.app_cache.try_resolve_app_id(args))
        if resolution.ok:
            return resolution.app_id
        logger.warning("Proceeding without app filter: %s", resolution.error)
        return None

    async def get_json(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        context: str | None = None,
    ) -> Any:
        """Authenticated GET through ``safe_api_call``."""
        headers = await self.get_auth_params()
        return await safe_api_call(
            lambda: get_json(self.http_client, path, params=params, headers=headers),
            context or f"Failed to execute request to {path}",
        )
