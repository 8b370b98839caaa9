"""MCP tool registrations for the Countly server."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Annotated, Any, Awaitable, Callable, Literal, Mapping

import httpx
from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_headers
from pydantic import BaseModel, Field

from countly_mcp.app_cache import AppResolutionCache
from countly_mcp.auth import OVERRIDE_FIELD, TOKEN_HEADER, AuthSources
from countly_mcp.context import RequestContext
from countly_mcp.errors import AppNotFound, CountlyError
from countly_mcp.tools_config import ToolsConfig, is_tool_allowed

logger = logging.getLogger(__name__)

AuthTokenArg = Annotated[
    str | None,
    Field(description="Countly auth token for this call (overrides COUNTLY_AUTH_TOKEN)."),
]
AppIdArg = Annotated[
    str | None,
    Field(description="Application ID (optional if app_name is provided)."),
]
AppNameArg = Annotated[
    str | None,
    Field(description="Application name, matched case-insensitively (alternative to app_id)."),
]
PeriodArg = Annotated[
    str | None,
    Field(
        description=(
            'Time period: "month", "60days", "30days", "7days", "yesterday", "hour", '
            'or a custom range "[startMilliseconds,endMilliseconds]".'
        )
    ),
]

AnalyticsMethod = Literal[
    "locations", "sessions", "users", "carriers", "devices", "device_details",
    "app_versions", "cities", "get_events", "browser", "consents", "density",
    "langs", "logs", "sdks", "sources", "systemlogs", "times-of-day",
    "ab-testing", "get_cohorts", "live", "get_funnels", "retention", "user_details",
]

DAY_MS = 24 * 60 * 60 * 1000
PERIOD_DAYS = {"7days": 7, "30days": 30, "60days": 60, "month": 30}


class EventSegment(BaseModel):
    name: str = Field(description="Segment name/key.")
    type: Literal["s", "n", "b", "l", "d"] = Field(
        default="s",
        description="Segment type (s=string, n=number, b=boolean, l=list, d=date in ms).",
    )
    required: bool = False
    description: str = ""


def session_auth_override(ctx: Context | None) -> str | None:
    """Token supplied by the MCP session: request metadata, then HTTP header."""
    if ctx is None:
        return None
    try:
        meta = ctx.request_context.meta
    except (AttributeError, LookupError, ValueError):
        meta = None
    token = getattr(meta, OVERRIDE_FIELD, None) if meta is not None else None
    if isinstance(token, str) and token.strip():
        return token
    return get_http_headers().get(TOKEN_HEADER.lower())


@dataclass
class CountlyToolDependencies:
    """Runtime dependencies required by the MCP tools."""

    app_cache: AppResolutionCache | None = None
    http_client: httpx.AsyncClient | None = None

    def attach(self, client: httpx.AsyncClient, app_cache: AppResolutionCache) -> None:
        self.http_client = client
        self.app_cache = app_cache

    def detach(self) -> None:
        self.http_client = None
        self.app_cache = None

    def build_context(
        self,
        args: Mapping[str, Any],
        *,
        override: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> RequestContext:
        if self.http_client is None or self.app_cache is None:
            raise RuntimeError("Countly HTTP client is not initialized.")
        return RequestContext(
            http_client=self.http_client,
            app_cache=self.app_cache,
            auth_sources=AuthSources(override=override, args=args, env=env),
        )


def _pretty(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def _period_param(period: str, now_ms: int | None = None) -> str:
    """Expand shorthand periods into the ``[start,end]`` range notes expect."""
    if period.startswith("[") or period not in PERIOD_DAYS:
        return period
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    return f"[{now_ms - PERIOD_DAYS[period] * DAY_MS},{now_ms}]"


async def handle_ping(context: RequestContext) -> str:
    data = await context.get_json("/o/ping", context="Failed to ping server")
    return f"Server ping response:\n{_pretty(data)}"


async def handle_get_version(context: RequestContext) -> str:
    data = await context.get_json("/o/system/version", context="Failed to get server version")
    return f"Server version:\n{_pretty(data)}"


async def handle_get_plugins(context: RequestContext) -> str:
    data = await context.get_json("/o/system/plugins", context="Failed to get server plugins")
    return f"Enabled plugins:\n{_pretty(data)}"


async def handle_search(context: RequestContext, query: str) -> str:
    table = context.cached_apps()
    wanted = query.casefold()
    matches = [app.as_dict() for app in (table.apps if table else ()) if wanted in app.name.casefold()]
    return f'Search results for "{query}":\n{_pretty({"apps": matches})}'


async def handle_fetch(context: RequestContext, item_id: str) -> str:
    table = context.cached_apps()
    app = table.find_by_id(item_id) if table else None
    if app is None:
        return f'Document with ID "{item_id}" not found'
    return f"Document {item_id}:\n{_pretty(app.as_dict())}"


async def handle_list_apps(context: RequestContext) -> str:
    table = await context.get_apps()
    lines = [f"- {app.name} (ID: {app.id})" for app in table.apps]
    return "Available applications:\n" + ("\n".join(lines) or "(none)")


async def handle_get_app_by_name(context: RequestContext, app_name: str) -> str:
    app_id = await context.resolve_app_id({"app_name": app_name})
    table = context.cached_apps()
    app = table.find_by_id(app_id) if table else None
    if app is None:
        raise AppNotFound(app_name, table.names() if table else [])
    return f"App information:\n{_pretty(app.as_dict())}"


async def handle_get_analytics_data(
    context: RequestContext,
    args: Mapping[str, Any],
    *,
    method: str,
    period: str | None = None,
    event: str | None = None,
    segmentation: str | None = None,
) -> str:
    app_id = await context.resolve_app_id(args)
    params: dict[str, Any] = {"app_id": app_id, "method": method}
    if period:
        params["period"] = period
    if event:
        params["event"] = event
    if segmentation:
        params["segmentation"] = segmentation
    data = await context.get_json("/o", params)
    return f"Analytics data for {method}:\n{_pretty(data)}"


async def handle_create_event(
    context: RequestContext,
    args: Mapping[str, Any],
    *,
    key: str,
    name: str,
    description: str | None = None,
    category: str | None = None,
    segments: list[EventSegment] | None = None,
) -> str:
    app_id = await context.resolve_app_id(args)
    event = {
        "key": key,
        "name": name,
        "description": description or "",
        "category": category or None,
        "isEditMode": False,
        "segments": [segment.model_dump() for segment in segments or []],
    }
    data = await context.get_json(
        "/i/data-manager/event",
        {"app_id": app_id, "event": json.dumps(event)},
    )
    return f'Event definition created for "{name}" ({key}) in app {app_id}:\n{_pretty(data)}'


async def handle_list_notes(
    context: RequestContext,
    args: Mapping[str, Any],
    *,
    period: str = "30days",
) -> str:
    app_id = await context.resolve_optional_app_id(args)
    params: dict[str, Any] = {"method": "notes", "period": _period_param(period)}
    if app_id:
        params["app_id"] = app_id
        params["notes_apps"] = json.dumps([app_id])
    else:
        table = await context.get_apps()
        params["notes_apps"] = json.dumps([app.id for app in table.apps])

    data = await context.get_json("/o", params, context="Failed to list notes")
    notes = data.get("notes", data) if isinstance(data, dict) else data
    count = len(notes) if isinstance(notes, (list, dict)) else 0
    scope = f"app {app_id}" if app_id else "all apps"
    return f"Found {count} notes for {scope}:\n{_pretty(notes)}"


async def handle_list_alerts(context: RequestContext, args: Mapping[str, Any]) -> str:
    app_id = await context.resolve_app_id(args)
    data = await context.get_json("/o/alert/list", {"app_id": app_id})
    return f"Alerts for app {app_id}:\n{_pretty(data)}"


async def handle_get_all_dashboard_users(context: RequestContext) -> str:
    data = await context.get_json("/o/users/all")
    return f"All dashboard users:\n{_pretty(data)}"


def register_countly_tools(
    mcp: FastMCP,
    dependencies: CountlyToolDependencies,
    tools_config: ToolsConfig,
) -> list[str]:
    """Register the allowed Countly tools and return their names."""

    registered: list[str] = []

    def _tool(name: str, description: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            if not is_tool_allowed(name, tools_config):
                logger.info("Tool disabled by configuration", extra={"tool": name})
                return fn
            registered.append(name)
            return mcp.tool(name=name, description=description)(fn)

        return decorator

    def _log_tool_event(tool_name: str, event: str, **fields: object) -> None:
        logger.info(
            "countly_tool_event",
            extra={"tool": tool_name, "event": event, **fields},
        )

    async def _with_error_handling(
        tool_name: str,
        ctx: Context | None,
        args: Mapping[str, Any],
        action: Callable[[RequestContext], Awaitable[str]],
    ) -> str:
        try:
            context = dependencies.build_context(args, override=session_auth_override(ctx))
            result = await action(context)
        except CountlyError as exc:
            logger.warning("%s failed: %s", tool_name, exc)
            _log_tool_event(tool_name, "error", error_type=type(exc).__name__)
            raise ToolError(str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s failed unexpectedly", tool_name)
            _log_tool_event(tool_name, "unexpected_error", error=str(exc))
            raise ToolError(f"Error executing tool {tool_name}: {exc}") from exc
        _log_tool_event(tool_name, "success")
        return result

    @_tool("ping", "Check if the Countly server is healthy and reachable.")
    async def ping(ctx: Context, countly_auth_token: AuthTokenArg = None) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling("ping", ctx, args, handle_ping)

    @_tool("get_version", "Check what version of Countly is running on the server.")
    async def get_version(ctx: Context, countly_auth_token: AuthTokenArg = None) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling("get_version", ctx, args, handle_get_version)

    @_tool("get_plugins", "Check what plugins are enabled on the Countly server.")
    async def get_plugins(ctx: Context, countly_auth_token: AuthTokenArg = None) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling("get_plugins", ctx, args, handle_get_plugins)

    @_tool("search", "Search the already loaded Countly applications by name.")
    async def search(
        query: Annotated[str, Field(description="Search query string.")],
        ctx: Context,
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "search", ctx, args, lambda context: handle_search(context, query)
        )

    @_tool("fetch", "Retrieve the full record of a loaded Countly application by its ID.")
    async def fetch(
        id: Annotated[str, Field(description="Unique identifier of the item.")],
        ctx: Context,
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "fetch", ctx, args, lambda context: handle_fetch(context, id)
        )

    @_tool("list_apps", "List all available applications with their names and IDs.")
    async def list_apps(ctx: Context, countly_auth_token: AuthTokenArg = None) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling("list_apps", ctx, args, handle_list_apps)

    @_tool("get_app_by_name", "Get application information by application name.")
    async def get_app_by_name(
        app_name: Annotated[str, Field(description="Application name.")],
        ctx: Context,
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "get_app_by_name", ctx, args, lambda context: handle_get_app_by_name(context, app_name)
        )

    @_tool(
        "get_analytics_data",
        "Get analytics data from the main /o endpoint (sessions, users, locations, etc.).",
    )
    async def get_analytics_data(
        method: Annotated[AnalyticsMethod, Field(description="Data retrieval method.")],
        ctx: Context,
        app_id: AppIdArg = None,
        app_name: AppNameArg = None,
        period: PeriodArg = None,
        event: Annotated[str | None, Field(description="Event key for event methods.")] = None,
        segmentation: Annotated[str | None, Field(description="Event segmentation key.")] = None,
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"app_id": app_id, "app_name": app_name, "countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "get_analytics_data",
            ctx,
            args,
            lambda context: handle_get_analytics_data(
                context, args, method=method, period=period, event=event, segmentation=segmentation
            ),
        )

    @_tool("create_event", "Create or configure an event definition with display name and description.")
    async def create_event(
        key: Annotated[str, Field(description="Event key.")],
        name: Annotated[str, Field(description="Display name for the event.")],
        ctx: Context,
        app_id: AppIdArg = None,
        app_name: AppNameArg = None,
        description: Annotated[str | None, Field(description="Event description.")] = None,
        category: Annotated[str | None, Field(description="Optional event category.")] = None,
        segments: Annotated[
            list[EventSegment] | None, Field(description="Segment definitions.")
        ] = None,
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"app_id": app_id, "app_name": app_name, "countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "create_event",
            ctx,
            args,
            lambda context: handle_create_event(
                context,
                args,
                key=key,
                name=name,
                description=description,
                category=category,
                segments=segments,
            ),
        )

    @_tool(
        "list_notes",
        "List notes within a time period, for one application or for all applications.",
    )
    async def list_notes(
        ctx: Context,
        app_id: AppIdArg = None,
        app_name: AppNameArg = None,
        period: PeriodArg = "30days",
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"app_id": app_id, "app_name": app_name, "countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "list_notes",
            ctx,
            args,
            lambda context: handle_list_notes(context, args, period=period or "30days"),
        )

    @_tool("list_alerts", "List all alerts configured for an application.")
    async def list_alerts(
        ctx: Context,
        app_id: AppIdArg = None,
        app_name: AppNameArg = None,
        countly_auth_token: AuthTokenArg = None,
    ) -> str:
        args = {"app_id": app_id, "app_name": app_name, "countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "list_alerts", ctx, args, lambda context: handle_list_alerts(context, args)
        )

    @_tool("get_all_dashboard_users", "List all dashboard (management) users.")
    async def get_all_dashboard_users(ctx: Context, countly_auth_token: AuthTokenArg = None) -> str:
        args = {"countly_auth_token": countly_auth_token}
        return await _with_error_handling(
            "get_all_dashboard_users", ctx, args, handle_get_all_dashboard_users
        )

    logger.info("Countly MCP tools registered.", extra={"tools": registered})
    return registered
