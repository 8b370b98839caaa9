"""
Cache of the Countly application table used to turn app names into app ids.

One instance lives for the whole process. Refreshes are single-flight: while a
fetch is outstanding every caller awaits that same task instead of issuing
another request.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from countly_mcp.errors import (
    AppAmbiguous,
    AppNotFound,
    AppResolutionError,
    MissingAppIdentifier,
)

logger = logging.getLogger(__name__)

AppFetcher = Callable[[], Awaitable[Sequence[Mapping[str, Any]]]]

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True, slots=True)
class AppRecord:
    id: str
    name: str
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AppRecord":
        """Build a record from a Countly app document (``_id`` or ``id``)."""
        app_id = payload.get("_id") or payload.get("id")
        if not app_id:
            raise ValueError(f"App payload has no id: {payload!r}")
        extra = {k: v for k, v in payload.items() if k not in ("_id", "id", "name")}
        return cls(id=str(app_id), name=str(payload.get("name") or ""), extra=extra)

    def as_dict(self) -> dict[str, Any]:
        return {"_id": self.id, "name": self.name, **self.extra}


@dataclass(frozen=True, slots=True)
class AppTable:
    apps: tuple[AppRecord, ...]
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl

    def find_by_name(self, name: str) -> list[AppRecord]:
        wanted = name.casefold()
        return [app for app in self.apps if app.name.casefold() == wanted]

    def find_by_id(self, app_id: str) -> AppRecord | None:
        return next((app for app in self.apps if app.id == app_id), None)

    def names(self) -> list[str]:
        return [app.name for app in self.apps]


@dataclass(frozen=True, slots=True)
class AppResolution:
    """Result of a resolution attempt that does not raise."""

    app_id: str | None = None
    error: AppResolutionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class AppResolutionCache:
    """Owns the app table and the single in-flight refresh."""

    def __init__(
        self,
        fetch_apps: AppFetcher,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_apps = fetch_apps
        self._ttl = ttl
        self._clock = clock
        self._table: AppTable | None = None
        self._in_flight: asyncio.Task[AppTable] | None = None

    def snapshot(self) -> AppTable | None:
        """Return the last complete table without doing any I/O."""
        return self._table

    async def get_apps(self) -> AppTable:
        """Return a fresh table, fetching it only when needed."""
        table = self._table
        if table is not None and table.is_fresh(self._clock()):
            return table
        return await self.refresh()

    async def refresh(self) -> AppTable:
        """Fetch the table again, joining an outstanding fetch if there is one."""
        task = self._in_flight
        if task is None:
            task = asyncio.ensure_future(self._fetch_table())
            task.add_done_callback(self._on_fetch_done)
            self._in_flight = task
        else:
            logger.debug("Joining in-flight app table fetch")
        return await asyncio.shield(task)

    async def _fetch_table(self) -> AppTable:
        logger.debug("Fetching app table")
        payloads = await self._fetch_apps()
        records = []
        for payload in payloads:
            try:
                records.append(AppRecord.from_payload(payload))
            except ValueError:
                logger.warning("Skipping app without an id", extra={"app_name": payload.get("name")})
        apps = tuple(records)
        table = AppTable(apps=apps, fetched_at=self._clock(), ttl=self._ttl)
        self._table = table
        logger.info("App table refreshed", extra={"app_count": len(apps)})
        return table

    def _on_fetch_done(self, task: asyncio.Task[AppTable]) -> None:
        if self._in_flight is task:
            self._in_flight = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("App table fetch failed: %s", exc)

    async def resolve_app_id(self, args: Mapping[str, Any]) -> str:
        """Return ``app_id`` as given, or look ``app_name`` up in the table."""
        app_id = _clean(args.get("app_id"))
        if app_id:
            return app_id

        app_name = _clean(args.get("app_name"))
        if not app_name:
            raise MissingAppIdentifier()

        table = await self.get_apps()
        matches = table.find_by_name(app_name)
        if not matches:
            # The app may have been created after the last fetch.
            table = await self.refresh()
            matches = table.find_by_name(app_name)

        if not matches:
            raise AppNotFound(app_name, table.names())
        if len(matches) > 1:
            raise AppAmbiguous(app_name, [app.id for app in matches])
        return matches[0].id

    async def try_resolve_app_id(self, args: Mapping[str, Any]) -> AppResolution:
        try:
            return AppResolution(app_id=await self.resolve_app_id(args))
        except AppResolutionError as exc:
            return AppResolution(error=exc)
