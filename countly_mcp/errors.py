"""
Error taxonomy and API fault normalization for the Countly MCP server.

Every network call made on behalf of a tool goes through ``safe_api_call`` so
that httpx exceptions are converted into a ``NormalizedFault`` before they can
reach a tool handler.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_LIMIT = 300
ELLIPSIS = "..."


class CountlyError(RuntimeError):
    """Base class for every failure surfaced to the tool layer."""


class MissingAuthToken(CountlyError):
    """No authentication token could be resolved from any source."""


class TokenFileError(CountlyError):
    """The token file named by COUNTLY_AUTH_TOKEN_FILE could not be used."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message)
        self.path = path


class TokenFileNotFound(TokenFileError):
    pass


class TokenFileEmpty(TokenFileError):
    pass


class TokenFilePermissionDenied(TokenFileError):
    pass


class AppResolutionError(CountlyError):
    """An application name or id could not be turned into an app id."""


class MissingAppIdentifier(AppResolutionError):
    def __init__(self) -> None:
        super().__init__(
            "Either app_id or app_name must be provided.\n"
            'Example: {"app_id": "abc123"} or {"app_name": "MyApp"}'
        )


class AppNotFound(AppResolutionError):
    def __init__(self, app_name: str, available: Sequence[str]) -> None:
        listing = ", ".join(available) or "none"
        super().__init__(f"App not found: {app_name}\nAvailable apps: {listing}")
        self.app_name = app_name
        self.available = list(available)


class AppAmbiguous(AppResolutionError):
    def __init__(self, app_name: str, app_ids: Sequence[str]) -> None:
        super().__init__(
            f"App name {app_name!r} matches {len(app_ids)} apps "
            f"({', '.join(app_ids)}). Pass app_id instead."
        )
        self.app_name = app_name
        self.app_ids = list(app_ids)


class FaultKind(str, Enum):
    CLIENT_ERROR = "ClientError"
    SERVER_ERROR = "ServerError"
    UNCLASSIFIED = "Unclassified"


class NormalizedFault(CountlyError):
    """The only failure shape allowed past the HTTP boundary."""

    def __init__(
        self,
        kind: FaultKind,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.details = details


@dataclass(frozen=True, slots=True)
class HttpStatusFault:
    """The server answered with a non-success status."""

    status_code: int
    body: Any
    method: str | None = None
    url: str | None = None


@dataclass(frozen=True, slots=True)
class NoResponseFault:
    """The request was sent (or attempted) but no response arrived."""

    reason: str
    method: str | None = None
    url: str | None = None


@dataclass(frozen=True, slots=True)
class GenericFault:
    message: str


TransportFault = HttpStatusFault | NoResponseFault | GenericFault


@dataclass(frozen=True, slots=True)
class ErrorDetails:
    message: str
    status_code: int | None = None
    details: Any = None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


NO_RESPONSE_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    httpx.ProxyError,
)


def _request_target(request: httpx.Request) -> str:
    # Query strings can carry whole JSON documents; keep them out of messages.
    url = request.url
    return f"{url.scheme}://{url.netloc.decode('ascii')}{url.path}"


def _request_of(exc: httpx.RequestError) -> httpx.Request | None:
    # httpx raises RuntimeError when the exception was built without a request.
    try:
        return exc.request
    except RuntimeError:
        return None


def classify_transport_error(error: object) -> TransportFault:
    """Turn whatever was raised into one of the three transport fault shapes."""
    if isinstance(error, httpx.HTTPStatusError):
        request = error.request
        return HttpStatusFault(
            status_code=error.response.status_code,
            body=_response_body(error.response),
            method=request.method,
            url=_request_target(request),
        )
    if isinstance(error, NO_RESPONSE_ERRORS):
        request = _request_of(error)
        return NoResponseFault(
            reason=str(error) or type(error).__name__,
            method=request.method if request is not None else None,
            url=_request_target(request) if request is not None else None,
        )
    # Unsupported protocols, local protocol errors and redirect loops end up here.
    return GenericFault(str(error) or type(error).__name__)


def _truncate(text: str) -> str:
    if len(text) <= SUMMARY_LIMIT:
        return text
    return f"{text[:SUMMARY_LIMIT]}{ELLIPSIS}"


def _summarize_body(body: Any) -> str | None:
    if body is None or body == "":
        return None
    if isinstance(body, str):
        return _truncate(body.strip())
    if isinstance(body, dict):
        for field_name in ("error", "message", "result"):
            value = body.get(field_name)
            if value:
                text = value if isinstance(value, str) else json.dumps(value, default=str)
                return _truncate(text)
    try:
        return _truncate(json.dumps(body, default=str))
    except (TypeError, ValueError):
        return "Unable to parse response body"


def _origin(method: str | None, url: str | None) -> str:
    if not url:
        return ""
    return f" ({(method or 'GET').upper()} {url})"


def extract_error_details(error: object) -> ErrorDetails:
    """Build a human-readable message, plus status and body when available."""
    fault = classify_transport_error(error)

    if isinstance(fault, HttpStatusFault):
        message = f"HTTP {fault.status_code} error"
        summary = _summarize_body(fault.body)
        if summary:
            message += f": {summary}"
        message += _origin(fault.method, fault.url)
        return ErrorDetails(message=message, status_code=fault.status_code, details=fault.body)

    if isinstance(fault, NoResponseFault):
        message = f"No response from server: {fault.reason}{_origin(fault.method, fault.url)}"
        return ErrorDetails(message=message)

    return ErrorDetails(message=fault.message)


def _classify_status(status_code: int | None, no_response: bool) -> FaultKind:
    if no_response:
        return FaultKind.SERVER_ERROR
    if status_code is None:
        return FaultKind.UNCLASSIFIED
    if 400 <= status_code < 500:
        return FaultKind.CLIENT_ERROR
    if 500 <= status_code < 600:
        return FaultKind.SERVER_ERROR
    return FaultKind.UNCLASSIFIED


def wrap_api_error(error: object, context: str | None = None) -> NormalizedFault:
    """Normalize ``error`` into a ``NormalizedFault`` with an optional prefix."""
    if isinstance(error, NormalizedFault):
        kind, message = error.kind, error.message
        status_code, details = error.status_code, error.details
    else:
        extracted = extract_error_details(error)
        no_response = isinstance(classify_transport_error(error), NoResponseFault)
        kind = _classify_status(extracted.status_code, no_response)
        message = extracted.message
        status_code, details = extracted.status_code, extracted.details

    final_message = f"{context}: {message}" if context else message
    return NormalizedFault(kind, final_message, status_code=status_code, details=details)


async def safe_api_call(
    call: Callable[[], Awaitable[T]],
    context: str | None = None,
) -> T:
    """Await ``call`` and convert any failure into a ``NormalizedFault``."""
    try:
        return await call()
    except Exception as exc:
        fault = wrap_api_error(exc, context)
        logger.warning(
            "Countly API call failed",
            extra={
                "fault_kind": fault.kind.value,
                "status_code": fault.status_code,
                "context": context,
            },
        )
        raise fault from exc
