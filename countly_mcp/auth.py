"""
Authentication token resolution for Countly requests.

Sources are consulted in strict priority order and the first non-blank one
wins:

1. session override (MCP request metadata ``countlyAuthToken`` or the
   ``X-Countly-Auth-Token`` HTTP header)
2. tool argument ``countly_auth_token``
3. environment variable ``COUNTLY_AUTH_TOKEN``
4. environment variable ``COUNTLY_AUTH_TOKEN_FILE`` naming a token file
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

from countly_mcp.errors import (
    MissingAuthToken,
    TokenFileEmpty,
    TokenFileError,
    TokenFileNotFound,
    TokenFilePermissionDenied,
)

logger = logging.getLogger(__name__)

OVERRIDE_FIELD = "countlyAuthToken"
ARGUMENT_FIELD = "countly_auth_token"
TOKEN_ENV = "COUNTLY_AUTH_TOKEN"
TOKEN_FILE_ENV = "COUNTLY_AUTH_TOKEN_FILE"
TOKEN_HEADER = "X-Countly-Auth-Token"


@dataclass(frozen=True, slots=True)
class AuthSources:
    """Everything a single call may carry a token in."""

    override: str | None = None
    args: Mapping[str, Any] | None = None
    env: Mapping[str, str] | None = None


def _present(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_auth_token(sources: AuthSources) -> str | None:
    """Return the highest-priority token, or None when no source has one."""
    env = os.environ if sources.env is None else sources.env

    token = _present(sources.override)
    if token:
        return token

    token = _present((sources.args or {}).get(ARGUMENT_FIELD))
    if token:
        return token

    token = _present(env.get(TOKEN_ENV))
    if token:
        return token

    token_file = _present(env.get(TOKEN_FILE_ENV))
    if token_file:
        return read_token_from_file(token_file)

    return None


def read_token_from_file(path: str) -> str:
    """Read a token file and return its stripped contents."""
    try:
        with open(path, encoding="utf-8") as handle:
            content = handle.read()
    except FileNotFoundError as exc:
        raise TokenFileNotFound(
            f"Token file not found: {path}\n"
            f"Make sure {TOKEN_FILE_ENV} points to a valid file.",
            path,
        ) from exc
    except PermissionError as exc:
        raise TokenFilePermissionDenied(
            f"Permission denied reading token file: {path}\n"
            "Make sure the file is readable by the server process.",
            path,
        ) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise TokenFileError(f"Failed to read token file {path}: {exc}", path) from exc

    token = content.strip()
    if not token:
        raise TokenFileEmpty(f"Token file is empty: {path}", path)
    logger.debug("Loaded auth token from file", extra={"token_file": path})
    return token


def missing_auth_message() -> str:
    return (
        "No authentication token provided. Please provide credentials via:\n"
        f"1. Session metadata: {OVERRIDE_FIELD} "
        f"(or the {TOKEN_HEADER} header for HTTP/SSE transport)\n"
        f"2. Tool arguments: {ARGUMENT_FIELD}\n"
        f"3. Environment variable: {TOKEN_ENV}\n"
        f"4. Token file: {TOKEN_FILE_ENV}"
    )


def require_auth_token(sources: AuthSources) -> str:
    """Like ``resolve_auth_token`` but absence is an error."""
    token = resolve_auth_token(sources)
    if token is None:
        raise MissingAuthToken(missing_auth_message())
    return token
