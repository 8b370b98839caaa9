import json
from typing import Any

import httpx
import pytest

from countly_mcp.errors import (
    FaultKind,
    GenericFault,
    HttpStatusFault,
    NoResponseFault,
    NormalizedFault,
    classify_transport_error,
    extract_error_details,
    safe_api_call,
    wrap_api_error,
)


def _status_error(
    status: int,
    *,
    json_body: Any = None,
    text: str | None = None,
    method: str = "GET",
    url: str = "http://countly.local/o",
) -> httpx.HTTPStatusError:
    request = httpx.Request(method, url)
    if json_body is not None:
        response = httpx.Response(status, json=json_body, request=request)
    else:
        response = httpx.Response(status, text=text or "", request=request)
    return httpx.HTTPStatusError(f"status {status}", request=request, response=response)


def test_extract_error_details_prefers_error_field() -> None:
    error = _status_error(
        400,
        json_body={"error": "Invalid input parameter"},
        method="POST",
        url="http://countly.local/api/endpoint",
    )
    result = extract_error_details(error)

    assert result.status_code == 400
    assert "HTTP 400 error" in result.message
    assert "Invalid input parameter" in result.message
    assert "POST http://countly.local/api/endpoint" in result.message
    assert result.details == {"error": "Invalid input parameter"}


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"message": "Internal server error occurred"}, "Internal server error occurred"),
        ({"result": "Forbidden: Insufficient permissions"}, "Forbidden: Insufficient permissions"),
        ({"error": "first", "message": "second"}, "first"),
    ],
)
def test_extract_error_details_summary_field_order(body: dict[str, str], expected: str) -> None:
    result = extract_error_details(_status_error(500, json_body=body))
    assert f"HTTP 500 error: {expected}" in result.message


def test_extract_error_details_string_body() -> None:
    result = extract_error_details(_status_error(404, text="Resource not found"))
    assert "HTTP 404 error: Resource not found" in result.message


def test_extract_error_details_serializes_structured_body() -> None:
    body = {"field": "email", "validation": "must be valid email"}
    result = extract_error_details(_status_error(422, json_body=body))
    assert "HTTP 422 error" in result.message
    assert "field" in result.message
    assert "validation" in result.message


NOTES_URL = "http://countly.local/o?method=notes&notes_apps=" + json.dumps(
    [f"app-{index:020d}" for index in range(20)]
)


@pytest.mark.parametrize(
    ("body", "url"),
    [
        ({"data": "x" * 300}, "http://countly.local/o"),
        ({"data": "y" * 5000}, "http://countly.local/o"),
        ({"error": "z" * 5000}, "http://countly.local/o"),
        ({"error": "z" * 5000}, NOTES_URL),
    ],
)
def test_extract_error_details_truncates_large_bodies(body: dict[str, str], url: str) -> None:
    result = extract_error_details(_status_error(500, json_body=body, url=url))
    assert "..." in result.message
    assert len(result.message) < 400
    assert "notes_apps" not in result.message
    assert "(GET http://countly.local/o)" in result.message


def test_no_response_origin_omits_query_string() -> None:
    request = httpx.Request("GET", NOTES_URL)
    result = extract_error_details(httpx.ReadTimeout("timed out", request=request))
    assert result.message == "No response from server: timed out (GET http://countly.local/o)"


def test_extract_error_details_no_response() -> None:
    request = httpx.Request("GET", "http://countly.local/o/ping")
    error = httpx.ConnectError("Connection refused", request=request)
    result = extract_error_details(error)

    assert result.status_code is None
    assert result.message.startswith("No response from server")
    assert "Connection refused" in result.message
    assert "GET http://countly.local/o/ping" in result.message


def test_no_response_without_request_still_classifies() -> None:
    fault = classify_transport_error(httpx.ConnectError("boom"))
    assert isinstance(fault, NoResponseFault)
    assert fault.url is None


@pytest.mark.parametrize(
    "error",
    [
        httpx.UnsupportedProtocol(
            "Request URL has an unsupported protocol 'ftp://'.",
            request=httpx.Request("GET", "ftp://countly.local/o"),
        ),
        httpx.TooManyRedirects(
            "Exceeded maximum allowed redirects.",
            request=httpx.Request("GET", "http://countly.local/o"),
        ),
        httpx.LocalProtocolError("Illegal header value"),
    ],
)
def test_request_errors_with_no_network_failure_are_unclassified(
    error: httpx.RequestError,
) -> None:
    assert isinstance(classify_transport_error(error), GenericFault)
    fault = wrap_api_error(error)
    assert fault.kind is FaultKind.UNCLASSIFIED
    assert "No response from server" not in fault.message
    assert fault.message == str(error)


@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectTimeout("connect timed out"),
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("server disconnected"),
        httpx.ProxyError("proxy refused"),
    ],
)
def test_network_failures_are_no_response(error: httpx.RequestError) -> None:
    assert isinstance(classify_transport_error(error), NoResponseFault)
    assert wrap_api_error(error).kind is FaultKind.SERVER_ERROR


def test_extract_error_details_plain_exception_and_non_exception() -> None:
    assert extract_error_details(ValueError("nope")).message == "nope"
    assert extract_error_details(42).message == "42"
    assert extract_error_details("just a string").status_code is None


def test_classify_transport_error_variants() -> None:
    assert isinstance(classify_transport_error(_status_error(500, text="x")), HttpStatusFault)
    assert isinstance(classify_transport_error(KeyError("k")), GenericFault)


@pytest.mark.parametrize("status", [400, 401, 403, 404, 422, 429])
def test_wrap_api_error_client_errors(status: int) -> None:
    fault = wrap_api_error(_status_error(status, json_body={"result": "nope"}))
    assert fault.kind is FaultKind.CLIENT_ERROR
    assert fault.status_code == status


@pytest.mark.parametrize("status", [500, 502, 503])
def test_wrap_api_error_server_errors(status: int) -> None:
    assert wrap_api_error(_status_error(status, text="down")).kind is FaultKind.SERVER_ERROR


def test_wrap_api_error_no_response_is_server_error() -> None:
    request = httpx.Request("GET", "http://countly.local/o")
    fault = wrap_api_error(httpx.ReadTimeout("timed out", request=request))
    assert fault.kind is FaultKind.SERVER_ERROR
    assert fault.status_code is None


def test_wrap_api_error_unclassified() -> None:
    assert wrap_api_error(RuntimeError("weird")).kind is FaultKind.UNCLASSIFIED
    assert wrap_api_error(_status_error(302, text="moved")).kind is FaultKind.UNCLASSIFIED


def test_wrap_api_error_context_prefix() -> None:
    fault = wrap_api_error(_status_error(404, text="missing"), "Failed to ping server")
    assert fault.message.startswith("Failed to ping server: HTTP 404 error")
    assert str(fault) == fault.message


def test_wrap_api_error_rewraps_normalized_fault() -> None:
    inner = wrap_api_error(_status_error(403, text="denied"), "inner")
    outer = wrap_api_error(inner, "outer")
    assert outer.kind is FaultKind.CLIENT_ERROR
    assert outer.status_code == 403
    assert outer.message == "outer: inner: HTTP 403 error: denied (GET http://countly.local/o)"


@pytest.mark.anyio
async def test_safe_api_call_returns_result_unchanged() -> None:
    payload = {"result": "pong"}

    async def call() -> dict[str, str]:
        return payload

    assert await safe_api_call(call, "ping") is payload


@pytest.mark.anyio
async def test_safe_api_call_never_leaks_original_error() -> None:
    original = _status_error(500, json_body={"message": "boom"})

    async def call() -> None:
        raise original

    with pytest.raises(NormalizedFault) as exc:
        await safe_api_call(call, "Failed to fetch")
    assert exc.value.kind is FaultKind.SERVER_ERROR
    assert exc.value.message.startswith("Failed to fetch: HTTP 500 error: boom")
    assert exc.value.__cause__ is original


@pytest.mark.anyio
async def test_safe_api_call_with_mock_transport() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"result": "Token not valid"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://countly.local"
    ) as client:

        async def call() -> Any:
            response = await client.get("/o/apps/mine")
            response.raise_for_status()
            return response.json()

        with pytest.raises(NormalizedFault) as exc:
            await safe_api_call(call)

    assert exc.value.kind is FaultKind.CLIENT_ERROR
    assert "Token not valid" in exc.value.message
    assert "GET http://countly.local/o/apps/mine" in exc.value.message
