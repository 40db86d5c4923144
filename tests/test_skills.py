"""Unit tests for the built-in skill modules, with every backend faked."""

import json

import httpx
import pytest

from sandboxed_skills import ExecutionRuntime, ToolAuthorizationError, ToolExecutionError
from sandboxed_skills.skills import mcp
from sandboxed_skills.skills.http import call_http_tool
from sandboxed_skills.skills.marketplace import search_marketplace
from sandboxed_skills.skills.mcp import call_mcp_skill, is_retryable_error, unwrap_mcp_content, unwrap_mcp_result
from sandboxed_skills.skills.weather import get_weather

from conftest import _run, make_authorization

FORECAST = {
    "current": {"temperature_2m": 18.2},
    "hourly": {"time": ["2024-06-01T00:00"], "temperature_2m": [15.0]},
    "daily": {"sunrise": ["2024-06-01T05:48"], "sunset": ["2024-06-01T21:49"]},
}


# --- skills.weather ---


def _weather_transport(geocode_results: list, forecast_status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "geocoding-api.open-meteo.com":
            assert request.url.params["name"] == "Paris"
            return httpx.Response(200, json={"results": geocode_results})
        assert request.url.params["latitude"] == "48.85"
        return httpx.Response(forecast_status, json=FORECAST)

    return httpx.MockTransport(handler)


def test_get_weather_by_city() -> None:
    runtime = ExecutionRuntime(http_transport=_weather_transport([{"latitude": 48.85, "longitude": 2.35}]))
    weather = _run(get_weather(runtime, city="Paris"))
    assert weather == {
        "city_name": "Paris",
        "current": {"temperature_celsius": 18.2},
        "hourly": {"times": ["2024-06-01T00:00"], "temperatures_celsius": [15.0]},
        "daily": {"sunrise": ["2024-06-01T05:48"], "sunset": ["2024-06-01T21:49"]},
    }


def test_get_weather_by_coordinates_skips_geocoding() -> None:
    runtime = ExecutionRuntime(http_transport=_weather_transport([]))
    weather = _run(get_weather(runtime, latitude=48.85, longitude=2.35))
    assert weather["city_name"] is None
    assert weather["current"] == {"temperature_celsius": 18.2}


def test_get_weather_unknown_city() -> None:
    runtime = ExecutionRuntime(http_transport=_weather_transport([]))
    with pytest.raises(ValueError, match="Could not find coordinates"):
        _run(get_weather(runtime, city="Paris"))


def test_get_weather_requires_location() -> None:
    with pytest.raises(ValueError):
        _run(get_weather(ExecutionRuntime()))


def test_get_weather_forecast_failure() -> None:
    runtime = ExecutionRuntime(
        http_transport=_weather_transport([{"latitude": 48.85, "longitude": 2.35}], forecast_status=503)
    )
    with pytest.raises(ToolExecutionError, match="503"):
        _run(get_weather(runtime, city="Paris"))


# --- skills.marketplace ---


def test_search_marketplace_clamps_limit() -> None:
    seen = []

    async def search(query: str, limit: int) -> list[dict]:
        seen.append((query, limit))
        return [{"id": f"tool_{i}"} for i in range(100)]

    runtime = ExecutionRuntime(marketplace_search=search)
    results = _run(search_marketplace(runtime, "  prices ", limit=500))
    assert seen == [("prices", 50)]
    assert len(results) == 50


def test_search_marketplace_rejects_empty_query() -> None:
    with pytest.raises(ValueError):
        _run(search_marketplace(ExecutionRuntime(), "   "))


def test_search_marketplace_without_service() -> None:
    with pytest.raises(ToolExecutionError):
        _run(search_marketplace(ExecutionRuntime(), "prices"))


# --- skills.http ---


def _http_runtime(handler) -> ExecutionRuntime:
    return ExecutionRuntime(
        authorized=make_authorization("tool_http", "http"),
        http_transport=httpx.MockTransport(handler),
        request_id="req_42",
    )


def test_call_http_tool_unwraps_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.headers["Context-Tool-Id"] == "tool_http"
        assert json.loads(request.content) == {"input": {"symbol": "ETH"}, "context": {"requestId": "req_42"}}
        return httpx.Response(200, json={"data": {"price": 42}, "meta": {"cached": False}})

    runtime = _http_runtime(handler)
    result = _run(call_http_tool(runtime, "tool_http", {"symbol": "ETH"}))
    assert result == {"price": 42}
    assert runtime.authorized["tool_http"].invocation_count == 1
    assert runtime.call_history[0].tool_name == "Token Prices"
    assert runtime.call_history[0].result == {"price": 42}


def test_call_http_tool_error_status_counts_invocation() -> None:
    runtime = _http_runtime(lambda request: httpx.Response(500, text="upstream down"))
    with pytest.raises(ToolExecutionError, match="HTTP tool responded with 500"):
        _run(call_http_tool(runtime, "tool_http"))
    assert runtime.authorized["tool_http"].invocation_count == 1
    assert runtime.call_history == []


def test_call_http_tool_invalid_json() -> None:
    runtime = _http_runtime(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(ToolExecutionError, match="invalid JSON"):
        _run(call_http_tool(runtime, "tool_http"))


def test_call_http_tool_unauthorized() -> None:
    runtime = ExecutionRuntime(authorized=make_authorization("tool_mcp", "mcp"))
    with pytest.raises(ToolAuthorizationError):
        _run(call_http_tool(runtime, "tool_mcp"))


# --- skills.mcp ---


def _mcp_runtime(transport, events=None) -> ExecutionRuntime:
    return ExecutionRuntime(
        authorized=make_authorization("tool_mcp", "mcp"),
        mcp_transport=transport,
        progress=events.append if events is not None else None,
    )


def test_call_mcp_skill_success() -> None:
    events = []

    async def transport(tool, tool_name, args):
        return {"content": [{"type": "text", "text": '{"price": 42}'}]}

    runtime = _mcp_runtime(transport, events)
    result = _run(call_mcp_skill(runtime, "tool_mcp", "get_price", {"symbol": "ETH"}))
    assert result == {"price": 42}
    assert [e.status for e in events] == ["query", "result"]
    assert runtime.call_history[0].input == {"symbol": "ETH"}
    assert runtime.call_history[0].tool_id == "tool_mcp"


def test_call_mcp_skill_retries_transient_errors(monkeypatch) -> None:
    monkeypatch.setattr(mcp, "BASE_DELAY_MS", 0)
    attempts = []

    async def transport(tool, tool_name, args):
        attempts.append(tool_name)
        if len(attempts) < 3:
            raise ConnectionError("ECONNRESET")
        return {"structuredContent": {"ok": True}}

    runtime = _mcp_runtime(transport)
    assert _run(call_mcp_skill(runtime, "tool_mcp", "get_price")) == {"ok": True}
    assert len(attempts) == 3
    assert runtime.authorized["tool_mcp"].invocation_count == 1


def test_call_mcp_skill_gives_up_on_permanent_errors() -> None:
    attempts = []

    async def transport(tool, tool_name, args):
        attempts.append(tool_name)
        raise ValueError("unknown tool")

    with pytest.raises(ToolExecutionError, match="unknown tool"):
        _run(call_mcp_skill(_mcp_runtime(transport), "tool_mcp", "get_price"))
    assert len(attempts) == 1


def test_call_mcp_skill_is_error_result() -> None:
    events = []

    async def transport(tool, tool_name, args):
        return {"isError": True, "content": [{"type": "text", "text": '{"error": "symbol not listed"}'}]}

    runtime = _mcp_runtime(transport, events)
    with pytest.raises(ToolExecutionError, match="symbol not listed"):
        _run(call_mcp_skill(runtime, "tool_mcp", "get_price"))
    assert events[-1].status == "error"
    assert runtime.call_history == []


def test_is_retryable_error() -> None:
    assert is_retryable_error(TimeoutError())
    assert is_retryable_error(RuntimeError("HTTP 429 Too Many Requests"))
    assert is_retryable_error(RuntimeError("upstream returned 503"))
    assert not is_retryable_error(ValueError("unknown tool"))


def test_unwrap_mcp_content_variants() -> None:
    assert unwrap_mcp_content([{"type": "text", "text": "```json\n{\"a\": 1}\n```"}]) == {"a": 1}
    assert unwrap_mcp_content([{"type": "text", "text": "Result: {\"a\": 1} done"}]) == {"a": 1}
    assert unwrap_mcp_content([{"type": "text", "text": "plain words"}]) == "plain words"
    assert unwrap_mcp_content([
        {"type": "text", "text": '{"a":'},
        {"type": "text", "text": "1}"},
    ]) == {"a": 1}
    image = {"type": "image", "data": "..."}
    assert unwrap_mcp_content([{"type": "text", "text": "[1]"}, image]) == [[1], image]
    assert unwrap_mcp_content([]) == []


def test_unwrap_mcp_result_prefers_structured_content() -> None:
    raw = {"structuredContent": {"a": 1}, "content": [{"type": "text", "text": '{"a": 2}'}]}
    assert unwrap_mcp_result(raw) == {"a": 1}
    assert unwrap_mcp_result({"structuredContent": {}, "content": [{"type": "text", "text": "3"}]}) == 3
