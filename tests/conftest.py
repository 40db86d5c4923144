"""Shared fixtures: an offline skill registry, paid authorizations and scripted models."""

import asyncio

import pytest

from sandboxed_skills import (
    CapabilityAuthorization,
    CompletionRequest,
    ModuleRegistry,
    SandboxConfig,
    SkillSandbox,
    ToolListing,
    ToolOperation,
)
from sandboxed_skills.skills import http, mcp

FAKE_WEATHER_MODULE = "skills.weather"
FAKE_DATA_MODULE = "skills.data"


def _run(coro) -> object:
    return asyncio.run(coro)


async def fake_get_weather(runtime, city: str | None = None) -> dict:
    """Canned forecast"""
    if not city:
        raise ValueError("Please provide either a city name or both latitude and longitude.")
    return {"city_name": city, "current": {"temperature_celsius": 21.5}}


async def fake_list_items(runtime, count: int = 12) -> dict:
    """Returns `count` items and records the call like a paid tool"""
    result = {"items": [{"id": i, "price": 0.1 * i} for i in range(count)]}
    runtime.record_call("list_items", {"count": count}, result)
    return result


def build_test_registry() -> ModuleRegistry:
    registry = ModuleRegistry()
    weather = registry.module(FAKE_WEATHER_MODULE, "Canned weather for tests.")
    weather.capability()(fake_get_weather)
    data = registry.module(FAKE_DATA_MODULE, "Canned paid data for tests.", requires_payment=True)
    data.capability()(fake_list_items)
    http.register(registry)
    mcp.register(registry)
    return registry.freeze()


@pytest.fixture
def registry() -> ModuleRegistry:
    return build_test_registry()


@pytest.fixture
def sandbox(registry) -> SkillSandbox:
    return SkillSandbox(registry, SandboxConfig(timeout_ms=2000))


def make_tool(tool_id: str = "tool_prices", kind: str = "mcp", endpoint: str = "https://tools.example.com/run") -> ToolListing:
    return ToolListing(
        id=tool_id,
        name="Token Prices",
        kind=kind,
        price_per_query="0.01",
        endpoint=endpoint,
        description="Spot prices for tokens.",
        operations=[
            ToolOperation(
                name="get_price",
                description="Current price of a token",
                input_schema={"type": "object", "properties": {"symbol": {"type": "string"}}},
                output_schema={"type": "object", "properties": {"price": {"type": "number"}}},
            )
        ],
    )


def make_authorization(tool_id: str = "tool_prices", kind: str = "mcp", **kwargs) -> dict[str, CapabilityAuthorization]:
    tool = make_tool(tool_id, kind, **kwargs)
    return {tool_id: CapabilityAuthorization(tool=tool, proof_of_payment="0xpaid")}


class ScriptedModel:
    """Completion function replaying canned replies and remembering every request"""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests: list[CompletionRequest] = []

    def __call__(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        if not self.replies:
            return "no code here"
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def fenced(code: str) -> str:
    return f"```python\n{code}\n```"
