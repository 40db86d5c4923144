"""
Paid HTTP tool skill

Calls the endpoint of an HTTP tool the user has paid for this turn. The
request body is {"input": ..., "context": {"requestId": ...}} and the
response may use the {"data": ..., "meta": ...} envelope, which is unwrapped.
"""

import logging
from typing import Any

import httpx

from ..exceptions import ToolExecutionError
from ..module_registry import ModuleRegistry
from ..runtime import ExecutionRuntime

logger = logging.getLogger(__name__)

MODULE_NAME = "skills.http"

HTTP_TIMEOUT_SECONDS = 10.0


def _unwrap_envelope(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload and "meta" in payload:
        return payload["data"]
    return payload


async def call_http_tool(runtime: ExecutionRuntime, tool_id: str, input: dict | None = None) -> Any:
    """Call an authorized HTTP tool with a JSON input and return its JSON result."""
    entry = runtime.authorization_for(tool_id, kind="http")
    tool = entry.tool
    if not tool.endpoint:
        raise ToolExecutionError(tool.name, "tool is missing a valid HTTP endpoint")

    # Failed calls count too, so a failing endpoint cannot be hammered from a loop
    entry.record_invocation(runtime.max_calls_per_tool)
    input = input or {}

    logger.debug(f"Calling {tool.endpoint} for tool {tool.name}")
    try:
        async with runtime.http_client(HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(
                tool.endpoint,
                json={"input": input, "context": {"requestId": runtime.request_id}},
                headers={"Context-Tool-Id": tool_id},
            )
    except httpx.HTTPError as e:
        raise ToolExecutionError(tool.name, f"{type(e).__name__}: {e}", e) from e

    if not response.is_success:
        raise ToolExecutionError(
            tool.name,
            f"HTTP tool responded with {response.status_code}: {response.text[:200]}"
        )

    try:
        payload = _unwrap_envelope(response.json())
    except ValueError as e:
        raise ToolExecutionError(tool.name, "HTTP tool returned an invalid JSON response.", e) from e

    runtime.record_call(tool.name, input, payload, tool_id=tool_id)
    return payload


def register(registry: ModuleRegistry) -> None:
    http = registry.module(MODULE_NAME, "Call paid HTTP tools authorized for this turn.", requires_payment=True)
    http.capability(
        output_description="the tool's JSON response ({data, meta} envelopes are unwrapped)",
    )(call_http_tool)
