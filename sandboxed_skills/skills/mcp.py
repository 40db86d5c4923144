"""
Paid MCP tool skill

A paid MCP tool is a remote MCP server listed in the marketplace. Once the
user has paid for it this turn, a script may call any tool on that server
through call_mcp_skill, up to the per-turn call limit. Connecting to the
server is the job of the caller-supplied `mcp_transport`; this module handles
authorization, transient-error retries and result unwrapping.
"""

import asyncio
import json
import logging
import random
import re
from typing import Any

from ..exceptions import ToolExecutionError
from ..module_registry import ModuleRegistry
from ..runtime import ExecutionRuntime

logger = logging.getLogger(__name__)

MODULE_NAME = "skills.mcp"

MAX_RETRIES = 3
BASE_DELAY_MS = 500
MAX_DELAY_MS = 10_000

RETRYABLE_ERROR_PATTERNS = (
    "econnreset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "eai_again",
    "socket hang up",
    "connection reset",
    "network",
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "throttl",
)
RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)

CODE_FENCE_REGEX = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def is_retryable_error(error: BaseException) -> bool:
    """Transient network and rate-limit failures are worth another try"""
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    message = str(error).lower()
    if any(pattern in message for pattern in RETRYABLE_ERROR_PATTERNS):
        return True
    return any(str(code) in message for code in RETRYABLE_STATUS_CODES)


def backoff_delay_ms(attempt: int) -> int:
    """Exponential backoff with ±25% jitter, capped at MAX_DELAY_MS"""
    delay = BASE_DELAY_MS * 2 ** attempt
    jitter = delay * 0.25 * (random.random() * 2 - 1)
    return int(min(delay + jitter, MAX_DELAY_MS))


_NOT_JSON = object()


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return _NOT_JSON


def _parse_text(text: str) -> Any:
    candidates = [text]
    match = CODE_FENCE_REGEX.search(text)
    if match:
        candidates.append(match.group(1))
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])

    for candidate in candidates:
        value = _loads(candidate)
        if value is not _NOT_JSON:
            return value
    return text


def _is_text_block(block: Any) -> bool:
    return isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)


def unwrap_mcp_content(content: Any) -> Any:
    """Turn an MCP content array into plain data, JSON-decoding text where possible"""
    if not isinstance(content, list) or not content:
        return content

    if len(content) == 1:
        block = content[0]
        return _parse_text(block["text"]) if _is_text_block(block) else block

    if all(_is_text_block(block) for block in content):
        return _parse_text("\n".join(block["text"] for block in content))

    return [_parse_text(block["text"]) if _is_text_block(block) else block for block in content]


def unwrap_mcp_result(result: Any) -> Any:
    """Prefer structuredContent; fall back to the content array"""
    if hasattr(result, "model_dump"):
        result = result.model_dump(by_alias=True)
    if not isinstance(result, dict):
        return result

    structured = result.get("structuredContent")
    if isinstance(structured, dict) and structured:
        return structured
    return unwrap_mcp_content(result.get("content"))


def _error_message(result: Any) -> str:
    data = unwrap_mcp_content(result.get("content"))
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data or "unknown error")


async def call_mcp_skill(
    runtime: ExecutionRuntime,
    tool_id: str,
    tool_name: str,
    args: dict | None = None,
) -> Any:
    """Call one tool on an authorized MCP server; the result follows that tool's outputSchema."""
    entry = runtime.authorization_for(tool_id, kind="mcp")
    if runtime.mcp_transport is None:
        raise ToolExecutionError(tool_name, "no MCP transport is configured")

    entry.record_invocation(runtime.max_calls_per_tool)
    args = args or {}

    args_preview = f" with {', '.join(args)}" if args else ""
    runtime.emit("query", f"Calling {tool_name}{args_preview}")

    attempt = 0
    while True:
        try:
            raw = await runtime.mcp_transport(entry.tool, tool_name, args)
            break
        except Exception as e:
            if attempt < MAX_RETRIES and is_retryable_error(e):
                delay_ms = backoff_delay_ms(attempt)
                logger.info(
                    f"Retrying {entry.tool.name}/{tool_name} in {delay_ms} ms "
                    f"(attempt {attempt + 1}/{MAX_RETRIES}): {e}"
                )
                attempt += 1
                await asyncio.sleep(delay_ms / 1000)
                continue
            runtime.emit("error", f"{tool_name} failed: {e}")
            raise ToolExecutionError(tool_name, str(e), e) from e

    if hasattr(raw, "model_dump"):
        raw = raw.model_dump(by_alias=True)

    if isinstance(raw, dict) and raw.get("isError"):
        message = _error_message(raw)
        runtime.emit("error", f"{tool_name} returned an error: {message}")
        raise ToolExecutionError(tool_name, message)

    result = unwrap_mcp_result(raw)
    runtime.record_call(tool_name, args, result, tool_id=tool_id)
    runtime.emit("result", f"{tool_name} returned data")
    return result


def register(registry: ModuleRegistry) -> None:
    mcp = registry.module(MODULE_NAME, "Call tools on paid MCP servers authorized for this turn.", requires_payment=True)
    mcp.capability(
        output_description="the tool's result, matching its outputSchema",
    )(call_mcp_skill)
