"""
Execution runtime context

Per-request state threaded into every capability call made by a sandboxed
script:
- the capability authorization map (tool id -> paid authorization entry)
- the call history the script accumulates while it runs
- the progress sink used to surface coarse status events

A fresh ExecutionRuntime is built for every attempt. Capability
implementations receive it as an explicit argument; nothing in this package
keeps a "current runtime" global.
"""

import logging
import time as time_module
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, MutableMapping

import httpx

from .exceptions import ToolAuthorizationError

logger = logging.getLogger(__name__)

# Per paid tool, per turn
DEFAULT_MAX_CALLS_PER_TOOL = 100


@dataclass(frozen=True)
class ToolOperation:
    """One operation exposed by a paid tool (an MCP tool or an HTTP endpoint)"""
    name: str
    description: str = ""
    input_schema: dict | None = None
    output_schema: dict | None = None


@dataclass
class ToolListing:
    """Marketplace listing of a paid tool, resolved by the caller"""
    id: str
    name: str
    kind: str  # "http" | "mcp"
    price_per_query: str = "0"
    endpoint: str | None = None
    description: str = ""
    operations: list[ToolOperation] = field(default_factory=list)


@dataclass
class CapabilityAuthorization:
    """
    Verified payment for one tool in the current turn.

    invocation_count is incremented every time a script actually calls the
    tool and is read back by the billing side once execution finishes.
    """
    tool: ToolListing
    proof_of_payment: str = field(repr=False)
    invocation_count: int = 0

    def record_invocation(self, limit: int = DEFAULT_MAX_CALLS_PER_TOOL) -> int:
        """Count one invocation, refusing once the per-turn limit is reached"""
        if self.invocation_count >= limit:
            raise ToolAuthorizationError(
                self.tool.id,
                f"Tool {self.tool.name} has reached its limit of {limit} calls per turn."
            )
        self.invocation_count += 1
        return self.invocation_count


@dataclass(frozen=True)
class CallRecord:
    """One capability invocation made by sandboxed code"""
    tool_name: str
    input: Any
    result: Any
    timestamp_ms: int
    tool_id: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    """Coarse status event for UI consumption"""
    status: str
    attempt: int = 0
    message: str = ""


ProgressSink = Callable[[ProgressEvent], None]
MarketplaceSearch = Callable[[str, int], Awaitable[list[dict]]]
McpTransport = Callable[[ToolListing, str, dict], Awaitable[Any]]


def now_ms() -> int:
    return int(time_module.time() * 1000)


@dataclass
class ExecutionRuntime:
    """
    Runtime context for one execution attempt.

    Attributes:
        authorized: tool id -> CapabilityAuthorization, shared with the caller
            so it can read invocation counters afterwards
        call_history: records appended by capabilities during this attempt
        progress: optional sink for ProgressEvent
        request_id: identifier forwarded to paid HTTP tools
        http_transport: optional httpx transport used by HTTP-backed skills
        marketplace_search: collaborator service backing skills.marketplace
        mcp_transport: collaborator service backing skills.mcp
        max_calls_per_tool: per-turn ceiling applied to paid tools
        attempt: zero-based attempt index this runtime belongs to
    """
    authorized: MutableMapping[str, CapabilityAuthorization] = field(default_factory=dict)
    call_history: list[CallRecord] = field(default_factory=list)
    progress: ProgressSink | None = None
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    http_transport: httpx.AsyncBaseTransport | None = None
    marketplace_search: MarketplaceSearch | None = None
    mcp_transport: McpTransport | None = None
    max_calls_per_tool: int = DEFAULT_MAX_CALLS_PER_TOOL
    attempt: int = 0

    def next_attempt(self, seed_history: list[CallRecord] | None = None, attempt: int | None = None) -> "ExecutionRuntime":
        """Build the runtime for another attempt, owning a copy of seed_history"""
        return replace(
            self,
            call_history=list(seed_history or []),
            attempt=self.attempt + 1 if attempt is None else attempt,
        )

    def authorization_for(self, tool_id: str, kind: str | None = None) -> CapabilityAuthorization:
        """Look up the paid authorization for tool_id"""
        entry = self.authorized.get(tool_id)
        if entry is None:
            raise ToolAuthorizationError(
                tool_id,
                f"Tool {tool_id} is not authorized for this turn. "
                "Ensure the user selected and paid for it."
            )
        if kind is not None and entry.tool.kind != kind:
            raise ToolAuthorizationError(
                tool_id,
                f"Tool {entry.tool.name} is a '{entry.tool.kind}' tool and cannot be called as '{kind}'."
            )
        return entry

    def record_call(self, tool_name: str, input: Any, result: Any, tool_id: str | None = None) -> CallRecord:
        record = CallRecord(
            tool_name=tool_name,
            input=input,
            result=result,
            timestamp_ms=now_ms(),
            tool_id=tool_id,
        )
        self.call_history.append(record)
        return record

    def emit(self, status: str, message: str = "") -> None:
        """Forward a progress event; a failing sink never interrupts execution"""
        if self.progress is None:
            return
        try:
            self.progress(ProgressEvent(status=status, attempt=self.attempt, message=message))
        except Exception as e:
            logger.warning(f"Progress sink failed on '{status}': {e}")

    def http_client(self, timeout: float = 10.0) -> httpx.AsyncClient:
        """Client for HTTP-backed skills; honours the injected transport"""
        return httpx.AsyncClient(transport=self.http_transport, timeout=timeout)
