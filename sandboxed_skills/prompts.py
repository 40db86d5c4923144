"""
Prompt builders for script authoring, error correction and reflection
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .detector import FilteredToEmpty
from .module_registry import ModuleRegistry
from .runtime import CallRecord, CapabilityAuthorization

CODE_BLOCK_REGEX = re.compile(r"```[ \t]*[\w+.-]*[ \t]*\r?\n(.*?)```", re.DOTALL)

ERROR_CORRECTION_USER_MESSAGE = "The previous code crashed. Fix the error and output the corrected code block."
TIMEOUT_CORRECTION_USER_MESSAGE = (
    "The previous code timed out. Make it do less work or run faster, and output the corrected code block."
)
REFLECTION_USER_MESSAGE = (
    "Fix the code to correctly process the tool outputs. Output only the corrected Python code block."
)
FILTERED_TO_EMPTY_USER_MESSAGE = (
    "Your filtering was too aggressive. Rewrite the code to return the closest matches instead of an empty list."
)


def extract_code_block(text: str) -> str | None:
    """First fenced code block in a model reply, or None when the reply has none"""
    match = CODE_BLOCK_REGEX.search(text or "")
    if not match:
        return None
    code = match.group(1).strip()
    return code or None


def format_execution_data(data: Any, max_length: int = 1200) -> str:
    try:
        text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(data)
    if len(text) <= max_length:
        return text
    return text[:max_length] + "…"


def format_call_history(call_history: Iterable[CallRecord], max_result_length: int = 2000) -> str:
    """Render call history for prompts, one numbered section per call"""
    sections = []
    for index, call in enumerate(call_history, 1):
        sections.append(
            f"### Call {index}: {call.tool_name}\n"
            f"**Input:**\n```json\n{format_execution_data(call.input, 500)}\n```\n"
            f"**Result:**\n```json\n{format_execution_data(call.result, max_result_length)}\n```"
        )
    if not sections:
        return "(No tool calls were recorded)"
    return "\n\n".join(sections)


@dataclass
class ToolSchemaInfo:
    """Schema summary of one authorized tool"""
    tool_id: str
    name: str
    kind: str
    operations: list[dict] = field(default_factory=list)


def build_tool_schema_info(authorized: Mapping[str, CapabilityAuthorization]) -> list[ToolSchemaInfo]:
    infos = []
    for tool_id, entry in authorized.items():
        infos.append(ToolSchemaInfo(
            tool_id=tool_id,
            name=entry.tool.name,
            kind=entry.tool.kind,
            operations=[
                {
                    "name": op.name,
                    "description": op.description,
                    "input_schema": op.input_schema,
                    "output_schema": op.output_schema,
                }
                for op in entry.tool.operations
            ],
        ))
    return infos


def format_tool_schemas(infos: Iterable[ToolSchemaInfo]) -> str:
    sections = []
    for info in infos:
        for op in info.operations:
            input_schema = json.dumps(op.get("input_schema") or {}, indent=2)
            output_schema = json.dumps(op["output_schema"], indent=2) if op.get("output_schema") else "unknown"
            sections.append(
                f"### {info.name} → {op['name']} (tool_id: {info.tool_id}, kind: {info.kind})\n"
                f"**Input Schema (valid parameters):**\n```json\n{input_schema}\n```\n"
                f"**Output Schema (response structure):**\n```json\n{output_schema}\n```"
            )
    return "\n\n".join(sections) or "(No schemas available)"


def error_correction_prompt(
    code: str,
    error: str,
    logs: list[str],
    call_history: list[CallRecord] | None = None,
    tool_schemas: list[ToolSchemaInfo] | None = None,
    timed_out: bool = False,
) -> str:
    """System prompt asking for a corrected script after a failure"""
    logs_text = "\n".join(logs[-20:]) if logs else "(no logs)"

    if timed_out:
        diagnosis = """## Diagnosis
The script did not finish within its time budget. This is not a logic bug:
make the script do less work. Fetch fewer items, avoid unbounded loops,
and run independent capability calls concurrently with `asyncio.gather`."""
    else:
        diagnosis = """## Diagnosis
Read the error message and the logs, find the failing line, and fix the cause.
Check parameter names against the Input Schema and property names against the
Output Schema before guessing."""

    history_section = ""
    if call_history:
        history_section = f"""
## Tool Calls Made Before The Failure
{format_call_history(call_history)}
"""

    return f"""You are fixing a Python script that runs inside a restricted sandbox.

## Failing Code
```python
{code}
```

## Error
```
{error}
```

## Logs
```
{logs_text}
```
{history_section}
## Tool Schemas
{format_tool_schemas(tool_schemas or [])}

{diagnosis}

## Sandbox Rules
- Only `from <module> import name` imports of the approved modules work. No aliases, no `import x`.
- Define `main()` (preferably `async def main()`) with no parameters and return a JSON-serializable value.
- Capabilities are async: always `await` them.
- `open`, `eval`, `exec`, `getattr`, `str.format`, private (`_x`) and dunder attributes are unavailable.
- Build strings with f-strings.
- `asyncio.gather`, `asyncio.sleep`, `asyncio.wait_for`, `json`, `math`, `datetime`, `date` and `timedelta` are available without importing.
- Do not wrap tool calls in try/except blocks that swallow errors.

Respond with ONE corrected ```python code block and nothing else."""


def reflection_prompt(
    code: str,
    data: Any,
    null_paths: list[str],
    call_history: list[CallRecord],
    tool_schemas: list[ToolSchemaInfo] | None = None,
) -> str:
    """System prompt asking for a fix when a successful run left nulls where tools had data"""
    paths_text = "\n".join(f"- `{p or '(root)'}`" for p in null_paths)

    return f"""You are reviewing a Python script that ran without errors but produced a
suspicious result. The tools returned real data, yet the result contains null
values. The script most likely read the wrong property names or dropped data
while reshaping it.

## Your Original Code
```python
{code}
```

## Your Result (with suspicious nulls)
```json
{format_execution_data(data)}
```

## Null Values Found At
{paths_text}

## Raw Tool Outputs (what the APIs actually returned)
{format_call_history(call_history)}

## Tool Schemas (REFERENCE - use correct params and access correct properties!)
{format_tool_schemas(tool_schemas or [])}

Now write ONLY the corrected ```python code block. Fix the bug that caused the null values.
HINT: Check that you're accessing the correct property names from the Output Schema above."""


def filtered_to_empty_prompt(
    code: str,
    data: Any,
    filtered: FilteredToEmpty,
    call_history: list[CallRecord],
    tool_schemas: list[ToolSchemaInfo] | None = None,
) -> str:
    """System prompt asking for closest matches when filtering removed every item"""
    return f"""You are reviewing a Python script that ran without errors but filtered away
every item the tools returned.

## CRITICAL ISSUE: Over-Filtering Detected
The tool "{filtered.tool_name}" returned {filtered.tool_data_count} {filtered.field_name}, but your code
filtered them ALL out. The user's criteria do not match what is available right now.

## What You Should Do Instead
1. DO NOT return an empty list - that's unhelpful
2. INSTEAD: Return the CLOSEST matches to what the user wanted
3. Sort by proximity to the user's criteria and return the top results
4. Include a "note" field explaining these are the closest available matches

## Your Original Code (with over-aggressive filtering)
```python
{code}
```

## Your Result (empty - BAD)
```json
{format_execution_data(data)}
```

## Raw Tool Output ({filtered.tool_data_count} items available!)
{format_call_history(call_history)}

## Tool Schemas
{format_tool_schemas(tool_schemas or [])}

Example fix pattern:
```python
# BAD: hard filter that may return nothing
filtered = [o for o in opportunities if 0.50 <= o["price"] <= 0.70]

# GOOD: rank by distance to the requested range, always return something
def distance(o):
    return max(0.50 - o["price"], o["price"] - 0.70, 0)

ranked = sorted(opportunities, key=distance)
return {{"opportunities": ranked[:5], "note": "No exact matches found. Showing closest available options."}}
```

Respond with ONE corrected ```python code block and nothing else."""


def _format_authorized_tool(index: int, entry: CapabilityAuthorization) -> str:
    tool = entry.tool
    price = float(tool.price_per_query or 0)
    price_label = "FREE" if price == 0 else f"${price:.2f}/query"

    if tool.kind == "mcp":
        if tool.operations:
            operations = "\n".join(
                f"      - {op.name}: {op.description or 'No description'}\n"
                f"        inputSchema: {json.dumps(op.input_schema or {})}\n"
                f"        outputSchema: {json.dumps(op.output_schema) if op.output_schema else 'unknown'}"
                for op in tool.operations
            )
        else:
            operations = "      (No tools discovered)"
        return f"""{index}. {tool.name} (MCP Tool • {price_label})
   Tool ID: {tool.id}
   Import: from skills.mcp import call_mcp_skill
   Available MCP Tools:
{operations}
   Example:
     result = await call_mcp_skill(tool_id="{tool.id}", tool_name="<tool_name>", args={{...}})
   {tool.description}"""

    return f"""{index}. {tool.name} (HTTP Tool • {price_label})
   Tool ID: {tool.id}
   Import: from skills.http import call_http_tool
   Example:
     result = await call_http_tool(tool_id="{tool.id}", input={{...}})
   {tool.description}"""


def skill_coding_prompt(
    registry: ModuleRegistry,
    allowed_modules: Iterable[str],
    authorized: Mapping[str, CapabilityAuthorization] | None = None,
) -> str:
    """System prompt used to obtain the initial script"""
    allowed_modules = list(allowed_modules)
    modules_doc = registry.generate_modules_documentation(allowed_modules)

    if authorized:
        tools_section = "Paid tools authorized for this turn:\n" + "\n".join(
            _format_authorized_tool(i, entry) for i, entry in enumerate(authorized.values(), 1)
        )
    else:
        tools_section = "No paid tools are authorized for this turn. Do not attempt to import them."

    return f"""You are a code-execution orchestrator. Answer the user's request by writing one
Python script that calls the approved skill modules.

Key philosophy:
- Do not rely on memorized values (IDs, prices, lists). Ask the tool.
- When a tool returns a lot of data, filter it in code based on the user's criteria.

## Approved Modules

{modules_doc}

{tools_section}

## Script Requirements
- Respond with one ```python code block and nothing else.
- Import capabilities with `from <module> import name` at the top. No aliases, no `import x`.
- Define `async def main():` with no parameters and return a compact JSON-serializable dict.
- Capabilities are async: `result = await get_weather(city="Paris")`.
- Run independent calls concurrently:
```python
first, second = await asyncio.gather(
    call_mcp_skill(tool_id=tool_id, tool_name="get_data", args={{"id": 1}}),
    call_mcp_skill(tool_id=tool_id, tool_name="get_data", args={{"id": 2}}),
)
```
- Use `console.log(...)` or `print(...)` for diagnostics; they are captured, not shown to the user.
- `asyncio.gather`, `asyncio.sleep`, `asyncio.wait_for`, `json.dumps`, `json.loads`, `math`, `datetime`, `date`
  and `timedelta` are available without importing.
- Build strings with f-strings; `str.format` and private (`_x`) attributes are unavailable.

## Rules
- Never import modules outside the approved list.
- Each paid tool may be called at most 100 times per turn.
- Do NOT wrap tool calls in try/except blocks that swallow errors.
- If a tool returns empty data, say so in the result instead of inventing values.
- Preserve numeric precision from tool responses."""
