#!/usr/bin/env python3
"""
Self-healing skill execution, basic examples

Runs offline: the language model and the paid MCP server are replaced by
scripted stand-ins, so every healing path can be watched end to end.
Set ANTHROPIC_API_KEY to also run the live weather example.
"""

import asyncio
import logging
import os
import sys

# Make the project importable when run from a checkout
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sandboxed_skills import (
    AnthropicCompletion,
    CapabilityAuthorization,
    CompletionConfig,
    CompletionRequest,
    ExecutionRuntime,
    SelfHealingController,
    ToolListing,
    ToolOperation,
    build_mediator_text,
    default_registry,
    skill_coding_prompt,
)
from sandboxed_skills.skills import FREE_MODULES, MCP_MODULE, WEATHER_MODULE, allowed_modules_for
from utils.visualize import visualize

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(filename)s:%(lineno)d - %(levelname)s - %(message)s"
)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)
logging.getLogger('anthropic').setLevel(logging.WARNING)


# ============================================================
# Stand-ins for the collaborators
# ============================================================

PRICE_TOOL = ToolListing(
    id="tool_prices",
    name="Token Prices",
    kind="mcp",
    price_per_query="0.01",
    endpoint="https://prices.example.com/mcp",
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


async def fake_mcp_transport(tool: ToolListing, tool_name: str, args: dict) -> dict:
    """Pretends to be the remote MCP server"""
    await asyncio.sleep(0.01)
    return {"content": [], "structuredContent": {"price": 42, "symbol": args.get("symbol")}}


def scripted_model(*replies: str):
    """Completion function answering with the given replies in order"""
    queue = list(replies)

    def complete(request: CompletionRequest) -> str:
        print(f"\n[model] asked for a {request.purpose}")
        return queue.pop(0) if queue else "I cannot improve this code."

    return complete


def paid_authorization() -> dict[str, CapabilityAuthorization]:
    return {PRICE_TOOL.id: CapabilityAuthorization(tool=PRICE_TOOL, proof_of_payment="0xdemo")}


# ============================================================
# Examples
# ============================================================

async def example_reflection():
    """The script reads the wrong property; reflection repairs it"""
    print("\n" + "=" * 60)
    print("Example 1: reflection on a suspicious null")
    print("=" * 60)

    buggy = '''```python
from skills.mcp import call_mcp_skill

async def main():
    quote = await call_mcp_skill(tool_id="tool_prices", tool_name="get_price", args={"symbol": "ETH"})
    return {"price": quote.get("last_price")}
```'''
    fixed = '''```python
from skills.mcp import call_mcp_skill

async def main():
    quote = await call_mcp_skill(tool_id="tool_prices", tool_name="get_price", args={"symbol": "ETH"})
    return {"price": quote["price"]}
```'''

    viz = visualize()
    authorized = paid_authorization()
    controller = SelfHealingController(scripted_model(fixed))
    outcome = await controller.run(
        buggy,
        allowed_modules_for({"mcp"}),
        authorized,
        runtime=ExecutionRuntime(mcp_transport=fake_mcp_transport),
        progress=viz.on_progress,
    )
    viz.capture(outcome)
    print(f"Invocations billed: {authorized[PRICE_TOOL.id].invocation_count}")
    print(build_mediator_text(outcome, allowed_modules_for({"mcp"})))


async def example_error_correction():
    """A syntax error is fixed by one correction"""
    print("\n" + "=" * 60)
    print("Example 2: error correction")
    print("=" * 60)

    broken = "async def main(:\n    return {'temperature': 72}"
    fixed = "```python\nasync def main():\n    console.log('computing')\n    return {'temperature': 72}\n```"

    viz = visualize()
    controller = SelfHealingController(scripted_model(fixed))
    outcome = await controller.run(broken, list(FREE_MODULES), {}, progress=viz.on_progress)
    viz.capture(outcome)


async def example_capability_violation():
    """Importing a paid module that was not authorized is refused without model calls"""
    print("\n" + "=" * 60)
    print("Example 3: capability violation")
    print("=" * 60)

    script = (
        f"from {MCP_MODULE} import call_mcp_skill\n"
        "async def main():\n"
        "    return await call_mcp_skill(tool_id='x', tool_name='y', args={})\n"
    )
    viz = visualize()
    controller = SelfHealingController(scripted_model())
    outcome = await controller.run(script, list(FREE_MODULES), {})
    viz.capture(outcome)
    print(build_mediator_text(outcome, FREE_MODULES))


async def example_live_weather():
    """Let Claude write the script, then run it with self-healing"""
    print("\n" + "=" * 60)
    print("Example 4: live weather query")
    print("=" * 60)

    completion = AnthropicCompletion(CompletionConfig.from_env())
    allowed = [WEATHER_MODULE]
    system = skill_coding_prompt(default_registry(), allowed)
    script = await completion(CompletionRequest(
        system=system,
        prompt="What's the temperature in Paris right now?",
        purpose="authoring",
    ))

    viz = visualize()
    outcome = await SelfHealingController(completion).run(script, allowed, {}, progress=viz.on_progress)
    viz.capture(outcome)


async def main():
    print("Self-healing skill execution examples")

    try:
        await example_reflection()
        await example_error_correction()
        await example_capability_violation()
        if os.environ.get("ANTHROPIC_API_KEY"):
            await example_live_weather()
    except Exception as e:
        print(f"\nError: {e}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    asyncio.run(main())
