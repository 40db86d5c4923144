"""Smoke tests for the terminal visualizer."""

from rich.console import Console

from sandboxed_skills import CallRecord, ExecutionResult, HealingOutcome, HealingState, ProgressEvent
from utils.visualize import format_json, visualize, visualize_outcome


def _console() -> Console:
    return Console(record=True, width=120, force_terminal=False)


def _outcome(success: bool = True) -> HealingOutcome:
    if success:
        result = ExecutionResult.ok({"price": 42}, ["fetched"], 12)
    else:
        result = ExecutionResult.fail("ValueError: bad key", [], 3)
    return HealingOutcome(
        result=result,
        final_code="async def main():\n    return {'price': 42}",
        attempt_count=1,
        call_history=[CallRecord(tool_name="get_price", input={"symbol": "ETH"}, result={"price": 42}, timestamp_ms=0, tool_id="tool_prices")],
        model_calls=1,
        transitions=[HealingState.EXECUTING, HealingState.CORRECTING, HealingState.EXECUTING, HealingState.DONE],
    )


def test_format_json_truncates() -> None:
    assert format_json({"a": 1}) == '{\n  "a": 1\n}'
    assert format_json({"text": "x" * 100}, max_length=10).endswith("... (truncated)")


def test_visualize_success_outcome() -> None:
    console = _console()
    visualize_outcome(_outcome(), console)
    text = console.export_text()
    assert "Self-Healing Outcome" in text
    assert "Success" in text
    assert "executing → correcting → executing → done" in text
    assert "get_price" in text
    assert "tool_prices" in text


def test_visualize_failure_outcome() -> None:
    console = _console()
    visualize_outcome(_outcome(success=False), console)
    text = console.export_text()
    assert "Failure" in text
    assert "runtime_error" in text
    assert "ValueError: bad key" in text


def test_visualize_collects_events_and_outcomes() -> None:
    console = _console()
    viz = visualize(auto_show=False, console=console)
    viz.on_progress(ProgressEvent(status="executing", attempt=0))
    viz.capture(_outcome())
    assert console.export_text() == ""
    assert len(viz.events) == 1
    assert len(viz.outcomes) == 1

    viz.show_all()
    assert "Self-Healing Outcome" in console.export_text()


def test_visualize_prints_progress() -> None:
    console = _console()
    viz = visualize(console=console)
    viz.on_progress(ProgressEvent(status="fixing", attempt=1, message="ValueError: bad key"))
    assert "[attempt 1] fixing ValueError: bad key" in console.export_text()
