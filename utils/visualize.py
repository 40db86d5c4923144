"""
Terminal visualizer for self-healing execution outcomes
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text
from rich.tree import Tree

from sandboxed_skills.healing import HealingOutcome, HealingState
from sandboxed_skills.runtime import CallRecord, ProgressEvent
from sandboxed_skills.sandbox import ExecutionResult

STATE_STYLES = {
    HealingState.EXECUTING: "cyan",
    HealingState.CORRECTING: "red",
    HealingState.REFLECTING: "yellow",
    HealingState.DONE: "green",
}


def format_json(data: Any, max_length: int = 500) -> str:
    """Format data as JSON string, truncating if too long."""
    json_str = json.dumps(data, indent=2, default=str)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n  ... (truncated)"
    return json_str


def render_transitions(outcome: HealingOutcome, tree: Tree) -> None:
    """Render the visited controller states as one line."""
    steps = [f"[{STATE_STYLES[state]}]{state.value}[/{STATE_STYLES[state]}]" for state in outcome.transitions]
    tree.add("[dim white]States:[/dim white] " + " → ".join(steps))


def render_result(result: ExecutionResult, tree: Tree) -> None:
    """Render the final execution result."""
    if result.success:
        result_node = tree.add(f"[green]Success[/green] [dim white]({result.duration_ms} ms)[/dim white]")
        data_node = result_node.add("[cyan]Data:[/cyan]")
        data_node.add(Syntax(format_json(result.data), "json", theme="monokai", line_numbers=False))
    else:
        kind = result.failure_kind.value if result.failure_kind else "unknown"
        result_node = tree.add(
            f"[red]Failure[/red] [dim white]({kind}, {result.duration_ms} ms)[/dim white]"
        )
        result_node.add(Text(result.error or "", style="white"))

    if result.logs:
        logs_node = result_node.add(f"[cyan]Logs[/cyan] ({len(result.logs)} lines)")
        text = "\n".join(result.logs[-20:])
        if len(result.logs) > 20:
            text = f"... ({len(result.logs) - 20} earlier lines)\n" + text
        logs_node.add(Text(text, style="white"))


def render_call_history(call_history: list[CallRecord], tree: Tree) -> None:
    """Render capability calls recorded during the run."""
    if not call_history:
        tree.add("[dim white]No paid tool calls[/dim white]")
        return

    history_node = tree.add(f"[yellow]Tool Calls[/yellow] ({len(call_history)})")
    for call in call_history:
        call_node = history_node.add(f"[bold yellow]{call.tool_name}[/bold yellow]")
        if call.tool_id:
            call_node.add(f"[dim white]Tool ID:[/dim white] {call.tool_id}")
        input_node = call_node.add("[green]Input:[/green]")
        input_node.add(Syntax(format_json(call.input, 300), "json", theme="monokai", line_numbers=False))
        output_node = call_node.add("[cyan]Result:[/cyan]")
        output_node.add(Syntax(format_json(call.result), "json", theme="monokai", line_numbers=False))


def render_code(code: str, tree: Tree) -> None:
    """Render the script that produced the final result."""
    if len(code) > 2000:
        code = code[:2000] + "\n# ... (truncated)"
    code_node = tree.add("[green]Final Code:[/green]")
    code_node.add(Syntax(code, "python", theme="monokai", line_numbers=True))


def visualize_outcome(outcome: HealingOutcome, console: Console = None) -> None:
    """Visualize a self-healing outcome in the terminal."""
    if console is None:
        console = Console()

    status = "[green]success[/green]" if outcome.success else "[red]failed[/red]"
    tree = Tree(
        f"[bold cyan]Skill Execution[/bold cyan] ({status}) "
        f"[dim white]│[/dim white] [magenta]attempt:[/magenta] [cyan]{outcome.attempt_count}[/cyan] • "
        f"[magenta]model calls:[/magenta] [yellow]{outcome.model_calls}[/yellow]"
    )

    render_transitions(outcome, tree)
    if outcome.suspicion is not None and outcome.suspicion.suspicious:
        tree.add(f"[yellow]Suspicious:[/yellow] {outcome.suspicion.reason}")
    render_result(outcome.result, tree)
    render_call_history(outcome.call_history, tree)
    render_code(outcome.final_code, tree)

    panel = Panel(
        tree,
        title="[bold]Self-Healing Outcome[/bold]",
        border_style="cyan" if outcome.success else "red",
        expand=False,
    )

    console.print(panel)


class visualize:
    """
    Collects progress events and outcomes for display.

    Usage:
        viz = visualize(auto_show=True)
        outcome = await controller.run(code, modules, authorized, progress=viz.on_progress)
        viz.capture(outcome)
    """

    def __init__(self, auto_show: bool = True, console: Console | None = None):
        """
        Initialize the visualizer.

        Args:
            auto_show: Whether to print progress and outcomes as they arrive (default: True)
            console: rich console to print to
        """
        self.auto_show = auto_show
        self.outcomes: list[HealingOutcome] = []
        self.events: list[ProgressEvent] = []
        self.console = console or Console()

    def on_progress(self, event: ProgressEvent) -> None:
        """Progress sink for SelfHealingController.run."""
        self.events.append(event)
        if self.auto_show:
            message = f" {event.message}" if event.message else ""
            self.console.print(f"[dim white]\\[attempt {event.attempt}][/dim white] [cyan]{event.status}[/cyan]{message}")

    def capture(self, outcome: HealingOutcome) -> None:
        """
        Capture an outcome for visualization.

        Args:
            outcome: result of a self-healing run
        """
        self.outcomes.append(outcome)

        if self.auto_show:
            visualize_outcome(outcome, self.console)

    def show_all(self) -> None:
        """Show all captured outcomes."""
        for outcome in self.outcomes:
            visualize_outcome(outcome, self.console)


def show_outcome(outcome: HealingOutcome) -> None:
    """
    Simple helper to visualize a single outcome.

    Args:
        outcome: HealingOutcome to display
    """
    visualize_outcome(outcome)
