"""Render a healing outcome as the compact verdict consumed by the answer-generation step."""

from typing import Iterable

from .detector import DetectorConfig, detect_filtered_to_empty, has_non_empty_data
from .healing import HealingOutcome
from .prompts import format_execution_data


def _recent_logs(logs: list[str], keep: int = 5) -> str:
    if len(logs) > keep:
        return f"...({len(logs) - keep} earlier logs)\n" + "\n".join(logs[-keep:])
    return "\n".join(logs)


def build_mediator_text(
    outcome: HealingOutcome,
    allowed_modules: Iterable[str],
    has_data: bool | None = None,
    detector_config: DetectorConfig | None = None,
) -> str:
    """
    Summarize the final execution verdict

    Args:
        outcome: result of SelfHealingController.run
        allowed_modules: modules the script was allowed to use
        has_data: override for the HAS_DATA line; computed from the result when None
        detector_config: thresholds for the filtered-to-empty variant

    Returns:
        Plain text verdict
    """
    execution = outcome.result
    modules_text = ", ".join(allowed_modules)
    attempt_count = outcome.attempt_count

    retry_info = ""
    if attempt_count > 0:
        retry_info = (
            f"\nRETRIES: {attempt_count} "
            f"(self-healed from {'an error' if attempt_count == 1 else 'errors'})"
        )

    if execution.success:
        if has_data is None:
            has_data = has_non_empty_data(execution.data)

        filtered = detect_filtered_to_empty(execution.data, outcome.call_history, detector_config)
        if filtered is not None:
            return f"""Tool execution succeeded but filtering returned empty results.{retry_info}
HAS_DATA: false (filtered to empty)
STATUS: success
FILTERED_TO_EMPTY: true
FILTER_INFO: Tool "{filtered.tool_name}" returned {filtered.tool_data_count} {filtered.field_name}, but the code filtered them all out.
Modules used: {modules_text}

IMPORTANT: The tool DID return data. The user's criteria may not match what's available.
Consider presenting what IS available instead of an empty result.

Raw tool data sample (first 3 items):
{format_execution_data(filtered.sample_data)}

Final (empty) result:
{format_execution_data(execution.data)}"""

        return f"""Tool execution succeeded.{retry_info}
HAS_DATA: {str(has_data).lower()}
STATUS: success
Modules used: {modules_text}
Result JSON:
{format_execution_data(execution.data)}"""

    if attempt_count > 0:
        attempts = f"{attempt_count + 1} attempts ({attempt_count} auto-fix retries)"
    else:
        attempts = "1 attempt"

    recent_logs = _recent_logs(execution.logs) or "(no logs)"
    return f"""Tool execution failed after {attempts}.
ERROR: {execution.error}
HAS_DATA: false
STATUS: failed
RECENT_LOGS:
{recent_logs}"""
