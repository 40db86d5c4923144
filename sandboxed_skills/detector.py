"""
Suspicious-result detector

A script can run to completion and still mishandle the data its tools
returned: reading the wrong property leaves nulls in the result, and an
over-eager filter turns a large tool response into an empty list. Both are
worth an automatic reflection attempt, but only when the call history proves
real data was available. A tool that genuinely returned nothing is not a
script bug.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable

from .runtime import CallRecord

logger = logging.getLogger(__name__)

DEFAULT_IGNORED_FIELDS = ("timestamp", "fetchedAt", "updatedAt", "createdAt")

DEFAULT_IGNORED_ARRAY_FIELDS = (
    "metadata",
    "meta",
    "summary",
    "error",
    "errors",
    "warnings",
    "debug",
    "pagination",
)

# Fields most likely to hold the main payload of a tool response
PRIORITY_ARRAY_FIELDS = (
    "opportunities",
    "results",
    "items",
    "data",
    "markets",
    "positions",
    "trades",
    "bets",
    "picks",
    "tokens",
    "chains",
)


@dataclass
class DetectorConfig:
    """Detector policy; the ignored field lists are heuristics, tune them per deployment"""
    ignored_fields: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_IGNORED_FIELDS))
    filtered_to_empty_threshold: int = 10
    ignored_array_fields: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_IGNORED_ARRAY_FIELDS))
    detect_filtered_to_empty: bool = True

    @classmethod
    def from_env(cls) -> "DetectorConfig":
        config = cls()
        raw = os.environ.get("SKILL_DETECTOR_IGNORED_FIELDS")
        if raw is not None:
            config.ignored_fields = frozenset(f.strip() for f in raw.split(",") if f.strip())
        return config


@dataclass
class FilteredToEmpty:
    """A tool returned a sizeable array but the final result is empty"""
    field_name: str
    tool_data_count: int
    tool_name: str
    empty_fields: list[str] = field(default_factory=list)
    sample_data: list = field(default_factory=list)


@dataclass
class SuspicionReport:
    suspicious: bool
    null_paths: list[str] = field(default_factory=list)
    reason: str = ""
    filtered_to_empty: FilteredToEmpty | None = None

    def __bool__(self) -> bool:
        return self.suspicious


def has_non_empty_data(data: Any) -> bool:
    """
    True when data carries meaningful content.

    Strings count when not blank, numbers and booleans always count,
    containers count when any element does. A dict whose only key is
    "error" is an error envelope, not data.
    """
    if data is None:
        return False
    if isinstance(data, str):
        return len(data.strip()) > 0
    if isinstance(data, (bool, int, float)):
        return True
    if isinstance(data, (list, tuple)):
        return any(has_non_empty_data(item) for item in data)
    if isinstance(data, dict):
        if not data:
            return False
        if list(data.keys()) == ["error"]:
            return False
        return any(has_non_empty_data(value) for value in data.values())
    return False


def find_null_paths(data: Any, ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS) -> list[str]:
    """
    Dotted paths of None leaves in data.

    Only mappings are descended into; list elements are not inspected. A
    top-level None is reported with the empty path "".
    """
    ignored = set(ignored_fields)
    paths: list[str] = []

    def walk(obj: Any, path: str) -> None:
        if obj is None:
            paths.append(path)
            return
        if isinstance(obj, dict):
            for key, value in obj.items():
                if key in ignored:
                    continue
                walk(value, f"{path}.{key}" if path else str(key))

    walk(data, "")
    return paths


def find_tool_array_data(call_history: Iterable[CallRecord]) -> tuple[int, str, str] | None:
    """Locate the first non-empty array in any tool result: (count, tool_name, field_name)"""
    for call in call_history:
        result = call.result
        if not isinstance(result, dict):
            continue

        for field_name in PRIORITY_ARRAY_FIELDS:
            value = result.get(field_name)
            if isinstance(value, list) and value:
                return len(value), call.tool_name, field_name

        for key, value in result.items():
            if isinstance(value, list) and value and key not in PRIORITY_ARRAY_FIELDS:
                return len(value), call.tool_name, key
    return None


def detect_filtered_to_empty(
    data: Any,
    call_history: list[CallRecord],
    config: DetectorConfig | None = None,
) -> FilteredToEmpty | None:
    """Empty top-level arrays in data while a tool returned at least the threshold of items"""
    config = config or DetectorConfig()
    if not isinstance(data, dict) or not data or not call_history:
        return None

    ignored = {f.lower() for f in config.ignored_array_fields}
    empty_fields = [
        key for key, value in data.items()
        if isinstance(value, list) and not value and str(key).lower() not in ignored
    ]
    if not empty_fields:
        return None

    tool_data = find_tool_array_data(call_history)
    if tool_data is None or tool_data[0] < config.filtered_to_empty_threshold:
        return None

    count, tool_name, field_name = tool_data
    sample: list = []
    for call in call_history:
        if isinstance(call.result, dict) and isinstance(call.result.get(field_name), list):
            sample = call.result[field_name][:3]
            break

    return FilteredToEmpty(
        field_name=field_name,
        tool_data_count=count,
        tool_name=tool_name,
        empty_fields=empty_fields,
        sample_data=sample,
    )


def check(data: Any, call_history: list[CallRecord], config: DetectorConfig | None = None) -> SuspicionReport:
    """
    Decide whether a successful result looks like a script bug

    Args:
        data: value returned by the script's main()
        call_history: capability calls made while producing data
        config: detector policy

    Returns:
        SuspicionReport; null_paths lists exactly the offending dotted paths
    """
    config = config or DetectorConfig()

    if not call_history or not any(has_non_empty_data(call.result) for call in call_history):
        return SuspicionReport(suspicious=False)

    null_paths = find_null_paths(data, config.ignored_fields)
    if null_paths:
        return SuspicionReport(
            suspicious=True,
            null_paths=null_paths,
            reason=(
                f"Execution returned null values at: {', '.join(p or '(root)' for p in null_paths)} "
                "- but tool calls returned data. This suggests a data processing bug."
            ),
        )

    if config.detect_filtered_to_empty:
        filtered = detect_filtered_to_empty(data, call_history, config)
        if filtered is not None:
            logger.info(
                f"Detected filtered-to-empty pattern: {filtered.empty_fields} "
                f"vs {filtered.tool_data_count} {filtered.field_name} from {filtered.tool_name}"
            )
            return SuspicionReport(
                suspicious=True,
                reason=(
                    f'Tool "{filtered.tool_name}" returned {filtered.tool_data_count} {filtered.field_name}, '
                    f"but the final result has empty arrays ({', '.join(filtered.empty_fields)}). "
                    "The code's filter criteria may be too restrictive."
                ),
                filtered_to_empty=filtered,
            )

    return SuspicionReport(suspicious=False)
