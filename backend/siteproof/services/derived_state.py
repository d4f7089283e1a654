"""
Derived-State Calculator.
Completion percentage and overall status of an ITP inspection, computed from
its partial result set. Used for local display and for the payload sent to the server.
"""
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

RESULT_TOKENS = frozenset({"pass", "fail", "na"})

COMPLETED = "completed"
IN_PROGRESS = "in_progress"
PENDING = "pending"


@dataclass(frozen=True)
class CompletionMetrics:
    total_items: int
    completed_items: int
    completion_percentage: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def completion_metrics(results: Optional[Mapping[str, Any]]) -> CompletionMetrics:
    """
    Count items against the entries present in the result set, not the template's item count.

    Every entry of a section counts toward the total, placeholders included;
    sections may be objects keyed by item or lists of items. Scalar top-level
    values (free-text notes) are not sections. An item is complete only when
    its ``result`` is pass, fail or na.
    """
    total = 0
    completed = 0
    for section in (results or {}).values():
        if isinstance(section, Mapping):
            records = section.values()
        elif isinstance(section, (list, tuple)):
            records = section
        else:
            continue
        for record in records:
            total += 1
            if isinstance(record, Mapping) and record.get("result") in RESULT_TOKENS:
                completed += 1

    percentage = _round_half_up(100 * completed / total) if total else 0
    return CompletionMetrics(total_items=total, completed_items=completed, completion_percentage=percentage)


def calculate_completion(results: Optional[Mapping[str, Any]]) -> int:
    return completion_metrics(results).completion_percentage


def derive_status(is_submitting: bool, completion: int, previous_status: Optional[str] = None) -> str:
    # An explicit submit is always honoured, even below 100%
    if is_submitting:
        return COMPLETED
    if completion > 0:
        return IN_PROGRESS
    return previous_status or PENDING


def summarise_results(
    results: Optional[Mapping[str, Any]],
    is_submitting: bool = False,
    previous_status: Optional[str] = None,
) -> dict:
    metrics = completion_metrics(results)
    return {
        "total_items": metrics.total_items,
        "completed_items": metrics.completed_items,
        "completion_percentage": metrics.completion_percentage,
        "status": derive_status(is_submitting, metrics.completion_percentage, previous_status),
    }
