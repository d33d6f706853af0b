"""Adaptive cycle limit.

Adjusts the per-job iteration budget to the observed backlog trend: a
backlog that shrank by more than half earns one extra cycle, a growing
backlog loses one. The result always stays within [1, 2 x base].
"""

from dataclasses import dataclass

# prev_issue_count value meaning "no previous observation"
UNKNOWN = -1


@dataclass
class AdaptiveCycleState:
    """Backlog size seen by the previous scheduling cycle."""

    prev_issue_count: int = UNKNOWN


def adapt(base_limit: int, current_issue_count: int, prev_issue_count: int) -> int:
    """Compute the adjusted cycle limit.

    Args:
        base_limit: Configured cycle limit
        current_issue_count: Backlog size now
        prev_issue_count: Backlog size in the previous cycle, negative if unknown

    Returns:
        Adjusted limit, clamped to [1, 2 * base_limit]
    """
    if prev_issue_count < 0:
        return base_limit

    adjusted = base_limit
    if current_issue_count * 2 < prev_issue_count:
        adjusted = base_limit + 1
    elif current_issue_count > prev_issue_count:
        adjusted = base_limit - 1

    return max(1, min(adjusted, 2 * base_limit))
