"""Detect a sustained downward trend in marker pass counts."""

from __future__ import annotations

from collections.abc import Sequence

from healing_pipeline.schemas import Iteration

DEFAULT_WINDOW = 4
DEFAULT_CONSECUTIVE = 3


def is_regressing(
    iterations: Sequence[Iteration],
    *,
    window: int = DEFAULT_WINDOW,
    consecutive: int = DEFAULT_CONSECUTIVE,
) -> bool:
    """Return True when healing is making things worse.

    Needs at least *window* iterations. The last ``consecutive + 1`` pass
    counts must be strictly decreasing, and the newest must be below the
    very first iteration's count. A single dip, or a plateau, is noise.
    """
    if len(iterations) < max(window, consecutive + 1, 2):
        return False

    counts = [iteration.passed_count for iteration in iterations]
    recent = counts[-(consecutive + 1):]
    strictly_decreasing = all(later < earlier for earlier, later in zip(recent, recent[1:]))
    return strictly_decreasing and counts[-1] < counts[0]


def pass_count_trend(iterations: Sequence[Iteration]) -> str:
    """Render pass counts as ``"5 -> 4 -> 3"`` for log lines."""
    return " -> ".join(str(iteration.passed_count) for iteration in iterations)
