"""Conversion of raw aggregates into typed results."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .segments import MAX_SEGMENTS
from .types import FunnelBreakdown, FunnelStep, FunnelStepResult, TrendBreakdown

__all__ = [
    "assemble_funnel_steps",
    "percentage",
    "rank_funnel_breakdowns",
    "rank_trend_breakdowns",
]


def percentage(part: float, whole: float) -> float:
    """``part / whole * 100``, or ``0`` when ``whole`` is not positive."""

    if whole <= 0:
        return 0.0
    return part / whole * 100


def assemble_funnel_steps(
    steps: Sequence[FunnelStep],
    metrics: Sequence[float],
    *,
    exhausted_after: int | None = None,
    segment: str | None = None,
) -> list[FunnelStepResult]:
    """Build step results with conversion and drop-off rates.

    ``metrics`` holds one value per step that was evaluated.  When
    ``exhausted_after`` is set (the 1-based step whose entity set came back
    empty), that step and every later one except step 1 are reported with
    metric ``0``, conversion ``0`` and drop-off ``100``.
    """

    results: list[FunnelStepResult] = []
    first = metrics[0] if metrics else 0.0

    for idx, step in enumerate(steps):
        number = idx + 1
        if exhausted_after is not None and number >= exhausted_after and number > 1:
            results.append(
                FunnelStepResult(number, step.name, 0.0, 0.0, 100.0, segment=segment)
            )
            continue

        value = float(metrics[idx])
        if idx == 0:
            conversion, drop_off = 100.0, 0.0
        else:
            previous = float(metrics[idx - 1])
            conversion = percentage(value, first)
            drop_off = percentage(previous - value, previous)
        results.append(
            FunnelStepResult(number, step.name, value, conversion, drop_off, segment=segment)
        )
    return results


def rank_funnel_breakdowns(breakdowns: Iterable[FunnelBreakdown]) -> list[FunnelBreakdown]:
    """Sort by step-1 metric descending (ties by name) and cap the list."""

    ranked = sorted(
        breakdowns,
        key=lambda b: (-(b.steps[0].metric_value if b.steps else 0.0), b.segment_name),
    )
    return ranked[:MAX_SEGMENTS]


def rank_trend_breakdowns(breakdowns: Iterable[TrendBreakdown]) -> list[TrendBreakdown]:
    """Sort by series total descending (ties by name) and cap the list."""

    return sorted(breakdowns, key=lambda b: (-b.total, b.segment_name))[:MAX_SEGMENTS]
