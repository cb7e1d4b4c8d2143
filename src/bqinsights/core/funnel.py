"""Ordered multi-step conversion analysis.

Two strategies are used depending on where the steps live:

* **Windowed single-source.** When every step reads the same table, one query
  returns each candidate event tagged with a boolean column per step.  Each
  entity is then scanned in timestamp order to find how many steps it
  completed in sequence within the conversion window.
* **Sequential multi-source.** When steps read different tables, a running
  set of entities is narrowed step by step: each step's matching entities
  are fetched restricted to the current set.  Once the set is empty no
  further queries are issued.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import timedelta

import numpy as np
import pandas as pd

from .dates import generate_date_periods
from .engine import BaseEngine
from .errors import ConfigurationError
from .metrics import ENTITY_COLUMN, METRIC_VALUE_COLUMN, CompiledMetric, compile_metric
from .query_helpers import (
    date_clauses,
    entity_set_condition,
    entity_set_parameter,
    event_condition,
    from_clause,
    join_where_clauses,
    join_where_clauses_or,
    non_empty_entity_condition,
    source_table,
)
from .results import assemble_funnel_steps, rank_funnel_breakdowns
from .segments import MAX_SEGMENTS, SegmentKey, build_segment_key
from .types import (
    BreakdownProperty,
    DateRange,
    FilterGroup,
    FunnelBreakdown,
    FunnelStep,
    FunnelStepResult,
    Granularity,
    MetricSpec,
    TimePeriodFunnel,
    normalize_breakdown,
)

__all__ = [
    "DEFAULT_TIME_WINDOW",
    "FunnelEngine",
    "MAX_FUNNEL_STEPS",
    "MIN_FUNNEL_STEPS",
    "funnel_level",
    "normalize_steps",
]

logger = logging.getLogger(__name__)

DEFAULT_TIME_WINDOW = timedelta(days=7)
MIN_FUNNEL_STEPS = 2
MAX_FUNNEL_STEPS = 10

_TIMESTAMP_COLUMN = "event_micros"
_SEGMENT_COLUMN = "segment"
_LEVEL_COLUMN = "funnel_level"


def normalize_steps(steps: Sequence[FunnelStep | Mapping[str, object]]) -> tuple[FunnelStep, ...]:
    """Return ``steps`` as :class:`FunnelStep` instances, validating the count."""

    normalized: list[FunnelStep] = []
    for step in steps or ():
        if isinstance(step, FunnelStep):
            normalized.append(step)
            continue
        filters = step.get("filters") or ()
        if not isinstance(filters, FilterGroup):
            filters = FilterGroup(filters, step.get("logic", "AND"))
        normalized.append(
            FunnelStep(event=str(step.get("event", "")), source=step.get("source"), filters=filters)
        )

    if len(normalized) < MIN_FUNNEL_STEPS:
        raise ConfigurationError(f"a funnel needs at least {MIN_FUNNEL_STEPS} steps")
    if len(normalized) > MAX_FUNNEL_STEPS:
        raise ConfigurationError(f"a funnel supports at most {MAX_FUNNEL_STEPS} steps")
    return tuple(normalized)


def _window_micros(time_window: timedelta | float | None) -> int:
    if time_window is None:
        window = DEFAULT_TIME_WINDOW
    elif isinstance(time_window, timedelta):
        window = time_window
    else:
        window = timedelta(seconds=float(time_window))
    if window <= timedelta(0):
        raise ConfigurationError("time_window must be positive")
    return window // timedelta(microseconds=1)


def funnel_level(timestamps: np.ndarray, flags: np.ndarray, window: int) -> int:
    """Return how many steps one entity completed in order.

    ``timestamps`` must be sorted ascending; ``flags[i, k]`` tells whether
    event ``i`` matches step ``k``.  Step ``k`` only extends a chain that
    reached step ``k - 1`` at a strictly earlier timestamp and no more than
    ``window`` after the chain's first step.  A later first-step match
    restarts a chain, so the most recent start is always kept.
    """

    step_count = flags.shape[1]
    # chains[k] = (first step timestamp, last matched timestamp) for level k+1
    chains: list[tuple[int, int] | None] = [None] * step_count
    best = 0

    for ts, row in zip(timestamps, flags):
        ts = int(ts)
        for k in range(step_count - 1, -1, -1):
            if not row[k]:
                continue
            if k == 0:
                chains[0] = (ts, ts)
            else:
                previous = chains[k - 1]
                if previous is None:
                    continue
                chain_start, last_ts = previous
                if ts > last_ts and ts - chain_start <= window:
                    chains[k] = (chain_start, ts)
                else:
                    continue
            best = max(best, k + 1)
        if best == step_count:
            break
    return best


class FunnelEngine(BaseEngine):
    """Computes funnels, funnel breakdowns and per-period funnels."""

    def _is_single_source(self, steps: Sequence[FunnelStep]) -> bool:
        tables = {source_table(self.accessor, step.source) for step in steps}
        return len(tables) == 1

    async def compute(
        self,
        steps: Sequence[FunnelStep | Mapping[str, object]],
        date_range: DateRange,
        *,
        time_window: timedelta | float | None = None,
        metric: MetricSpec | None = None,
    ) -> list[FunnelStepResult]:
        """Return one result per step for the whole population."""

        steps = normalize_steps(steps)
        compiled = compile_metric(metric, self.accessor)
        window = _window_micros(time_window)

        if self._is_single_source(steps):
            logger.debug("Funnel over %d steps uses the windowed strategy", len(steps))
            per_segment = await self._windowed(steps, date_range, window, compiled, None)
            metrics = per_segment.get(None, [0.0] * len(steps))
            return assemble_funnel_steps(steps, metrics)

        logger.debug("Funnel over %d steps uses the sequential strategy", len(steps))
        metrics, exhausted_after, _ = await self._sequential(steps, date_range, compiled)
        return assemble_funnel_steps(steps, metrics, exhausted_after=exhausted_after)

    async def compute_breakdown(
        self,
        steps: Sequence[FunnelStep | Mapping[str, object]],
        date_range: DateRange,
        breakdown: str | Sequence[str | BreakdownProperty | Mapping[str, str]],
        *,
        time_window: timedelta | float | None = None,
        metric: MetricSpec | None = None,
    ) -> list[FunnelBreakdown]:
        """Return per-segment funnels, largest step 1 first, at most 20."""

        steps = normalize_steps(steps)
        compiled = compile_metric(metric, self.accessor)
        window = _window_micros(time_window)
        properties = normalize_breakdown(breakdown)
        if not properties:
            raise ConfigurationError("breakdown requires at least one property")
        key = build_segment_key(properties, self.accessor)

        if self._is_single_source(steps):
            per_segment = await self._windowed(steps, date_range, window, compiled, key)
            breakdowns = [
                FunnelBreakdown(
                    segment_name=segment,
                    steps=assemble_funnel_steps(steps, metrics, segment=segment),
                )
                for segment, metrics in per_segment.items()
                if segment is not None
            ]
            return rank_funnel_breakdowns(breakdowns)

        segments = await self._candidate_segments(steps[0], date_range, compiled, key)
        logger.debug("Funnel breakdown evaluating %d segments", len(segments))

        async def _segment_funnel(segment: str) -> FunnelBreakdown | None:
            metrics, exhausted_after, first_set_size = await self._sequential(
                steps, date_range, compiled, extra_condition=key.match_predicate(segment)
            )
            if first_set_size == 0:
                return None
            return FunnelBreakdown(
                segment_name=segment,
                steps=assemble_funnel_steps(
                    steps, metrics, exhausted_after=exhausted_after, segment=segment
                ),
            )

        results = await self._gather(*(_segment_funnel(segment) for segment in segments))
        return rank_funnel_breakdowns(result for result in results if result is not None)

    async def compute_by_period(
        self,
        steps: Sequence[FunnelStep | Mapping[str, object]],
        date_range: DateRange,
        granularity: Granularity | str,
        *,
        time_window: timedelta | float | None = None,
        metric: MetricSpec | None = None,
    ) -> list[TimePeriodFunnel]:
        """Run one funnel per daily, weekly or monthly period of ``date_range``."""

        steps = normalize_steps(steps)
        compile_metric(metric, self.accessor)
        _window_micros(time_window)
        try:
            periods = generate_date_periods(date_range, granularity)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown granularity: {granularity!r}") from exc

        results = await self._gather(
            *(
                self.compute(
                    steps, period.date_range, time_window=time_window, metric=metric
                )
                for period in periods
            )
        )
        return [
            TimePeriodFunnel(
                period=period.period,
                period_label=period.label,
                start=period.start,
                end=period.end,
                steps=period_steps,
            )
            for period, period_steps in zip(periods, results)
        ]

    # ------------------------------------------------------------------
    # Windowed single-source strategy

    def _windowed_sql(
        self,
        steps: Sequence[FunnelStep],
        date_range: DateRange,
        compiled: CompiledMetric,
        key: SegmentKey | None,
    ) -> str:
        accessor = self.accessor
        table_id = source_table(accessor, steps[0].source)
        conditions = [event_condition(accessor, step.event, step.filters) for step in steps]

        selects = [
            f"{accessor.entity_expression()} AS {ENTITY_COLUMN}",
            f"{accessor.timestamp_micros_expression()} AS {_TIMESTAMP_COLUMN}",
        ]
        if key is not None:
            selects.append(f"{key.expression} AS {_SEGMENT_COLUMN}")
        if compiled.value_expression is not None:
            selects.append(f"{compiled.value_expression} AS {METRIC_VALUE_COLUMN}")
        selects.extend(
            f"IFNULL({condition}, FALSE) AS step_{idx}"
            for idx, condition in enumerate(conditions, start=1)
        )

        wheres = [
            *date_clauses(accessor, table_id, date_range),
            non_empty_entity_condition(accessor),
            key.non_empty_predicate if key is not None else None,
            join_where_clauses_or(conditions),
        ]

        return f"""
SELECT {', '.join(selects)}
FROM {from_clause(table_id)}
WHERE {join_where_clauses(wheres)}
"""

    async def _windowed(
        self,
        steps: Sequence[FunnelStep],
        date_range: DateRange,
        window: int,
        compiled: CompiledMetric,
        key: SegmentKey | None,
    ) -> dict[str | None, list[float]]:
        """Return step metrics keyed by segment (``None`` without breakdown)."""

        sql = self._windowed_sql(steps, date_range, compiled, key)
        df = await self._fetch(sql, label="funnel_windowed")
        return _windowed_metrics(df, len(steps), window, compiled, segmented=key is not None)

    # ------------------------------------------------------------------
    # Sequential multi-source strategy

    def _step_wheres(
        self,
        step: FunnelStep,
        date_range: DateRange,
        *,
        restricted: bool,
        extra_condition: str | None,
    ) -> str:
        accessor = self.accessor
        table_id = source_table(accessor, step.source)
        return join_where_clauses(
            [
                *date_clauses(accessor, table_id, date_range),
                non_empty_entity_condition(accessor),
                event_condition(accessor, step.event, step.filters),
                extra_condition,
                entity_set_condition(accessor) if restricted else None,
            ]
        )

    async def _matching_entities(
        self,
        step: FunnelStep,
        number: int,
        date_range: DateRange,
        within: set[str] | None,
        extra_condition: str | None,
    ) -> set[str]:
        table_id = source_table(self.accessor, step.source)
        wheres = self._step_wheres(
            step, date_range, restricted=within is not None, extra_condition=extra_condition
        )
        sql = f"""
SELECT DISTINCT {self.accessor.entity_expression()} AS {ENTITY_COLUMN}
FROM {from_clause(table_id)}
WHERE {wheres}
"""
        parameters = [entity_set_parameter(within)] if within is not None else []
        df = await self._fetch(sql, label=f"funnel_entities_step_{number}", parameters=parameters)
        entities = set() if df.empty else set(df[ENTITY_COLUMN].dropna().astype(str))
        return entities if within is None else entities & within

    async def _step_metric(
        self,
        step: FunnelStep,
        number: int,
        date_range: DateRange,
        compiled: CompiledMetric,
        entities: set[str] | None,
        extra_condition: str | None,
    ) -> float:
        table_id = source_table(self.accessor, step.source)
        wheres = self._step_wheres(
            step, date_range, restricted=entities is not None, extra_condition=extra_condition
        )
        sql = f"""
SELECT {compiled.sql} AS value
FROM {from_clause(table_id)}
WHERE {wheres}
"""
        parameters = [entity_set_parameter(entities)] if entities is not None else []
        df = await self._fetch(sql, label=f"funnel_metric_step_{number}", parameters=parameters)
        return _scalar(df)

    async def _sequential(
        self,
        steps: Sequence[FunnelStep],
        date_range: DateRange,
        compiled: CompiledMetric,
        *,
        extra_condition: str | None = None,
    ) -> tuple[list[float], int | None, int]:
        """Return step metrics, the step after which the set ran empty, and |step 1|.

        The metric of step ``k`` and the entity lookup of step ``k + 1`` run
        concurrently since both only depend on the set after step ``k``.
        """

        current = await self._matching_entities(steps[0], 1, date_range, None, extra_condition)
        first_set_size = len(current)
        metrics: list[float] = []

        for idx, step in enumerate(steps):
            number = idx + 1
            if not current:
                logger.debug("Funnel entity set is empty at step %d, skipping the rest", number)
                metrics.append(0.0)
                return metrics, number, first_set_size

            # step 1's metric covers the same rows without shipping the set
            within = None if idx == 0 else current
            metric_query = self._step_metric(
                step, number, date_range, compiled, within, extra_condition
            )
            if idx == len(steps) - 1:
                metrics.append(await metric_query)
                break

            value, following = await self._gather(
                metric_query,
                self._matching_entities(
                    steps[idx + 1], number + 1, date_range, current, extra_condition
                ),
            )
            metrics.append(value)
            current = current & following

        return metrics, None, first_set_size

    async def _candidate_segments(
        self,
        first_step: FunnelStep,
        date_range: DateRange,
        compiled: CompiledMetric,
        key: SegmentKey,
    ) -> list[str]:
        """Top segments of step 1 by metric; each is then evaluated on its own."""

        accessor = self.accessor
        table_id = source_table(accessor, first_step.source)
        wheres = join_where_clauses(
            [
                *date_clauses(accessor, table_id, date_range),
                non_empty_entity_condition(accessor),
                key.non_empty_predicate,
                event_condition(accessor, first_step.event, first_step.filters),
            ]
        )
        sql = f"""
SELECT {key.expression} AS {_SEGMENT_COLUMN}, {compiled.sql} AS value
FROM {from_clause(table_id)}
WHERE {wheres}
GROUP BY {_SEGMENT_COLUMN}
ORDER BY value DESC, {_SEGMENT_COLUMN}
LIMIT {MAX_SEGMENTS}
"""
        df = await self._fetch(sql, label="funnel_segments")
        if df.empty:
            return []
        return [str(segment) for segment in df[_SEGMENT_COLUMN].dropna()]


def _scalar(df: pd.DataFrame) -> float:
    if df.empty:
        return 0.0
    value = pd.to_numeric(df.iloc[0, 0], errors="coerce")
    return 0.0 if pd.isna(value) else float(value)


def _windowed_metrics(
    df: pd.DataFrame,
    step_count: int,
    window: int,
    compiled: CompiledMetric,
    *,
    segmented: bool,
) -> dict[str | None, list[float]]:
    """Scan each entity's events and compute the metric of every step.

    Rows are ordered by timestamp with a stable sort so events sharing a
    timestamp keep the order the store returned them in.  Since a step must
    happen strictly after the previous one, such events never chain.
    """

    if df.empty:
        return {}

    step_columns = [f"step_{idx}" for idx in range(1, step_count + 1)]
    df = df.copy()
    if segmented:
        df = df.dropna(subset=[_SEGMENT_COLUMN])
        df[_SEGMENT_COLUMN] = df[_SEGMENT_COLUMN].astype(str)
    for column in step_columns:
        df[column] = df[column].fillna(False).astype(bool)
    df[_TIMESTAMP_COLUMN] = pd.to_numeric(df[_TIMESTAMP_COLUMN]).astype("int64")
    df[ENTITY_COLUMN] = df[ENTITY_COLUMN].astype(str)

    group_keys = [ENTITY_COLUMN, _SEGMENT_COLUMN] if segmented else [ENTITY_COLUMN]
    df = df.sort_values([*group_keys, _TIMESTAMP_COLUMN], kind="mergesort")

    levels: dict[tuple, int] = {}
    for key, group in df.groupby(group_keys, sort=False):
        levels[key if isinstance(key, tuple) else (key,)] = funnel_level(
            group[_TIMESTAMP_COLUMN].to_numpy(), group[step_columns].to_numpy(), window
        )
    df[_LEVEL_COLUMN] = [levels[key] for key in zip(*(df[column] for column in group_keys))]

    results: dict[str | None, list[float]] = {}
    partitions = df.groupby(_SEGMENT_COLUMN, sort=False) if segmented else [(None, df)]
    for segment, frame in partitions:
        if not (frame[_LEVEL_COLUMN] >= 1).any():
            continue
        results[segment] = [
            compiled.aggregate(frame[frame[column] & (frame[_LEVEL_COLUMN] >= idx)])
            for idx, column in enumerate(step_columns, start=1)
        ]
    return results
