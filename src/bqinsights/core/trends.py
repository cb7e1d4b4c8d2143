"""Metric-over-time series for one or more event definitions."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

import pandas as pd

from .dates import bucket_expression
from .engine import BaseEngine
from .errors import ConfigurationError
from .metrics import CompiledMetric, compile_metric
from .query_helpers import (
    date_clauses,
    event_condition,
    from_clause,
    join_where_clauses,
    source_table,
)
from .results import rank_trend_breakdowns
from .segments import SegmentKey, build_segment_key
from .types import (
    BreakdownProperty,
    DateRange,
    FilterGroup,
    Granularity,
    MetricSpec,
    TrendBreakdown,
    TrendCombination,
    TrendPoint,
    TrendSeries,
    normalize_breakdown,
)

__all__ = ["TrendEngine", "normalize_combinations"]

logger = logging.getLogger(__name__)

_DATE_COLUMN = "date"
_SEGMENT_COLUMN = "segment"
_VALUE_COLUMN = "value"


def normalize_combinations(
    combinations: TrendCombination | Sequence[TrendCombination | Mapping[str, object]],
) -> tuple[TrendCombination, ...]:
    if isinstance(combinations, TrendCombination):
        combinations = [combinations]

    normalized: list[TrendCombination] = []
    for combination in combinations or ():
        if isinstance(combination, TrendCombination):
            normalized.append(combination)
            continue
        filters = combination.get("filters") or ()
        if not isinstance(filters, FilterGroup):
            filters = FilterGroup(filters, combination.get("logic", "AND"))
        normalized.append(
            TrendCombination(
                event=str(combination.get("event", "")),
                source=combination.get("source"),
                filters=filters,
                label=combination.get("label"),
            )
        )

    if not normalized:
        raise ConfigurationError("at least one event combination is required")
    return tuple(normalized)


def _granularity(granularity: Granularity | str) -> Granularity:
    try:
        return Granularity(granularity)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown granularity: {granularity!r}") from exc


def _numeric_values(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df[_VALUE_COLUMN] = pd.to_numeric(df[_VALUE_COLUMN], errors="coerce").fillna(0)
    df[_DATE_COLUMN] = df[_DATE_COLUMN].astype(str)
    return df


class TrendEngine(BaseEngine):
    """Buckets a metric by day, week or month, one query per combination."""

    def _trend_sql(
        self,
        combination: TrendCombination,
        date_range: DateRange,
        granularity: Granularity,
        compiled: CompiledMetric,
        key: SegmentKey | None,
    ) -> str:
        accessor = self.accessor
        table_id = source_table(accessor, combination.source)
        bucket = bucket_expression(granularity, accessor.date_expression())

        selects = [f"FORMAT_DATE('%Y-%m-%d', {bucket}) AS {_DATE_COLUMN}"]
        group_bys = [_DATE_COLUMN]
        if key is not None:
            selects.append(f"{key.expression} AS {_SEGMENT_COLUMN}")
            group_bys.append(_SEGMENT_COLUMN)
        selects.append(f"{compiled.sql} AS {_VALUE_COLUMN}")

        wheres = [
            event_condition(accessor, combination.event, combination.filters),
            *date_clauses(accessor, table_id, date_range),
            key.non_empty_predicate if key is not None else None,
        ]

        return f"""
SELECT {', '.join(selects)}
FROM {from_clause(table_id)}
WHERE {join_where_clauses(wheres)}
GROUP BY {', '.join(group_bys)}
ORDER BY {', '.join(group_bys)}
"""

    async def compute(
        self,
        combinations: TrendCombination | Sequence[TrendCombination | Mapping[str, object]],
        date_range: DateRange,
        *,
        granularity: Granularity | str = Granularity.DAILY,
        metric: MetricSpec | None = None,
    ) -> list[TrendSeries]:
        """Return one series per combination, in the order given."""

        combinations = normalize_combinations(combinations)
        granularity = _granularity(granularity)
        compiled = compile_metric(metric, self.accessor)

        async def _series(idx: int, combination: TrendCombination) -> TrendSeries:
            sql = self._trend_sql(combination, date_range, granularity, compiled, None)
            df = await self._fetch(sql, label=f"trend_{idx}")
            if df.empty:
                return TrendSeries(name=combination.name, points=[])
            df = _numeric_values(df).sort_values(_DATE_COLUMN)
            points = [
                TrendPoint(date=row.date, value=float(row.value))
                for row in df.itertuples(index=False)
            ]
            return TrendSeries(name=combination.name, points=points)

        return await self._gather(
            *(_series(idx, combination) for idx, combination in enumerate(combinations, start=1))
        )

    async def compute_breakdown(
        self,
        combinations: TrendCombination | Sequence[TrendCombination | Mapping[str, object]],
        date_range: DateRange,
        breakdown: str | Sequence[str | BreakdownProperty | Mapping[str, str]],
        *,
        granularity: Granularity | str = Granularity.DAILY,
        metric: MetricSpec | None = None,
    ) -> list[list[TrendBreakdown]]:
        """Return, per combination, its segments ranked by total (at most 20).

        Every segment's series covers the same dates; missing buckets are 0.
        """

        combinations = normalize_combinations(combinations)
        granularity = _granularity(granularity)
        compiled = compile_metric(metric, self.accessor)
        properties = normalize_breakdown(breakdown)
        if not properties:
            raise ConfigurationError("breakdown requires at least one property")
        key = build_segment_key(properties, self.accessor)

        async def _segments(idx: int, combination: TrendCombination) -> list[TrendBreakdown]:
            sql = self._trend_sql(combination, date_range, granularity, compiled, key)
            df = await self._fetch(sql, label=f"trend_breakdown_{idx}")
            if df.empty:
                return []
            df = _numeric_values(df.dropna(subset=[_SEGMENT_COLUMN]))
            if df.empty:
                return []
            df[_SEGMENT_COLUMN] = df[_SEGMENT_COLUMN].astype(str)
            pivot = df.pivot_table(
                values=_VALUE_COLUMN,
                index=_DATE_COLUMN,
                columns=_SEGMENT_COLUMN,
                aggfunc="sum",
                fill_value=0,
            ).sort_index()
            breakdowns = [
                TrendBreakdown(
                    segment_name=str(segment),
                    series=[
                        TrendPoint(date=str(day), value=float(value))
                        for day, value in pivot[segment].items()
                    ],
                )
                for segment in pivot.columns
            ]
            logger.debug("Trend %s produced %d segments", combination.name, len(breakdowns))
            return rank_trend_breakdowns(breakdowns)

        return await self._gather(
            *(
                _segments(idx, combination)
                for idx, combination in enumerate(combinations, start=1)
            )
        )
