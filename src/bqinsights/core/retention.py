"""Cohort retention curves."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, timedelta

import pandas as pd

from .engine import BaseEngine
from .query_helpers import (
    date_clauses,
    event_name_condition,
    from_clause,
    join_where_clauses,
    non_empty_entity_condition,
    segment_filter_condition,
)
from .results import percentage
from .sql import format_literal
from .types import (
    AverageRetentionPoint,
    RetentionCohort,
    RetentionConfig,
    RetentionPoint,
    RetentionResult,
)

__all__ = ["RetentionEngine", "assemble_retention", "average_retention"]

logger = logging.getLogger(__name__)


class RetentionEngine(BaseEngine):
    """Groups entities by the first day they activated and tracks their return."""

    def _retention_sql(self, config: RetentionConfig) -> str:
        accessor = self.accessor
        table_id = accessor.schema.table_id
        periods = ", ".join(str(period) for period in config.retention_periods)

        wheres = [
            *date_clauses(accessor, table_id, config.date_range),
            non_empty_entity_condition(accessor),
            event_name_condition(accessor, [config.activation_event, config.return_event]),
            segment_filter_condition(accessor, config.segment_property, config.segment_value),
        ]

        return f"""
WITH
base_events AS (
  SELECT
    {accessor.entity_expression()} AS entity_id,
    {accessor.event_name_expression()} AS event_name,
    {accessor.date_expression()} AS event_date
  FROM {from_clause(table_id)}
  WHERE {join_where_clauses(wheres)}
),
cohort_entities AS (
  SELECT entity_id, MIN(event_date) AS cohort_date
  FROM base_events
  WHERE event_name = {format_literal(config.activation_event)}
  GROUP BY entity_id
),
cohort_sizes AS (
  SELECT cohort_date, COUNT(DISTINCT entity_id) AS cohort_size
  FROM cohort_entities
  GROUP BY cohort_date
),
retention_events AS (
  SELECT
    c.cohort_date,
    c.entity_id,
    DATE_DIFF(e.event_date, c.cohort_date, DAY) AS days_since_cohort
  FROM cohort_entities c
  JOIN base_events e
    ON e.entity_id = c.entity_id
   AND e.event_name = {format_literal(config.return_event)}
   AND e.event_date >= c.cohort_date
),
retained AS (
  SELECT cohort_date, days_since_cohort AS day, COUNT(DISTINCT entity_id) AS retained
  FROM retention_events
  WHERE days_since_cohort IN ({periods})
  GROUP BY cohort_date, day
)
SELECT
  FORMAT_DATE('%Y-%m-%d', s.cohort_date) AS cohort_date,
  s.cohort_size,
  r.day,
  IFNULL(r.retained, 0) AS retained
FROM cohort_sizes s
LEFT JOIN retained r ON r.cohort_date = s.cohort_date
ORDER BY cohort_date, day
"""

    async def compute(self, config: RetentionConfig) -> RetentionResult:
        """Return one cohort per activation date, in date order."""

        df = await self._fetch(self._retention_sql(config), label="retention")
        return assemble_retention(df, config.retention_periods, config.date_range.end)

    async def compute_average(self, config: RetentionConfig) -> list[AverageRetentionPoint]:
        return average_retention(await self.compute(config))


def assemble_retention(
    df: pd.DataFrame, periods: Sequence[int], range_end: date
) -> RetentionResult:
    """Build cohorts from ``cohort_date, cohort_size, day, retained`` rows.

    A period is reported for a cohort once ``cohort_date + period`` falls on
    or before ``range_end``; periods nobody returned in are reported as 0.
    """

    if df.empty:
        return RetentionResult(cohorts=[], total_entities=0)

    cohorts: list[RetentionCohort] = []
    for cohort_date, frame in df.groupby("cohort_date", sort=True):
        size = int(frame["cohort_size"].iloc[0])
        if size <= 0:
            continue
        observed = {
            int(row.day): int(row.retained)
            for row in frame.dropna(subset=["day"]).itertuples(index=False)
        }
        start = date.fromisoformat(str(cohort_date))
        points = [
            RetentionPoint(
                day=period,
                retained=observed.get(period, 0),
                retention_rate=percentage(observed.get(period, 0), size),
            )
            for period in periods
            if start + timedelta(days=period) <= range_end
        ]
        cohorts.append(RetentionCohort(cohort_date=str(cohort_date), cohort_size=size, points=points))

    total = sum(cohort.cohort_size for cohort in cohorts)
    logger.debug("Retention produced %d cohorts covering %d entities", len(cohorts), total)
    return RetentionResult(cohorts=cohorts, total_entities=total)


def average_retention(result: RetentionResult) -> list[AverageRetentionPoint]:
    """Collapse cohorts into one curve weighted by cohort size.

    Each day only counts the cohorts that report it.
    """

    totals: dict[int, list[int]] = {}
    for cohort in result.cohorts:
        for point in cohort.points:
            retained, size = totals.setdefault(point.day, [0, 0])
            totals[point.day] = [retained + point.retained, size + cohort.cohort_size]

    return [
        AverageRetentionPoint(
            day=day,
            retained=retained,
            total_cohort_size=size,
            retention_rate=percentage(retained, size),
        )
        for day, (retained, size) in sorted(totals.items())
    ]
