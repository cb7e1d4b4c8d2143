"""Primary client composing the analytics engines."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import date, timedelta
from typing import TypeVar

from google.cloud import bigquery

from .cache import AnalyticsCache, make_cache_key
from .dates import DateRangeType, resolve_date_range
from .discovery import DiscoveryEngine
from .funnel import FunnelEngine, normalize_steps
from .paths import PathEngine
from .retention import RetentionEngine
from .schema import PropertyAccessor, SchemaConfig
from .store import BigQueryEventStore, EventStore
from .tasks import run_optional
from .trends import TrendEngine, normalize_combinations
from .types import (
    AverageRetentionPoint,
    BreakdownProperty,
    DateRange,
    FunnelBreakdown,
    FunnelStep,
    FunnelStepResult,
    Granularity,
    MetricSpec,
    PathAnalysisResult,
    PathConfig,
    RetentionConfig,
    RetentionResult,
    TimePeriodFunnel,
    TrendBreakdown,
    TrendCombination,
    TrendSeries,
    normalize_breakdown,
)

__all__ = ["AnalyticsClient"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

StepsArg = Sequence[FunnelStep | Mapping[str, object]]
CombinationsArg = TrendCombination | Sequence[TrendCombination | Mapping[str, object]]
BreakdownArg = str | Sequence[str | BreakdownProperty | Mapping[str, str]]
DateRangeArg = DateRange | DateRangeType | str


def _date_range(value: DateRangeArg) -> DateRange:
    if isinstance(value, DateRange):
        return value
    return resolve_date_range(value)


class AnalyticsClient:
    """Product analytics (funnels, trends, retention, paths) over a BigQuery event table.

    ``store`` defaults to a :class:`BigQueryEventStore` over ``client`` (or a
    new :class:`google.cloud.bigquery.Client`).  When ``cache`` is given,
    results are memoized by request until :meth:`invalidate_cache` is called.
    Date ranges may be given as :class:`DateRange` or as a relative range name
    such as ``"last_30_days"``.
    """

    def __init__(
        self,
        schema: SchemaConfig,
        *,
        store: EventStore | None = None,
        cache: AnalyticsCache | None = None,
        client: bigquery.Client | None = None,
        max_concurrency: int | None = 8,
    ) -> None:
        self.schema = schema
        self.store = store or BigQueryEventStore(client)
        self.cache = cache

        accessor = PropertyAccessor(schema)
        options = {"max_concurrency": max_concurrency}
        self._funnels = FunnelEngine(accessor, self.store, **options)
        self._trends = TrendEngine(accessor, self.store, **options)
        self._retention = RetentionEngine(accessor, self.store, **options)
        self._paths = PathEngine(accessor, self.store, **options)
        self._discovery = DiscoveryEngine(accessor, self.store, **options)

    async def _cached(
        self, operation: str, request: tuple[object, ...], compute: Callable[[], Awaitable[T]]
    ) -> T:
        if self.cache is None:
            return await compute()

        key = make_cache_key(operation, self.schema, *request)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", operation)
            return cached
        result = await compute()
        self.cache.set(key, result)
        return result

    def invalidate_cache(self) -> None:
        if self.cache is not None:
            self.cache.invalidate_all()

    # ------------------------------------------------------------------
    # Funnels

    async def compute_funnel(
        self,
        steps: StepsArg,
        date_range: DateRangeArg,
        *,
        time_window: timedelta | float | None = None,
        metric: MetricSpec | None = None,
    ) -> list[FunnelStepResult]:
        steps = normalize_steps(steps)
        date_range = _date_range(date_range)
        return await self._cached(
            "funnel",
            (steps, date_range, time_window, metric),
            lambda: self._funnels.compute(
                steps, date_range, time_window=time_window, metric=metric
            ),
        )

    async def compute_funnel_breakdown(
        self,
        steps: StepsArg,
        date_range: DateRangeArg,
        breakdown: BreakdownArg,
        *,
        time_window: timedelta | float | None = None,
        metric: MetricSpec | None = None,
    ) -> list[FunnelBreakdown]:
        steps = normalize_steps(steps)
        date_range = _date_range(date_range)
        breakdown = normalize_breakdown(breakdown)
        return await self._cached(
            "funnel_breakdown",
            (steps, date_range, breakdown, time_window, metric),
            lambda: self._funnels.compute_breakdown(
                steps, date_range, breakdown, time_window=time_window, metric=metric
            ),
        )

    async def compute_funnel_by_period(
        self,
        steps: StepsArg,
        date_range: DateRangeArg,
        granularity: Granularity | str = Granularity.DAILY,
        *,
        time_window: timedelta | float | None = None,
        metric: MetricSpec | None = None,
    ) -> list[TimePeriodFunnel]:
        steps = normalize_steps(steps)
        date_range = _date_range(date_range)
        return await self._cached(
            "funnel_by_period",
            (steps, date_range, granularity, time_window, metric),
            lambda: self._funnels.compute_by_period(
                steps, date_range, granularity, time_window=time_window, metric=metric
            ),
        )

    # ------------------------------------------------------------------
    # Trends

    async def compute_trend(
        self,
        combinations: CombinationsArg,
        date_range: DateRangeArg,
        *,
        granularity: Granularity | str = Granularity.DAILY,
        metric: MetricSpec | None = None,
    ) -> list[TrendSeries]:
        combinations = normalize_combinations(combinations)
        date_range = _date_range(date_range)
        return await self._cached(
            "trend",
            (combinations, date_range, granularity, metric),
            lambda: self._trends.compute(
                combinations, date_range, granularity=granularity, metric=metric
            ),
        )

    async def compute_trend_breakdown(
        self,
        combinations: CombinationsArg,
        date_range: DateRangeArg,
        breakdown: BreakdownArg,
        *,
        granularity: Granularity | str = Granularity.DAILY,
        metric: MetricSpec | None = None,
    ) -> list[list[TrendBreakdown]]:
        combinations = normalize_combinations(combinations)
        date_range = _date_range(date_range)
        breakdown = normalize_breakdown(breakdown)
        return await self._cached(
            "trend_breakdown",
            (combinations, date_range, breakdown, granularity, metric),
            lambda: self._trends.compute_breakdown(
                combinations, date_range, breakdown, granularity=granularity, metric=metric
            ),
        )

    # ------------------------------------------------------------------
    # Retention and paths

    async def compute_retention(self, config: RetentionConfig) -> RetentionResult:
        return await self._cached(
            "retention", (config,), lambda: self._retention.compute(config)
        )

    async def compute_average_retention(
        self, config: RetentionConfig
    ) -> list[AverageRetentionPoint]:
        return await self._cached(
            "average_retention", (config,), lambda: self._retention.compute_average(config)
        )

    async def compute_paths(self, config: PathConfig) -> PathAnalysisResult:
        return await self._cached("paths", (config,), lambda: self._paths.compute(config))

    # ------------------------------------------------------------------
    # Discovery

    async def get_event_names(self, table: str | None = None) -> list[str]:
        today = date.today()
        return await self._cached(
            "event_names",
            (table, today),
            lambda: self._discovery.event_names(table, today=today),
        )

    async def get_property_values(
        self, prop: str, table: str | None = None, *, limit: int = 20
    ) -> list[str]:
        """Suggested values for ``prop``; failures degrade to an empty list."""

        today = date.today()
        return await run_optional(
            self._cached(
                "property_values",
                (prop, table, limit, today),
                lambda: self._discovery.property_values(prop, table, limit=limit, today=today),
            ),
            default=[],
            what=f"property values lookup for '{prop}'",
        )
