"""Public package API."""

from importlib import metadata

from .core import (
    AnalyticsCache,
    AnalyticsClient,
    AnalyticsError,
    AverageRetentionPoint,
    BigQueryEventStore,
    BreakdownProperty,
    ConfigurationError,
    DateRange,
    DateRangeType,
    EventStore,
    FilterGroup,
    FilterLogic,
    FilterOperator,
    FunnelBreakdown,
    FunnelStep,
    FunnelStepResult,
    Granularity,
    InMemoryCache,
    MetricSpec,
    MetricType,
    PathAnalysisResult,
    PathConfig,
    PathEdge,
    PathNode,
    PathSequence,
    PropertyAccessor,
    PropertyFilter,
    PropertyStorage,
    RetentionCohort,
    RetentionConfig,
    RetentionPoint,
    RetentionResult,
    SchemaConfig,
    StoreExecutionError,
    TimePeriodFunnel,
    TrendBreakdown,
    TrendCombination,
    TrendPoint,
    TrendSeries,
    UserIdentifier,
    load_schema_config,
    resolve_date_range,
)

__all__ = [
    "AnalyticsCache",
    "AnalyticsClient",
    "AnalyticsError",
    "AverageRetentionPoint",
    "BigQueryEventStore",
    "BreakdownProperty",
    "ConfigurationError",
    "DateRange",
    "DateRangeType",
    "EventStore",
    "FilterGroup",
    "FilterLogic",
    "FilterOperator",
    "FunnelBreakdown",
    "FunnelStep",
    "FunnelStepResult",
    "Granularity",
    "InMemoryCache",
    "MetricSpec",
    "MetricType",
    "PathAnalysisResult",
    "PathConfig",
    "PathEdge",
    "PathNode",
    "PathSequence",
    "PropertyAccessor",
    "PropertyFilter",
    "PropertyStorage",
    "RetentionCohort",
    "RetentionConfig",
    "RetentionPoint",
    "RetentionResult",
    "SchemaConfig",
    "StoreExecutionError",
    "TimePeriodFunnel",
    "TrendBreakdown",
    "TrendCombination",
    "TrendPoint",
    "TrendSeries",
    "UserIdentifier",
    "load_schema_config",
    "resolve_date_range",
]

try:
    __version__ = metadata.version("bqinsights")
except (
    metadata.PackageNotFoundError
):  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"
