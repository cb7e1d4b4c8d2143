from .cache import AnalyticsCache, InMemoryCache
from .client import AnalyticsClient
from .dates import DateRangeType, resolve_date_range
from .errors import AnalyticsError, ConfigurationError, StoreExecutionError
from .schema import (
    PropertyAccessor,
    PropertyStorage,
    SchemaConfig,
    UserIdentifier,
    load_schema_config,
)
from .store import BigQueryEventStore, EventStore
from .types import (
    AverageRetentionPoint,
    BreakdownProperty,
    DateRange,
    FilterGroup,
    FilterLogic,
    FilterOperator,
    FunnelBreakdown,
    FunnelStep,
    FunnelStepResult,
    Granularity,
    MetricSpec,
    MetricType,
    PathAnalysisResult,
    PathConfig,
    PathEdge,
    PathNode,
    PathSequence,
    PropertyFilter,
    RetentionCohort,
    RetentionConfig,
    RetentionPoint,
    RetentionResult,
    TimePeriodFunnel,
    TrendBreakdown,
    TrendCombination,
    TrendPoint,
    TrendSeries,
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
