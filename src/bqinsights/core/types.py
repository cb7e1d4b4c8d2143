"""Public data structures used by the analytics engines."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import NotRequired, TypedDict

from .errors import ConfigurationError

__all__ = [
    "AverageRetentionPoint",
    "BreakdownProperty",
    "DateRange",
    "FilterGroup",
    "FilterLogic",
    "FilterOperator",
    "FunnelBreakdown",
    "FunnelStep",
    "FunnelStepResult",
    "Granularity",
    "MAX_BREAKDOWN_PROPERTIES",
    "MetricSpec",
    "MetricType",
    "PathAnalysisResult",
    "PathConfig",
    "PathEdge",
    "PathNode",
    "PathSequence",
    "PropertyFilter",
    "PropertyFilterDict",
    "RetentionCohort",
    "RetentionConfig",
    "RetentionPoint",
    "RetentionResult",
    "TimePeriodFunnel",
    "TrendBreakdown",
    "TrendCombination",
    "TrendPoint",
    "TrendSeries",
    "normalize_breakdown",
    "normalize_filters",
]

MAX_BREAKDOWN_PROPERTIES = 3


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    BETWEEN = "between"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class FilterLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class MetricType(str, Enum):
    TOTAL = "total"
    UNIQUE_ENTITIES = "unique_entities"
    COUNT_DISTINCT = "count_distinct"
    SUM = "sum"
    AVERAGE = "average"
    MIN = "min"
    MAX = "max"


class Granularity(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class PropertyFilterDict(TypedDict):
    """Mapping form of :class:`PropertyFilter` accepted at the API boundary."""

    property: str
    operator: str
    value: NotRequired[str]
    value2: NotRequired[str | None]


@dataclass(frozen=True)
class PropertyFilter:
    """A single predicate on an event property."""

    property: str
    operator: FilterOperator
    value: str = ""
    value2: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "operator", FilterOperator(self.operator))
        except ValueError as exc:
            raise ConfigurationError(f"Unknown filter operator: {self.operator!r}") from exc
        object.__setattr__(self, "value", "" if self.value is None else str(self.value))

    def describe(self) -> str:
        return f'{self.property} {self.operator.value} "{self.value}"'


@dataclass(frozen=True)
class FilterGroup:
    """Filters combined with a single ``AND``/``OR`` logic."""

    filters: tuple[PropertyFilter, ...] = ()
    logic: FilterLogic = FilterLogic.AND

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", normalize_filters(self.filters))
        logic = self.logic
        if not isinstance(logic, FilterLogic):
            logic = str(logic).upper()
        try:
            object.__setattr__(self, "logic", FilterLogic(logic))
        except ValueError as exc:
            raise ConfigurationError(f"Unknown filter logic: {self.logic!r}") from exc


def normalize_filters(
    filters: Sequence[PropertyFilter | PropertyFilterDict] | None,
) -> tuple[PropertyFilter, ...]:
    """Return ``filters`` as a tuple of :class:`PropertyFilter`."""

    normalized: list[PropertyFilter] = []
    for filter_ in filters or ():
        if isinstance(filter_, PropertyFilter):
            normalized.append(filter_)
        else:
            normalized.append(
                PropertyFilter(
                    property=filter_["property"],
                    operator=filter_["operator"],
                    value=filter_.get("value", ""),
                    value2=filter_.get("value2"),
                )
            )
    return tuple(normalized)


@dataclass(frozen=True)
class MetricSpec:
    """What to measure: a row count, an entity count or a property aggregate."""

    type: MetricType = MetricType.TOTAL
    property: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "type", MetricType(self.type))
        except ValueError as exc:
            raise ConfigurationError(f"Unknown metric type: {self.type!r}") from exc


@dataclass(frozen=True)
class FunnelStep:
    """Configuration describing a single step in a funnel."""

    event: str
    source: str | None = None
    filters: FilterGroup = field(default_factory=FilterGroup)

    def __post_init__(self) -> None:
        if not self.event or not self.event.strip():
            raise ConfigurationError("funnel step event must not be empty")
        if not isinstance(self.filters, FilterGroup):
            object.__setattr__(self, "filters", FilterGroup(normalize_filters(self.filters)))

    @property
    def name(self) -> str:
        """Human readable name, e.g. ``purchase [plan equals "pro"]``."""

        if not self.filters.filters:
            return self.event
        described = ", ".join(f.describe() for f in self.filters.filters)
        return f"{self.event} [{described}]"


@dataclass(frozen=True)
class BreakdownProperty:
    property: str
    granularity: Granularity | None = None

    def __post_init__(self) -> None:
        if self.granularity is not None:
            try:
                object.__setattr__(self, "granularity", Granularity(self.granularity))
            except ValueError as exc:
                raise ConfigurationError(f"Unknown granularity: {self.granularity!r}") from exc


def normalize_breakdown(
    breakdown: str | Sequence[str | BreakdownProperty | Mapping[str, str]] | None,
) -> tuple[BreakdownProperty, ...]:
    """Normalize every accepted breakdown shape into ``BreakdownProperty`` items.

    Blank property names are dropped.  More than three properties is a
    configuration error.
    """

    if breakdown is None:
        return ()
    items = [breakdown] if isinstance(breakdown, str) else list(breakdown)

    normalized: list[BreakdownProperty] = []
    for item in items:
        if isinstance(item, BreakdownProperty):
            prop = item
        elif isinstance(item, str):
            prop = BreakdownProperty(property=item)
        else:
            prop = BreakdownProperty(
                property=item.get("property", ""), granularity=item.get("granularity")
            )
        if prop.property and prop.property.strip():
            normalized.append(prop)

    if len(normalized) > MAX_BREAKDOWN_PROPERTIES:
        raise ConfigurationError(
            f"at most {MAX_BREAKDOWN_PROPERTIES} breakdown properties are supported"
        )
    return tuple(normalized)


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ConfigurationError("end must be on or after start")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class TrendCombination:
    """One ``(source, event, filters)`` line of a metric-over-time chart."""

    event: str
    source: str | None = None
    filters: FilterGroup = field(default_factory=FilterGroup)
    label: str | None = None

    def __post_init__(self) -> None:
        if not self.event or not self.event.strip():
            raise ConfigurationError("trend event must not be empty")
        if not isinstance(self.filters, FilterGroup):
            object.__setattr__(self, "filters", FilterGroup(normalize_filters(self.filters)))

    @property
    def name(self) -> str:
        return self.label or self.event


@dataclass(frozen=True)
class RetentionConfig:
    activation_event: str
    return_event: str
    date_range: DateRange
    retention_periods: tuple[int, ...] = (1, 3, 7, 14, 30)
    segment_property: str | None = None
    segment_value: str | None = None

    def __post_init__(self) -> None:
        if not self.activation_event or not self.return_event:
            raise ConfigurationError("activation_event and return_event are required")
        periods = tuple(sorted({int(p) for p in self.retention_periods}))
        if not periods:
            raise ConfigurationError("at least one retention period is required")
        if periods[0] < 0:
            raise ConfigurationError("retention periods must be non-negative")
        object.__setattr__(self, "retention_periods", periods)


@dataclass(frozen=True)
class PathConfig:
    start_event: str
    date_range: DateRange
    end_event: str | None = None
    only_paths_to_end: bool = False
    start_event_filters: FilterGroup = field(default_factory=FilterGroup)
    end_event_filters: FilterGroup = field(default_factory=FilterGroup)
    max_depth: int = 5
    top_paths: int = 10
    excluded_events: tuple[str, ...] = ()
    segment_property: str | None = None
    segment_value: str | None = None

    def __post_init__(self) -> None:
        if not self.start_event or not self.start_event.strip():
            raise ConfigurationError("start_event is required for path analysis")
        if not 2 <= self.max_depth <= 10:
            raise ConfigurationError("max_depth must be between 2 and 10")
        if self.top_paths < 1:
            raise ConfigurationError("top_paths must be at least 1")
        if self.only_paths_to_end and not self.end_event:
            raise ConfigurationError("only_paths_to_end requires end_event")
        for name in ("start_event_filters", "end_event_filters"):
            value = getattr(self, name)
            if not isinstance(value, FilterGroup):
                object.__setattr__(self, name, FilterGroup(normalize_filters(value)))
        object.__setattr__(self, "excluded_events", tuple(self.excluded_events))


# ---------------------------------------------------------------------------
# Results


@dataclass
class FunnelStepResult:
    step: int
    step_name: str
    metric_value: float
    conversion_rate: float
    drop_off_rate: float
    segment: str | None = None


@dataclass
class FunnelBreakdown:
    segment_name: str
    steps: list[FunnelStepResult]


@dataclass
class TimePeriodFunnel:
    period: str
    period_label: str
    start: date
    end: date
    steps: list[FunnelStepResult]


@dataclass
class TrendPoint:
    date: str
    value: float


@dataclass
class TrendSeries:
    name: str
    points: list[TrendPoint]


@dataclass
class TrendBreakdown:
    segment_name: str
    series: list[TrendPoint]

    @property
    def total(self) -> float:
        return sum(point.value for point in self.series)


@dataclass
class RetentionPoint:
    day: int
    retained: int
    retention_rate: float


@dataclass
class RetentionCohort:
    cohort_date: str
    cohort_size: int
    points: list[RetentionPoint]


@dataclass
class RetentionResult:
    cohorts: list[RetentionCohort]
    total_entities: int


@dataclass
class AverageRetentionPoint:
    day: int
    retained: int
    total_cohort_size: int
    retention_rate: float


@dataclass
class PathNode:
    event: str
    position: int
    count: int
    percentage: float

    @property
    def key(self) -> str:
        return f"{self.event}_pos{self.position}"


@dataclass
class PathEdge:
    source: str
    target: str
    count: int
    percentage: float


@dataclass
class PathSequence:
    sequence: list[str]
    count: int
    percentage: float


@dataclass
class PathAnalysisResult:
    nodes: list[PathNode]
    edges: list[PathEdge]
    sequences: list[PathSequence]
    total_entities: int

    @classmethod
    def empty(cls) -> PathAnalysisResult:
        return cls(nodes=[], edges=[], sequences=[], total_entities=0)
