"""Translation of :class:`MetricSpec` into aggregations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import pandas as pd

from .errors import ConfigurationError
from .schema import PropertyAccessor
from .types import MetricSpec, MetricType

__all__ = [
    "ENTITY_COLUMN",
    "METRIC_VALUE_COLUMN",
    "CompiledMetric",
    "Coercion",
    "compile_metric",
]

ENTITY_COLUMN = "entity_id"
METRIC_VALUE_COLUMN = "metric_value"


class Coercion(str, Enum):
    """How non-numeric stored values are treated by an aggregation."""

    NONE = "none"
    ZERO = "zero"
    EXCLUDE = "exclude"


_PROPERTY_METRICS = {
    MetricType.COUNT_DISTINCT,
    MetricType.SUM,
    MetricType.AVERAGE,
    MetricType.MIN,
    MetricType.MAX,
}

_NUMERIC_FUNCTIONS = {
    MetricType.AVERAGE: ("AVG", "mean"),
    MetricType.MIN: ("MIN", "min"),
    MetricType.MAX: ("MAX", "max"),
}


@dataclass(frozen=True)
class CompiledMetric:
    """SQL aggregation for a metric plus the matching in-memory reduction.

    ``value_expression`` is the per-row STRING expression read by the
    aggregation (``None`` for row and entity counts).  Engines that fetch
    rows instead of aggregating in SQL select it as ``metric_value`` and call
    :meth:`aggregate`.
    """

    spec: MetricSpec
    sql: str
    value_expression: str | None
    coercion: Coercion

    @property
    def type(self) -> MetricType:
        return self.spec.type

    def aggregate(self, frame: pd.DataFrame) -> float:
        """Reduce ``frame`` (``entity_id`` / ``metric_value`` columns) to one value."""

        if frame.empty:
            return 0.0
        if self.type is MetricType.TOTAL:
            return float(len(frame))
        if self.type is MetricType.UNIQUE_ENTITIES:
            return float(frame[ENTITY_COLUMN].nunique())
        if self.type is MetricType.COUNT_DISTINCT:
            return float(frame[METRIC_VALUE_COLUMN].nunique(dropna=True))

        values = pd.to_numeric(frame[METRIC_VALUE_COLUMN], errors="coerce")
        if self.coercion is Coercion.ZERO:
            return float(values.fillna(0).sum())

        values = values.dropna()
        if values.empty:
            return 0.0
        _, reducer = _NUMERIC_FUNCTIONS[self.type]
        return float(getattr(values, reducer)())


def compile_metric(spec: MetricSpec | None, accessor: PropertyAccessor) -> CompiledMetric:
    """Compile ``spec``; raises :class:`ConfigurationError` for a missing property."""

    spec = spec or MetricSpec()
    metric_type = spec.type

    if metric_type is MetricType.TOTAL:
        return CompiledMetric(spec, "COUNT(*)", None, Coercion.NONE)
    if metric_type is MetricType.UNIQUE_ENTITIES:
        return CompiledMetric(
            spec, f"COUNT(DISTINCT {accessor.entity_expression()})", None, Coercion.NONE
        )

    if metric_type in _PROPERTY_METRICS and not (spec.property and spec.property.strip()):
        raise ConfigurationError(f"metric '{metric_type.value}' requires a property")

    prop = spec.property or ""
    value = accessor.string(prop)
    numeric = f"SAFE_CAST({value} AS FLOAT64)"

    if metric_type is MetricType.COUNT_DISTINCT:
        return CompiledMetric(spec, f"COUNT(DISTINCT {value})", value, Coercion.NONE)
    if metric_type is MetricType.SUM:
        return CompiledMetric(spec, f"SUM(IFNULL({numeric}, 0))", value, Coercion.ZERO)

    function, _ = _NUMERIC_FUNCTIONS[metric_type]
    return CompiledMetric(spec, f"{function}({numeric})", value, Coercion.EXCLUDE)
