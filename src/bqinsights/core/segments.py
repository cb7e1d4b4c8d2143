"""Composite segment keys for breakdowns."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .dates import bucket_expression
from .errors import ConfigurationError
from .schema import PropertyAccessor
from .sql import format_literal
from .types import BreakdownProperty, Granularity

__all__ = [
    "MAX_SEGMENTS",
    "SEGMENT_SEPARATOR",
    "SegmentComponent",
    "SegmentKey",
    "build_segment_key",
    "split_segment_key",
]

SEGMENT_SEPARATOR = " | "
MAX_SEGMENTS = 20


@dataclass(frozen=True)
class SegmentComponent:
    property: str
    expression: str
    is_date: bool


@dataclass(frozen=True)
class SegmentKey:
    """A STRING expression identifying a segment plus its exclusion predicate."""

    expression: str
    non_empty_predicate: str | None
    components: tuple[SegmentComponent, ...]

    def match_predicate(self, segment: str) -> str:
        """Return a predicate selecting rows that belong to ``segment``.

        The key is split back into its components and each one is compared to
        its own expression.  When the split is ambiguous (a value contains the
        separator) the whole key expression is compared instead.
        """

        values = split_segment_key(segment)
        if len(values) != len(self.components):
            return f"{self.expression} = {format_literal(segment)}"
        return " AND ".join(
            f"{component.expression} = {format_literal(value)}"
            for component, value in zip(self.components, values)
        )


def split_segment_key(segment: str) -> list[str]:
    return segment.split(SEGMENT_SEPARATOR)


def _date_value(prop: str, accessor: PropertyAccessor) -> str:
    schema = accessor.schema
    if prop == schema.timestamp_column:
        return "DATE({ts}, {tz})".format(
            ts=accessor.timestamp_expression(), tz=format_literal(schema.tz)
        )
    if prop == schema.date_column:
        return accessor.date_expression()
    return f"DATE(SAFE_CAST({accessor.string(prop)} AS TIMESTAMP))"


def _component(item: BreakdownProperty, accessor: PropertyAccessor) -> SegmentComponent:
    schema = accessor.schema
    is_date = item.granularity is not None or item.property in {
        schema.date_column,
        schema.timestamp_column,
    }

    if item.granularity is None or item.granularity is Granularity.DAILY:
        expression = accessor.string(item.property)
    else:
        bucket = bucket_expression(item.granularity, _date_value(item.property, accessor))
        expression = f"CAST({bucket} AS STRING)"
    return SegmentComponent(item.property, expression, is_date)


def build_segment_key(
    breakdown: Sequence[BreakdownProperty], accessor: PropertyAccessor
) -> SegmentKey:
    """Build the key expression for an already normalized breakdown.

    Components keep the caller's order.  Granularity is rejected for
    properties that do not look like dates.
    """

    if not breakdown:
        raise ConfigurationError("breakdown requires at least one property")

    for item in breakdown:
        if item.granularity is not None and not accessor.is_date_like(item.property):
            raise ConfigurationError(
                f"granularity is only supported for date properties, got '{item.property}'"
            )

    components = tuple(_component(item, accessor) for item in breakdown)
    if len(components) == 1:
        expression = components[0].expression
    else:
        parts: list[str] = []
        for idx, component in enumerate(components):
            if idx:
                parts.append(format_literal(SEGMENT_SEPARATOR))
            parts.append(component.expression)
        expression = f"CONCAT({', '.join(parts)})"

    checks = [
        f"IFNULL({component.expression}, '') != ''"
        for component in components
        if not component.is_date
    ]
    non_empty = " AND ".join(checks) if checks else None
    return SegmentKey(expression, non_empty, components)
