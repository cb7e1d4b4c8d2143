"""Utilities for translating filter groups into SQL predicates."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from .schema import PropertyAccessor
from .sql import format_literal, format_literal_list, format_number
from .types import FilterGroup, FilterLogic, FilterOperator, PropertyFilter

__all__ = ["ALWAYS_FALSE", "ALWAYS_TRUE", "CompiledFilter", "compile_filter_group", "parse_number"]

ALWAYS_TRUE = "TRUE"
ALWAYS_FALSE = "FALSE"


@dataclass(frozen=True)
class CompiledFilter:
    """A boolean SQL fragment plus the properties it reads."""

    sql: str
    properties: frozenset[str]

    @property
    def is_trivial(self) -> bool:
        return self.sql == ALWAYS_TRUE


def compile_filter_group(group: FilterGroup | None, accessor: PropertyAccessor) -> CompiledFilter:
    """Convert ``group`` into a single predicate.

    Filters with a blank property are dropped; an empty group is ``TRUE``.
    ``OR`` groups with more than one condition are parenthesised so they can
    be combined with an outer ``AND``.
    """

    if group is None:
        return CompiledFilter(ALWAYS_TRUE, frozenset())

    conditions: list[str] = []
    properties: set[str] = set()
    for filter_ in group.filters:
        if not filter_.property or not filter_.property.strip():
            continue
        condition = _parse_filter(filter_, accessor)
        if condition is None:
            continue
        conditions.append(condition)
        properties.add(filter_.property)

    if not conditions:
        return CompiledFilter(ALWAYS_TRUE, frozenset(properties))

    joined = f" {group.logic.value} ".join(conditions)
    if group.logic is FilterLogic.OR and len(conditions) > 1:
        joined = f"({joined})"
    return CompiledFilter(joined, frozenset(properties))


def parse_number(value: str | None) -> float:
    """Parse ``value`` as a float, treating anything non-numeric as ``0``."""

    try:
        number = float((value or "").strip())
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _split_list(value: str) -> list[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


_LOWERED_COMPARISONS = {
    FilterOperator.EQUALS: "{col} = {value}",
    FilterOperator.NOT_EQUALS: "{col} != {value}",
    FilterOperator.CONTAINS: "STRPOS({col}, {value}) > 0",
    FilterOperator.NOT_CONTAINS: "STRPOS({col}, {value}) = 0",
    FilterOperator.STARTS_WITH: "STARTS_WITH({col}, {value})",
    FilterOperator.ENDS_WITH: "ENDS_WITH({col}, {value})",
}

_NUMERIC_COMPARISONS = {
    FilterOperator.GREATER_THAN: ">",
    FilterOperator.LESS_THAN: "<",
    FilterOperator.GREATER_THAN_OR_EQUAL: ">=",
    FilterOperator.LESS_THAN_OR_EQUAL: "<=",
}

# Negated matches treat a missing value as empty so NULL rows are kept.
_NULL_AS_EMPTY = frozenset(
    {FilterOperator.NOT_EQUALS, FilterOperator.NOT_CONTAINS, FilterOperator.NOT_IN}
)


def _numeric_column(accessor: PropertyAccessor, prop: str) -> str:
    return f"IFNULL(SAFE_CAST({accessor.column(prop)} AS FLOAT64), 0)"


def _string_column(accessor: PropertyAccessor, prop: str, op: FilterOperator) -> str:
    col = accessor.case_insensitive(prop)
    return f"IFNULL({col}, '')" if op in _NULL_AS_EMPTY else col


def _parse_filter(filter_: PropertyFilter, accessor: PropertyAccessor) -> str | None:
    """Return the predicate for one filter, or ``None`` when it is dropped."""

    op = filter_.operator
    prop = filter_.property

    if op in _LOWERED_COMPARISONS:
        return _LOWERED_COMPARISONS[op].format(
            col=_string_column(accessor, prop, op),
            value=format_literal(filter_.value.lower()),
        )

    if op in (FilterOperator.IN, FilterOperator.NOT_IN):
        values = _split_list(filter_.value)
        if not values:
            return None
        keyword = "IN" if op is FilterOperator.IN else "NOT IN"
        return f"{_string_column(accessor, prop, op)} {keyword} {format_literal_list(values)}"

    if op in _NUMERIC_COMPARISONS:
        return "{col} {op} {value}".format(
            col=_numeric_column(accessor, prop),
            op=_NUMERIC_COMPARISONS[op],
            value=format_number(parse_number(filter_.value)),
        )

    if op is FilterOperator.BETWEEN:
        if not (filter_.value2 or "").strip():
            return ALWAYS_FALSE
        return "{col} BETWEEN {low} AND {high}".format(
            col=_numeric_column(accessor, prop),
            low=format_number(parse_number(filter_.value)),
            high=format_number(parse_number(filter_.value2)),
        )

    if op is FilterOperator.REGEX:
        return "REGEXP_CONTAINS({col}, {pattern})".format(
            col=accessor.string(prop),
            pattern=format_literal("(?i)" + filter_.value),
        )

    if op is FilterOperator.IS_EMPTY:
        return f"IFNULL({accessor.string(prop)}, '') = ''"

    if op is FilterOperator.IS_NOT_EMPTY:
        return f"IFNULL({accessor.string(prop)}, '') != ''"

    raise AssertionError(f"Unhandled filter operator: {op}")


def referenced_properties(groups: Sequence[FilterGroup]) -> frozenset[str]:
    """Return every non-blank property referenced by ``groups``."""

    return frozenset(
        f.property for group in groups for f in group.filters if f.property and f.property.strip()
    )
