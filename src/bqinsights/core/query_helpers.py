"""Shared helper utilities for query construction."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from google.cloud import bigquery

from .dates import date_range_condition, table_suffix_condition
from .filters import ALWAYS_TRUE, compile_filter_group
from .schema import PropertyAccessor
from .sql import format_literal, format_literal_list
from .types import DateRange, FilterGroup

ENTITY_SET_PARAMETER = "entities"


def normalize_events(events: str | Sequence[str]) -> list[str]:
    if isinstance(events, str):
        return [events]
    return list(events)


def event_name_condition(accessor: PropertyAccessor, events: str | Sequence[str]) -> str:
    normalized_events = normalize_events(events)
    column = accessor.event_name_expression()
    if len(normalized_events) == 1:
        return f"{column} = {format_literal(normalized_events[0])}"
    return f"{column} IN {format_literal_list(normalized_events)}"


def join_where_clauses(clauses: Iterable[str | None], *, operator: str = "AND") -> str:
    """Join ``clauses`` with ``operator`` while wrapping each clause in parentheses.

    ``None`` and always-true clauses are skipped; nothing left yields ``TRUE``.
    """

    kept = [clause for clause in clauses if clause and clause != ALWAYS_TRUE]
    if not kept:
        return ALWAYS_TRUE
    return f" {operator} ".join(f"({clause})" for clause in kept)


def join_where_clauses_or(clauses: Iterable[str | None]) -> str:
    return join_where_clauses(clauses, operator="OR")


def source_table(accessor: PropertyAccessor, source: str | None) -> str:
    return source or accessor.schema.table_id


def from_clause(table_id: str) -> str:
    return f"`{table_id}`"


def date_clauses(
    accessor: PropertyAccessor, table_id: str, date_range: DateRange
) -> tuple[str, ...]:
    """Date predicate plus the ``_TABLE_SUFFIX`` predicate for wildcard tables."""

    clauses = [date_range_condition(accessor.date_expression(), date_range)]
    suffix = table_suffix_condition(table_id, date_range, accessor.schema.tz)
    if suffix:
        clauses.append(suffix)
    return tuple(clauses)


def event_condition(
    accessor: PropertyAccessor, event: str, filters: FilterGroup | None = None
) -> str:
    """Event name equality combined with the event's own filter group."""

    return join_where_clauses(
        [event_name_condition(accessor, event), compile_filter_group(filters, accessor).sql]
    )


def non_empty_entity_condition(accessor: PropertyAccessor) -> str:
    return f"IFNULL({accessor.entity_expression()}, '') != ''"


def entity_set_condition(accessor: PropertyAccessor) -> str:
    return f"{accessor.entity_expression()} IN UNNEST(@{ENTITY_SET_PARAMETER})"


def entity_set_parameter(entities: Iterable[str]) -> bigquery.ArrayQueryParameter:
    return bigquery.ArrayQueryParameter(ENTITY_SET_PARAMETER, "STRING", sorted(entities))


def segment_filter_condition(
    accessor: PropertyAccessor, segment_property: str | None, segment_value: str | None
) -> str | None:
    """Case-insensitive property/value restriction used by retention and paths."""

    if not segment_property or not segment_value:
        return None
    return "{column} = {value}".format(
        column=accessor.case_insensitive(segment_property),
        value=format_literal(segment_value.lower()),
    )


__all__ = [
    "ENTITY_SET_PARAMETER",
    "date_clauses",
    "entity_set_condition",
    "entity_set_parameter",
    "event_condition",
    "event_name_condition",
    "from_clause",
    "join_where_clauses",
    "join_where_clauses_or",
    "non_empty_entity_condition",
    "normalize_events",
    "segment_filter_condition",
    "source_table",
]
