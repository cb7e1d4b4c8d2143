"""Common journeys starting from an event, and the graph they form."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence

import pandas as pd

from .engine import BaseEngine
from .metrics import ENTITY_COLUMN
from .query_helpers import (
    date_clauses,
    entity_set_condition,
    entity_set_parameter,
    event_condition,
    from_clause,
    join_where_clauses,
    non_empty_entity_condition,
    segment_filter_condition,
)
from .sql import format_literal_list
from .types import (
    FilterGroup,
    PathAnalysisResult,
    PathConfig,
    PathEdge,
    PathNode,
    PathSequence,
)

__all__ = ["PathEngine", "build_path_graph", "clean_sequence", "extract_path", "summarize_paths"]

logger = logging.getLogger(__name__)

_EVENT_COLUMN = "event_name"
_TIMESTAMP_COLUMN = "event_micros"


def clean_sequence(events: Iterable[str], excluded: Iterable[str] = ()) -> list[str]:
    """Drop excluded and blank events, then collapse consecutive repeats."""

    excluded = set(excluded)
    cleaned: list[str] = []
    for event in events:
        if not event or event in excluded:
            continue
        if cleaned and cleaned[-1] == event:
            continue
        cleaned.append(event)
    return cleaned


def extract_path(
    sequence: Sequence[str],
    start_event: str,
    max_depth: int,
    *,
    end_event: str | None = None,
) -> tuple[str, ...] | None:
    """Return the window of ``sequence`` starting at the first ``start_event``.

    ``None`` when the start event is absent, the window is shorter than two
    events, or ``end_event`` is given and does not occur in the window.
    """

    try:
        start = sequence.index(start_event)
    except ValueError:
        return None
    window = tuple(sequence[start : start + max_depth])
    if len(window) < 2:
        return None
    if end_event is not None and end_event not in window:
        return None
    return window


def build_path_graph(
    counted: Sequence[tuple[tuple[str, ...], int]],
) -> tuple[list[PathNode], list[PathEdge]]:
    """Build position-keyed nodes and edges from ``(sequence, count)`` pairs.

    Node percentages are relative to the total count of ``counted``; edge
    percentages to the count of their source node.
    """

    node_counts: Counter[tuple[str, int]] = Counter()
    edge_counts: Counter[tuple[tuple[str, int], tuple[str, int]]] = Counter()
    for sequence, count in counted:
        for position, event in enumerate(sequence):
            node_counts[(event, position)] += count
        for position in range(len(sequence) - 1):
            if sequence[position] == sequence[position + 1]:
                continue
            source = (sequence[position], position)
            target = (sequence[position + 1], position + 1)
            edge_counts[(source, target)] += count

    total = sum(count for _, count in counted)
    nodes = [
        PathNode(
            event=event,
            position=position,
            count=count,
            percentage=round(count / total * 100, 2) if total else 0.0,
        )
        for (event, position), count in sorted(
            node_counts.items(), key=lambda item: (item[0][1], -item[1], item[0][0])
        )
    ]
    keys = {(node.event, node.position): node.key for node in nodes}
    edges = [
        PathEdge(
            source=keys[source],
            target=keys[target],
            count=count,
            percentage=round(count / node_counts[source] * 100, 2),
        )
        for (source, target), count in sorted(
            edge_counts.items(), key=lambda item: (item[0][0][1], -item[1], item[0][0][0], item[0][1][0])
        )
    ]
    return nodes, edges


class PathEngine(BaseEngine):
    """Reconstructs per-entity journeys and keeps the most common ones."""

    def _entities_sql(self, config: PathConfig, event: str, filters: FilterGroup, segmented: bool) -> str:
        accessor = self.accessor
        table_id = accessor.schema.table_id
        wheres = [
            *date_clauses(accessor, table_id, config.date_range),
            non_empty_entity_condition(accessor),
            event_condition(accessor, event, filters),
            segment_filter_condition(accessor, config.segment_property, config.segment_value)
            if segmented
            else None,
        ]
        return f"""
SELECT DISTINCT {accessor.entity_expression()} AS {ENTITY_COLUMN}
FROM {from_clause(table_id)}
WHERE {join_where_clauses(wheres)}
"""

    def _events_sql(self, config: PathConfig) -> str:
        accessor = self.accessor
        table_id = accessor.schema.table_id
        event_name = accessor.event_name_expression()
        excluded = (
            f"{event_name} NOT IN {format_literal_list(config.excluded_events)}"
            if config.excluded_events
            else None
        )
        wheres = [
            *date_clauses(accessor, table_id, config.date_range),
            entity_set_condition(accessor),
            f"IFNULL({event_name}, '') != ''",
            excluded,
            segment_filter_condition(accessor, config.segment_property, config.segment_value),
        ]
        return f"""
SELECT
  {accessor.entity_expression()} AS {ENTITY_COLUMN},
  {event_name} AS {_EVENT_COLUMN},
  {accessor.timestamp_micros_expression()} AS {_TIMESTAMP_COLUMN}
FROM {from_clause(table_id)}
WHERE {join_where_clauses(wheres)}
ORDER BY {ENTITY_COLUMN}, {_TIMESTAMP_COLUMN}
"""

    async def _entities(self, sql: str, label: str) -> set[str]:
        df = await self._fetch(sql, label=label)
        return set() if df.empty else set(df[ENTITY_COLUMN].dropna().astype(str))

    async def compute(self, config: PathConfig) -> PathAnalysisResult:
        """Return the top paths from ``config.start_event`` and their graph."""

        start_sql = self._entities_sql(
            config, config.start_event, config.start_event_filters, segmented=True
        )
        if config.only_paths_to_end and config.end_event:
            end_sql = self._entities_sql(
                config, config.end_event, config.end_event_filters, segmented=False
            )
            starters, finishers = await self._gather(
                self._entities(start_sql, "paths_start_entities"),
                self._entities(end_sql, "paths_end_entities"),
            )
            qualifying = starters & finishers
        else:
            qualifying = await self._entities(start_sql, "paths_start_entities")

        if not qualifying:
            logger.debug("No entities performed %s, skipping path extraction", config.start_event)
            return PathAnalysisResult.empty()

        df = await self._fetch(
            self._events_sql(config),
            label="paths_events",
            parameters=[entity_set_parameter(qualifying)],
        )
        return summarize_paths(df, config)


def summarize_paths(df: pd.DataFrame, config: PathConfig) -> PathAnalysisResult:
    """Turn ordered ``entity_id, event_name, event_micros`` rows into a result."""

    if df.empty:
        return PathAnalysisResult.empty()

    df = df.sort_values([ENTITY_COLUMN, _TIMESTAMP_COLUMN], kind="mergesort")
    end_event = config.end_event if config.only_paths_to_end else None

    paths: Counter[tuple[str, ...]] = Counter()
    for _, frame in df.groupby(ENTITY_COLUMN, sort=False):
        sequence = clean_sequence(frame[_EVENT_COLUMN].astype(str), config.excluded_events)
        path = extract_path(sequence, config.start_event, config.max_depth, end_event=end_event)
        if path is not None:
            paths[path] += 1

    qualifying = sum(paths.values())
    if not qualifying:
        return PathAnalysisResult.empty()

    top = sorted(paths.items(), key=lambda item: (-item[1], item[0]))[: config.top_paths]
    sequences = [
        PathSequence(
            sequence=list(sequence),
            count=count,
            percentage=round(count / qualifying * 100, 2),
        )
        for sequence, count in top
    ]
    nodes, edges = build_path_graph(top)
    return PathAnalysisResult(
        nodes=nodes, edges=edges, sequences=sequences, total_entities=qualifying
    )
