"""Lookups that populate pickers: known events and common property values."""

from __future__ import annotations

from datetime import date, timedelta

from .engine import BaseEngine
from .query_helpers import date_clauses, from_clause, join_where_clauses, source_table
from .types import DateRange

__all__ = ["DiscoveryEngine"]


def _lookback(days: int, today: date | None) -> DateRange:
    today = today or date.today()
    return DateRange(today - timedelta(days=days), today)


class DiscoveryEngine(BaseEngine):
    async def event_names(
        self,
        table: str | None = None,
        *,
        lookback_days: int = 30,
        limit: int = 1000,
        today: date | None = None,
    ) -> list[str]:
        """Distinct event names seen recently, alphabetically."""

        accessor = self.accessor
        table_id = source_table(accessor, table)
        event_name = accessor.event_name_expression()
        wheres = [
            *date_clauses(accessor, table_id, _lookback(lookback_days, today)),
            f"{event_name} IS NOT NULL",
        ]
        sql = f"""
SELECT DISTINCT {event_name} AS event_name
FROM {from_clause(table_id)}
WHERE {join_where_clauses(wheres)}
ORDER BY event_name
LIMIT {int(limit)}
"""
        df = await self._fetch(sql, label="event_names")
        return [] if df.empty else [str(name) for name in df["event_name"].dropna()]

    async def property_values(
        self,
        prop: str,
        table: str | None = None,
        *,
        lookback_days: int = 7,
        limit: int = 20,
        today: date | None = None,
    ) -> list[str]:
        """Most frequent recent values of ``prop``."""

        accessor = self.accessor
        table_id = source_table(accessor, table)
        value = accessor.string(prop)
        wheres = [
            *date_clauses(accessor, table_id, _lookback(lookback_days, today)),
            f"IFNULL({value}, '') != ''",
        ]
        sql = f"""
SELECT {value} AS value, COUNT(*) AS occurrences
FROM {from_clause(table_id)}
WHERE {join_where_clauses(wheres)}
GROUP BY value
ORDER BY occurrences DESC, value
LIMIT {int(limit)}
"""
        df = await self._fetch(sql, label="property_values")
        return [] if df.empty else [str(v) for v in df["value"].dropna() if str(v)]
