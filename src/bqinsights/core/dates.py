"""Helpers for handling date ranges and time buckets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Tuple

import pandas as pd

from .errors import ConfigurationError
from .types import DateRange, Granularity

__all__ = [
    "DatePeriod",
    "DateRangeType",
    "bucket_expression",
    "date_range_condition",
    "generate_date_periods",
    "resolve_date_range",
    "table_suffix_condition",
]


def _parse_date_range(start: date, end: date, tz: str) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Return timezone aware timestamps covering the inclusive date range."""

    if end < start:
        raise ConfigurationError("end must be on or after start")

    start_ts = (
        pd.Timestamp(start)
        .tz_localize(tz)
        .replace(hour=0, minute=0, second=0, microsecond=0)
    )
    end_ts = (
        pd.Timestamp(end)
        .tz_localize(tz)
        .replace(hour=23, minute=59, second=59, microsecond=999_999)
    )
    return start_ts, end_ts


@dataclass(frozen=True)
class _BucketSpec:
    expression_template: str

    def render(self, date_expr: str) -> str:
        return self.expression_template.format(date=date_expr)


_BUCKET_SPECS = {
    Granularity.DAILY: _BucketSpec("{date}"),
    Granularity.WEEKLY: _BucketSpec("DATE_TRUNC({date}, WEEK(MONDAY))"),
    Granularity.MONTHLY: _BucketSpec("DATE_TRUNC({date}, MONTH)"),
}


def bucket_expression(granularity: Granularity | str, date_expr: str) -> str:
    """Return SQL truncating the DATE expression ``date_expr`` to its bucket start."""

    try:
        spec = _BUCKET_SPECS[Granularity(granularity)]
    except ValueError as exc:
        raise ConfigurationError(
            "granularity must be one of: 'daily', 'weekly', 'monthly'"
        ) from exc
    return spec.render(date_expr)


def date_range_condition(date_expr: str, date_range: DateRange) -> str:
    return "{expr} BETWEEN DATE '{start}' AND DATE '{end}'".format(
        expr=date_expr,
        start=date_range.start.isoformat(),
        end=date_range.end.isoformat(),
    )


def table_suffix_condition(table_id: str, date_range: DateRange, tz: str) -> str | None:
    """Return the ``_TABLE_SUFFIX`` predicate for wildcard tables, if needed."""

    if not table_id.endswith("*"):
        return None

    start_ts, end_ts = _parse_date_range(date_range.start, date_range.end, tz)
    lo = start_ts.tz_convert("UTC").date().strftime("%Y%m%d")
    hi = end_ts.tz_convert("UTC").date().strftime("%Y%m%d")
    return "REGEXP_EXTRACT(_TABLE_SUFFIX, r'(\\d+)$') BETWEEN '{lo}' AND '{hi}'".format(lo=lo, hi=hi)


@dataclass(frozen=True)
class DatePeriod:
    period: str
    label: str
    start: date
    end: date

    @property
    def date_range(self) -> DateRange:
        return DateRange(self.start, self.end)


def generate_date_periods(date_range: DateRange, granularity: Granularity | str) -> list[DatePeriod]:
    """Split ``date_range`` into consecutive periods, clamped to the range.

    Weeks start on Monday and are named by ISO week (``2025-W40``); months are
    named ``2025-10``.
    """

    granularity = Granularity(granularity)
    start, end = date_range.start, date_range.end
    periods: list[DatePeriod] = []

    if granularity is Granularity.DAILY:
        for day in pd.date_range(start, end, freq="D"):
            current = day.date()
            periods.append(
                DatePeriod(current.isoformat(), f"{current:%b} {current.day}", current, current)
            )
        return periods

    if granularity is Granularity.WEEKLY:
        current = start - timedelta(days=start.weekday())
        while current <= end:
            iso_year, iso_week, _ = current.isocalendar()
            periods.append(
                DatePeriod(
                    period=f"{iso_year}-W{iso_week:02d}",
                    label=f"Week {iso_week} ({current:%b} {current.day})",
                    start=max(current, start),
                    end=min(current + timedelta(days=6), end),
                )
            )
            current += timedelta(days=7)
        return periods

    for month in pd.period_range(start, end, freq="M"):
        month_start = month.start_time.date()
        month_end = month.end_time.date()
        periods.append(
            DatePeriod(
                period=f"{month_start:%Y-%m}",
                label=f"{month_start:%B %Y}",
                start=max(month_start, start),
                end=min(month_end, end),
            )
        )
    return periods


class DateRangeType(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_7_DAYS = "last_7_days"
    LAST_14_DAYS = "last_14_days"
    LAST_30_DAYS = "last_30_days"
    LAST_60_DAYS = "last_60_days"
    LAST_90_DAYS = "last_90_days"
    THIS_WEEK = "this_week"
    LAST_WEEK = "last_week"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    THIS_QUARTER = "this_quarter"
    LAST_QUARTER = "last_quarter"
    CUSTOM = "custom"


_TRAILING_DAYS = {
    DateRangeType.LAST_7_DAYS: 7,
    DateRangeType.LAST_14_DAYS: 14,
    DateRangeType.LAST_30_DAYS: 30,
    DateRangeType.LAST_60_DAYS: 60,
    DateRangeType.LAST_90_DAYS: 90,
}


def resolve_date_range(
    kind: DateRangeType | str,
    *,
    today: date | None = None,
    custom_start: date | None = None,
    custom_end: date | None = None,
) -> DateRange:
    """Turn a relative range such as ``last_30_days`` into absolute dates.

    Trailing ranges include ``today``.  Weeks start on Monday.  A ``custom``
    range without both bounds falls back to the last 7 days.
    """

    try:
        kind = DateRangeType(kind)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown date range: {kind!r}") from exc
    today = today or date.today()
    now = pd.Timestamp(today)

    if kind is DateRangeType.TODAY:
        return DateRange(today, today)
    if kind is DateRangeType.YESTERDAY:
        yesterday = today - timedelta(days=1)
        return DateRange(yesterday, yesterday)
    if kind in _TRAILING_DAYS:
        return DateRange(today - timedelta(days=_TRAILING_DAYS[kind] - 1), today)
    if kind is DateRangeType.THIS_WEEK:
        return DateRange(today - timedelta(days=today.weekday()), today)
    if kind is DateRangeType.LAST_WEEK:
        monday = today - timedelta(days=today.weekday() + 7)
        return DateRange(monday, monday + timedelta(days=6))
    if kind is DateRangeType.THIS_MONTH:
        return DateRange(today.replace(day=1), today)
    if kind is DateRangeType.LAST_MONTH:
        period = now.to_period("M") - 1
        return DateRange(period.start_time.date(), period.end_time.date())
    if kind is DateRangeType.THIS_QUARTER:
        return DateRange(now.to_period("Q").start_time.date(), today)
    if kind is DateRangeType.LAST_QUARTER:
        period = now.to_period("Q") - 1
        return DateRange(period.start_time.date(), period.end_time.date())

    if custom_start is None or custom_end is None:
        return resolve_date_range(DateRangeType.LAST_7_DAYS, today=today)
    return DateRange(custom_start, custom_end)
