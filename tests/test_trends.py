"""Tests for metric-over-time trends."""

from __future__ import annotations

import asyncio

import pandas as pd
import pytest

from bqinsights.core.errors import ConfigurationError
from bqinsights.core.trends import TrendEngine, normalize_combinations
from bqinsights.core.types import MetricSpec, TrendCombination

from .conftest import FakeEventStore


def _run(coro):
    return asyncio.run(coro)


def test_normalize_combinations_accepts_one_combination_or_mappings() -> None:
    single = normalize_combinations(TrendCombination("purchase"))
    assert single == (TrendCombination("purchase"),)

    mapped = normalize_combinations(
        [{"event": "purchase", "label": "Purchases", "filters": [{"property": "plan", "operator": "is_not_empty"}]}]
    )
    assert mapped[0].name == "Purchases"
    assert len(mapped[0].filters.filters) == 1


def test_no_combination_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="at least one event combination"):
        normalize_combinations([])


def test_trend_returns_one_series_per_combination_in_order(accessor, week) -> None:
    store = FakeEventStore(
        {
            "trend_1": pd.DataFrame({"date": ["2024-01-02", "2024-01-01"], "value": [5, 3]}),
            "trend_2": pd.DataFrame({"date": ["2024-01-01"], "value": [None]}),
        }
    )
    series = _run(
        TrendEngine(accessor, store).compute(
            [TrendCombination("purchase"), TrendCombination("signup", label="Signups")], week
        )
    )

    assert [s.name for s in series] == ["purchase", "Signups"]
    assert [(p.date, p.value) for p in series[0].points] == [("2024-01-01", 3.0), ("2024-01-02", 5.0)]
    assert [p.value for p in series[1].points] == [0.0]


def test_trend_without_rows_is_an_empty_series(accessor, week) -> None:
    (series,) = _run(TrendEngine(accessor, FakeEventStore()).compute(TrendCombination("x"), week))
    assert series.points == []


def test_weekly_trend_buckets_on_monday(accessor, week) -> None:
    store = FakeEventStore()
    _run(
        TrendEngine(accessor, store).compute(
            TrendCombination("purchase"), week, granularity="weekly", metric=MetricSpec("unique_entities")
        )
    )
    sql = store.calls[0].sql
    assert "DATE_TRUNC(DATE(TIMESTAMP_MICROS(`event_timestamp`), 'UTC'), WEEK(MONDAY))" in sql
    assert "COUNT(DISTINCT CAST(`user_id` AS STRING)) AS value" in sql


def test_trend_source_overrides_the_table(accessor, week) -> None:
    store = FakeEventStore()
    _run(TrendEngine(accessor, store).compute(TrendCombination("order", source="proj.shop.orders"), week))
    assert "FROM `proj.shop.orders`" in store.calls[0].sql


def test_unknown_granularity_raises_before_any_query(accessor, week) -> None:
    store = FakeEventStore()
    with pytest.raises(ConfigurationError, match="Unknown granularity"):
        _run(TrendEngine(accessor, store).compute(TrendCombination("x"), week, granularity="hourly"))
    assert store.calls == []


def test_breakdown_zero_fills_and_ranks_by_total(accessor, week) -> None:
    rows = pd.DataFrame(
        {
            "date": ["2024-01-01", "2024-01-01", "2024-01-02", "2024-01-02"],
            "segment": ["no", "us", "us", None],
            "value": [4, 1, 6, 9],
        }
    )
    store = FakeEventStore({"trend_breakdown_1": rows})
    (breakdowns,) = _run(
        TrendEngine(accessor, store).compute_breakdown(TrendCombination("purchase"), week, "country")
    )

    assert [b.segment_name for b in breakdowns] == ["us", "no"]
    assert [(p.date, p.value) for p in breakdowns[0].series] == [("2024-01-01", 1.0), ("2024-01-02", 6.0)]
    assert [(p.date, p.value) for p in breakdowns[1].series] == [("2024-01-01", 4.0), ("2024-01-02", 0.0)]
    assert breakdowns[0].total == 7.0

    sql = store.calls[0].sql
    assert "CAST(`country` AS STRING) AS segment" in sql
    assert "(IFNULL(CAST(`country` AS STRING), '') != '')" in sql
    assert "GROUP BY date, segment" in sql


def test_breakdown_keeps_twenty_largest_segments(accessor, week) -> None:
    rows = pd.DataFrame(
        {"date": ["2024-01-01"] * 30, "segment": [f"s{i:02d}" for i in range(30)], "value": list(range(30))}
    )
    store = FakeEventStore({"trend_breakdown_1": rows})
    (breakdowns,) = _run(
        TrendEngine(accessor, store).compute_breakdown(TrendCombination("purchase"), week, "country")
    )
    assert len(breakdowns) == 20
    assert breakdowns[0].segment_name == "s29"
    assert breakdowns[-1].segment_name == "s10"


def test_breakdown_with_no_rows(accessor, week) -> None:
    result = _run(
        TrendEngine(accessor, FakeEventStore()).compute_breakdown(
            [TrendCombination("a"), TrendCombination("b")], week, ["country", "$os"]
        )
    )
    assert result == [[], []]
