"""Tests for the funnel engine."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import numpy as np
import pandas as pd
import pytest

from bqinsights.core.errors import ConfigurationError, StoreExecutionError
from bqinsights.core.funnel import FunnelEngine, funnel_level, normalize_steps
from bqinsights.core.types import FilterLogic, FunnelStep, MetricSpec

from .conftest import FakeEventStore, micros

HOUR = 3_600 * 1_000_000
DAY = 24 * HOUR


def _flags(*rows):
    return np.array(rows, dtype=bool)


# ---------------------------------------------------------------------------
# funnel_level


def test_level_counts_steps_completed_in_order() -> None:
    ts = np.array([0, 10, 20])
    assert funnel_level(ts, _flags([1, 0, 0], [0, 1, 0], [0, 0, 1]), 100) == 3


def test_level_ignores_steps_out_of_order() -> None:
    ts = np.array([0, 10])
    assert funnel_level(ts, _flags([0, 1], [1, 0]), 100) == 1


def test_level_respects_the_window() -> None:
    ts = np.array([0, 150])
    assert funnel_level(ts, _flags([1, 0], [0, 1]), 100) == 1
    assert funnel_level(ts, _flags([1, 0], [0, 1]), 150) == 2


def test_later_first_step_restarts_the_chain() -> None:
    ts = np.array([0, 100, 150])
    assert funnel_level(ts, _flags([1, 0], [1, 0], [0, 1]), 100) == 2


def test_equal_timestamps_never_chain() -> None:
    ts = np.array([5, 5])
    assert funnel_level(ts, _flags([1, 0], [0, 1]), 100) == 1


def test_event_matching_several_steps_advances_one_step_at_a_time() -> None:
    ts = np.array([0, 10])
    assert funnel_level(ts, _flags([1, 1], [1, 1]), 100) == 2
    assert funnel_level(np.array([0]), _flags([1, 1]), 100) == 1


def test_no_first_step_means_level_zero() -> None:
    assert funnel_level(np.array([0]), _flags([0, 1]), 100) == 0


# ---------------------------------------------------------------------------
# Step normalisation


def test_normalize_steps_accepts_mappings() -> None:
    steps = normalize_steps(
        [
            {"event": "view"},
            {
                "event": "purchase",
                "source": "proj.shop.orders",
                "filters": [{"property": "plan", "operator": "equals", "value": "pro"}],
                "logic": "or",
            },
        ]
    )
    assert steps[0] == FunnelStep("view")
    assert steps[1].source == "proj.shop.orders"
    assert steps[1].filters.logic is FilterLogic.OR


@pytest.mark.parametrize("count", [0, 1, 11])
def test_step_count_is_bounded(count) -> None:
    with pytest.raises(ConfigurationError):
        normalize_steps([FunnelStep(f"e{i}") for i in range(count)])


# ---------------------------------------------------------------------------
# Windowed single-source funnels


def _windowed_rows(rows, *, segment=None):
    frame = pd.DataFrame(rows, columns=["entity_id", "event_micros", "step_1", "step_2"])
    if segment is not None:
        frame.insert(2, "segment", segment)
    return frame


def _run(coro):
    return asyncio.run(coro)


STEPS = [FunnelStep("a"), FunnelStep("b")]


def test_windowed_funnel_counts_ordered_conversions(accessor, week) -> None:
    t0 = micros("2024-01-02T10:00:00")
    store = FakeEventStore(
        {
            "funnel_windowed": _windowed_rows(
                [
                    ("u1", t0, True, False),
                    ("u1", t0 + HOUR, False, True),
                    ("u2", t0, True, False),
                    ("u3", t0, False, True),
                    ("u3", t0 + HOUR, True, False),
                ]
            )
        }
    )
    results = _run(FunnelEngine(accessor, store).compute(STEPS, week))

    assert [r.metric_value for r in results] == [3.0, 1.0]
    assert results[0].conversion_rate == 100.0 and results[0].drop_off_rate == 0.0
    assert results[1].conversion_rate == pytest.approx(100 / 3)
    assert results[1].drop_off_rate == pytest.approx(200 / 3)
    assert store.labels == ["funnel_windowed"]


def test_windowed_funnel_two_entities(accessor, week) -> None:
    t0 = micros("2024-01-02T10:00:00")
    store = FakeEventStore(
        {
            "funnel_windowed": _windowed_rows(
                [
                    ("u1", t0, True, False),
                    ("u1", t0 + HOUR, False, True),
                    ("u3", t0, False, True),
                    ("u3", t0 + HOUR, True, False),
                ]
            )
        }
    )
    results = _run(
        FunnelEngine(accessor, store).compute(STEPS, week, metric=MetricSpec("unique_entities"))
    )
    assert [r.metric_value for r in results] == [2.0, 1.0]
    assert results[1].conversion_rate == 50.0
    assert results[1].drop_off_rate == 50.0


def test_windowed_funnel_sql(accessor, week) -> None:
    store = FakeEventStore()
    _run(FunnelEngine(accessor, store).compute(STEPS, week))

    (call,) = store.calls
    assert call.sql.startswith("SELECT CAST(`user_id` AS STRING) AS entity_id, `event_timestamp` AS event_micros")
    assert "IFNULL((`event_name` = 'a'), FALSE) AS step_1" in call.sql
    assert "IFNULL((`event_name` = 'b'), FALSE) AS step_2" in call.sql
    assert "FROM `proj.analytics.events`" in call.sql
    assert "(IFNULL(CAST(`user_id` AS STRING), '') != '')" in call.sql
    assert "(((`event_name` = 'a')) OR ((`event_name` = 'b')))" in call.sql


def test_windowed_funnel_with_no_rows_reports_zero(accessor, week) -> None:
    results = _run(FunnelEngine(accessor, FakeEventStore()).compute(STEPS, week))
    assert [(r.metric_value, r.conversion_rate, r.drop_off_rate) for r in results] == [
        (0.0, 100.0, 0.0),
        (0.0, 0.0, 0.0),
    ]


def test_default_window_is_seven_days(accessor, week) -> None:
    t0 = micros("2024-01-01T00:00:00")
    rows = _windowed_rows([("u1", t0, True, False), ("u1", t0 + 8 * DAY, False, True)])
    engine = FunnelEngine(accessor, FakeEventStore({"funnel_windowed": rows}))

    default = _run(engine.compute(STEPS, week))
    wider = _run(engine.compute(STEPS, week, time_window=timedelta(days=10)))
    in_seconds = _run(engine.compute(STEPS, week, time_window=10 * 24 * 3_600))

    assert default[1].metric_value == 0.0
    assert wider[1].metric_value == 1.0
    assert in_seconds[1].metric_value == 1.0


def test_sum_metric_counts_only_converted_rows(accessor, week) -> None:
    t0 = micros("2024-01-02T10:00:00")
    rows = pd.DataFrame(
        [
            ("u1", t0, "5", True, False),
            ("u1", t0 + HOUR, "20", False, True),
            ("u2", t0, "7", True, False),
            ("u2", t0 - HOUR, "100", False, True),
        ],
        columns=["entity_id", "event_micros", "metric_value", "step_1", "step_2"],
    )
    store = FakeEventStore({"funnel_windowed": rows})
    results = _run(
        FunnelEngine(accessor, store).compute(STEPS, week, metric=MetricSpec("sum", "price"))
    )
    assert [r.metric_value for r in results] == [12.0, 20.0]
    assert "CAST(`price` AS STRING) AS metric_value" in store.calls[0].sql


def test_too_few_steps_raises_before_any_query(accessor, week) -> None:
    store = FakeEventStore()
    with pytest.raises(ConfigurationError, match="at least 2 steps"):
        _run(FunnelEngine(accessor, store).compute([FunnelStep("a")], week))
    assert store.calls == []


def test_non_positive_window_is_rejected(accessor, week) -> None:
    store = FakeEventStore()
    with pytest.raises(ConfigurationError, match="time_window must be positive"):
        _run(FunnelEngine(accessor, store).compute(STEPS, week, time_window=0))
    assert store.calls == []


def test_store_errors_propagate(accessor, week) -> None:
    store = FakeEventStore({"funnel_windowed": StoreExecutionError("quota exceeded")})
    with pytest.raises(StoreExecutionError, match="quota exceeded"):
        _run(FunnelEngine(accessor, store).compute(STEPS, week))


# ---------------------------------------------------------------------------
# Sequential multi-source funnels

MULTI_SOURCE = [
    FunnelStep("signup", source="proj.app.events"),
    FunnelStep("checkout", source="proj.shop.events"),
    FunnelStep("purchase", source="proj.app.events"),
]


def _entities(*ids):
    return pd.DataFrame({"entity_id": list(ids)})


def _value(value):
    return pd.DataFrame({"value": [value]})


def test_multi_source_funnel_narrows_the_entity_set(accessor, week) -> None:
    store = FakeEventStore(
        {
            "funnel_entities_step_1": _entities("u1", "u2", "u3"),
            "funnel_metric_step_1": _value(3),
            "funnel_entities_step_2": _entities("u1", "u2", "u9"),
            "funnel_metric_step_2": _value(2),
            "funnel_entities_step_3": _entities("u1"),
            "funnel_metric_step_3": _value(1),
        }
    )
    results = _run(FunnelEngine(accessor, store).compute(MULTI_SOURCE, week))

    assert [r.metric_value for r in results] == [3.0, 2.0, 1.0]
    assert results[1].conversion_rate == pytest.approx(200 / 3)
    assert results[2].drop_off_rate == 50.0

    calls = {call.label: call for call in store.calls}
    assert calls["funnel_metric_step_1"].parameters == ()
    assert calls["funnel_entities_step_2"].entity_values == ["u1", "u2", "u3"]
    assert calls["funnel_metric_step_2"].entity_values == ["u1", "u2"]
    assert calls["funnel_entities_step_3"].entity_values == ["u1", "u2"]
    assert calls["funnel_metric_step_3"].entity_values == ["u1"]
    assert "FROM `proj.shop.events`" in calls["funnel_entities_step_2"].sql
    assert "IN UNNEST(@entities)" in calls["funnel_entities_step_2"].sql


def test_multi_source_funnel_stops_once_the_set_is_empty(accessor, week) -> None:
    store = FakeEventStore(
        {
            "funnel_entities_step_1": _entities("u1", "u2"),
            "funnel_metric_step_1": _value(2),
            "funnel_entities_step_2": _entities(),
        }
    )
    results = _run(FunnelEngine(accessor, store).compute(MULTI_SOURCE, week))

    assert [(r.metric_value, r.conversion_rate, r.drop_off_rate) for r in results] == [
        (2.0, 100.0, 0.0),
        (0.0, 0.0, 100.0),
        (0.0, 0.0, 100.0),
    ]
    assert sorted(store.labels) == [
        "funnel_entities_step_1",
        "funnel_entities_step_2",
        "funnel_metric_step_1",
    ]


def test_emptied_step_reports_full_drop_off_when_previous_metric_is_zero(accessor, week) -> None:
    store = FakeEventStore(
        {
            "funnel_entities_step_1": _entities("u1", "u2"),
            "funnel_metric_step_1": _value(0),
            "funnel_entities_step_2": _entities(),
        }
    )
    results = _run(
        FunnelEngine(accessor, store).compute(MULTI_SOURCE, week, metric=MetricSpec("sum", "price"))
    )

    assert [(r.metric_value, r.conversion_rate, r.drop_off_rate) for r in results] == [
        (0.0, 100.0, 0.0),
        (0.0, 0.0, 100.0),
        (0.0, 0.0, 100.0),
    ]


def test_multi_source_funnel_with_nobody_at_step_one(accessor, week) -> None:
    store = FakeEventStore()
    results = _run(FunnelEngine(accessor, store).compute(MULTI_SOURCE, week))
    assert [r.metric_value for r in results] == [0.0, 0.0, 0.0]
    assert store.labels == ["funnel_entities_step_1"]


# ---------------------------------------------------------------------------
# Breakdowns and periods


def test_windowed_breakdown_ranks_segments_and_drops_empty_ones(accessor, week) -> None:
    t0 = micros("2024-01-03T08:00:00")
    rows = pd.DataFrame(
        [
            ("u1", t0, "us", True, False),
            ("u1", t0 + HOUR, "us", False, True),
            ("u2", t0, "us", True, False),
            ("u3", t0, "no", True, False),
            ("u4", t0, "de", False, True),
        ],
        columns=["entity_id", "event_micros", "segment", "step_1", "step_2"],
    )
    store = FakeEventStore({"funnel_windowed": rows})
    breakdowns = _run(FunnelEngine(accessor, store).compute_breakdown(STEPS, week, "country"))

    assert [b.segment_name for b in breakdowns] == ["us", "no"]
    assert [s.metric_value for s in breakdowns[0].steps] == [2.0, 1.0]
    assert all(s.segment == "us" for s in breakdowns[0].steps)
    assert "CAST(`country` AS STRING) AS segment" in store.calls[0].sql


def test_breakdown_is_capped_at_twenty_segments(accessor, week) -> None:
    t0 = micros("2024-01-03T08:00:00")
    rows = pd.DataFrame(
        [(f"u{i}", t0, f"s{i:02d}", True, False) for i in range(25)],
        columns=["entity_id", "event_micros", "segment", "step_1", "step_2"],
    )
    store = FakeEventStore({"funnel_windowed": rows})
    breakdowns = _run(FunnelEngine(accessor, store).compute_breakdown(STEPS, week, "country"))

    assert len(breakdowns) == 20
    # equal step 1 values are ordered by name
    assert breakdowns[0].segment_name == "s00"
    assert breakdowns[-1].segment_name == "s19"


def test_breakdown_requires_a_property(accessor, week) -> None:
    store = FakeEventStore()
    with pytest.raises(ConfigurationError):
        _run(FunnelEngine(accessor, store).compute_breakdown(STEPS, week, []))
    assert store.calls == []


def test_multi_source_breakdown_evaluates_each_candidate_segment(accessor, week) -> None:
    def step_one(sql, parameters):
        return _entities("u1") if "'us'" in sql else _entities()

    store = FakeEventStore(
        {
            "funnel_segments": pd.DataFrame({"segment": ["us", "no"], "value": [5, 3]}),
            "funnel_entities_step_1": step_one,
            "funnel_metric_step_1": _value(1),
            "funnel_entities_step_2": _entities("u1"),
            "funnel_metric_step_2": _value(1),
            "funnel_entities_step_3": _entities("u1"),
            "funnel_metric_step_3": _value(1),
        }
    )
    breakdowns = _run(
        FunnelEngine(accessor, store).compute_breakdown(MULTI_SOURCE, week, "country")
    )

    assert [b.segment_name for b in breakdowns] == ["us"]
    assert [s.metric_value for s in breakdowns[0].steps] == [1.0, 1.0, 1.0]
    segments_sql = next(c.sql for c in store.calls if c.label == "funnel_segments")
    assert "LIMIT 20" in segments_sql
    step_one_sql = [c.sql for c in store.calls if c.label == "funnel_entities_step_1"]
    assert any("CAST(`country` AS STRING) = 'no'" in sql for sql in step_one_sql)


def test_funnel_by_period_runs_one_funnel_per_day(accessor, week) -> None:
    store = FakeEventStore()
    periods = _run(FunnelEngine(accessor, store).compute_by_period(STEPS, week, "daily"))

    assert len(periods) == 7
    assert periods[0].period == "2024-01-01"
    assert periods[0].period_label == "Jan 1"
    assert all(len(p.steps) == 2 for p in periods)
    assert store.labels == ["funnel_windowed"] * 7
    assert any(
        "BETWEEN DATE '2024-01-03' AND DATE '2024-01-03'" in call.sql for call in store.calls
    )


def test_funnel_by_period_rejects_unknown_granularity(accessor, week) -> None:
    store = FakeEventStore()
    with pytest.raises(ConfigurationError):
        _run(FunnelEngine(accessor, store).compute_by_period(STEPS, week, "hourly"))
    assert store.calls == []
