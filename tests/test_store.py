"""Tests for the BigQuery-backed event store."""

from __future__ import annotations

import asyncio
import threading

import pandas as pd
import pytest
from google.api_core import exceptions as api_exceptions
from google.cloud import bigquery

from bqinsights.core.errors import StoreExecutionError
from bqinsights.core.query_helpers import entity_set_parameter
from bqinsights.core.store import LABEL_KEY, BigQueryEventStore, _job_label


class _FakeResult:
    def __init__(self, frame: pd.DataFrame) -> None:
        self._frame = frame

    def to_dataframe(self) -> pd.DataFrame:
        return self._frame


class _FakeQueryJob:
    job_id = "job-1"

    def __init__(self, frame: pd.DataFrame) -> None:
        self._frame = frame
        self.cancelled = False

    def result(self) -> _FakeResult:
        return _FakeResult(self._frame)

    def cancel(self) -> None:
        self.cancelled = True


class _FakeClient:
    def __init__(self, frame: pd.DataFrame | None = None, error: Exception | None = None) -> None:
        self.frame = frame if frame is not None else pd.DataFrame({"value": [1]})
        self.error = error
        self.queries: list[tuple[str, bigquery.QueryJobConfig]] = []

    def query(self, sql: str, job_config: bigquery.QueryJobConfig) -> _FakeQueryJob:
        self.queries.append((sql, job_config))
        if self.error is not None:
            raise self.error
        return _FakeQueryJob(self.frame)


def test_execute_returns_the_result_frame() -> None:
    client = _FakeClient(pd.DataFrame({"value": [42]}))
    store = BigQueryEventStore(client)
    parameter = entity_set_parameter({"b", "a"})

    df = asyncio.run(store.execute("SELECT 1", label="funnel_metric_step_2", parameters=[parameter]))

    assert df["value"].tolist() == [42]
    ((sql, job_config),) = client.queries
    assert sql == "SELECT 1"
    assert job_config.labels == {LABEL_KEY: "funnel_metric_step_2"}
    (sent,) = job_config.query_parameters
    assert sent.name == "entities"
    assert sent.values == ["a", "b"]


def test_api_errors_become_store_execution_errors() -> None:
    store = BigQueryEventStore(_FakeClient(error=api_exceptions.BadRequest("Syntax error at [1:8]")))
    with pytest.raises(StoreExecutionError, match="Syntax error") as raised:
        asyncio.run(store.execute("SELEC 1", label="trend_1"))
    assert isinstance(raised.value.__cause__, api_exceptions.BadRequest)


def test_job_labels_are_sanitized() -> None:
    assert _job_label("Trend Breakdown/1") == "trend_breakdown_1"
    assert len(_job_label("x" * 100)) == 63


class _BlockingQueryJob(_FakeQueryJob):
    def __init__(self, frame: pd.DataFrame) -> None:
        super().__init__(frame)
        self.waiting = threading.Event()
        self.released = threading.Event()

    def result(self) -> _FakeResult:
        self.waiting.set()
        self.released.wait(timeout=5)
        return super().result()

    def cancel(self) -> None:
        super().cancel()
        self.released.set()


class _BlockingClient(_FakeClient):
    def query(self, sql: str, job_config: bigquery.QueryJobConfig) -> _FakeQueryJob:
        self.job = _BlockingQueryJob(self.frame)
        self.queries.append((sql, job_config))
        return self.job


def test_cancelling_execute_cancels_the_running_job() -> None:
    client = _BlockingClient()
    store = BigQueryEventStore(client)

    async def scenario() -> None:
        task = asyncio.create_task(store.execute("SELECT 1", label="trend_1"))
        while not (client.queries and client.job.waiting.is_set()):
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert client.job.cancelled
