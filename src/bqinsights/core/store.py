"""Event store adapter backed by BigQuery."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Protocol, TypeAlias

import pandas as pd
from google.api_core import exceptions as api_exceptions
from google.cloud import bigquery

from .errors import StoreExecutionError

__all__ = ["BigQueryEventStore", "EventStore", "QueryParameter"]

logger = logging.getLogger(__name__)

QueryParameter: TypeAlias = bigquery.ScalarQueryParameter | bigquery.ArrayQueryParameter

LABEL_KEY = "bqinsights_query"


class EventStore(Protocol):
    """Anything able to run a SQL query and return its rows as a dataframe."""

    async def execute(
        self, sql: str, *, label: str, parameters: Sequence[QueryParameter] = ()
    ) -> pd.DataFrame: ...


def _job_label(label: str) -> str:
    return re.sub(r"[^a-z0-9_-]", "_", label.lower())[:63]


class BigQueryEventStore:
    """Runs queries through a :class:`google.cloud.bigquery.Client`.

    The blocking client call happens in a worker thread.  If the awaiting task
    is cancelled the BigQuery job is cancelled too.
    """

    def __init__(self, client: bigquery.Client | None = None) -> None:
        self.client = client or bigquery.Client()

    def _run(
        self,
        sql: str,
        label: str,
        parameters: Sequence[QueryParameter],
        started: list[bigquery.QueryJob],
    ) -> pd.DataFrame:
        job_config = bigquery.QueryJobConfig(
            query_parameters=list(parameters),
            labels={LABEL_KEY: _job_label(label)},
        )
        job = self.client.query(sql, job_config=job_config)
        started.append(job)
        return job.result().to_dataframe()

    async def execute(
        self, sql: str, *, label: str, parameters: Sequence[QueryParameter] = ()
    ) -> pd.DataFrame:
        logger.debug("Running %s query:\n%s", label, sql)
        started: list[bigquery.QueryJob] = []
        try:
            return await asyncio.to_thread(self._run, sql, label, parameters, started)
        except asyncio.CancelledError:
            for job in started:
                self._cancel(job)
            raise
        except api_exceptions.GoogleAPIError as exc:
            raise StoreExecutionError(str(exc)) from exc

    @staticmethod
    def _cancel(job: bigquery.QueryJob) -> None:
        try:
            job.cancel()
        except api_exceptions.GoogleAPIError:
            logger.warning("Could not cancel BigQuery job %s", job.job_id, exc_info=True)
        else:
            logger.debug("Cancelled BigQuery job %s", job.job_id)
