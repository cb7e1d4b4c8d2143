"""Common plumbing shared by the analytics engines."""

from __future__ import annotations

import logging
from collections.abc import Coroutine, Sequence
from typing import Any, TypeVar

import pandas as pd

from .schema import PropertyAccessor
from .store import EventStore, QueryParameter
from .tasks import gather_required

__all__ = ["BaseEngine"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BaseEngine:
    """Holds the property accessor and event store an engine queries through.

    Engines keep no per-request state, so one instance can serve concurrent
    requests.
    """

    def __init__(
        self,
        accessor: PropertyAccessor,
        store: EventStore,
        *,
        max_concurrency: int | None = None,
    ) -> None:
        self.accessor = accessor
        self.store = store
        self.max_concurrency = max_concurrency

    async def _fetch(
        self, sql: str, *, label: str, parameters: Sequence[QueryParameter] = ()
    ) -> pd.DataFrame:
        sql = sql.strip()
        logger.debug("%s: dispatching %s", type(self).__name__, label)
        return await self.store.execute(sql, label=label, parameters=parameters)

    async def _gather(self, *coros: Coroutine[Any, Any, T]) -> list[T]:
        return await gather_required(*coros, limit=self.max_concurrency)
