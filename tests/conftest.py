"""Shared fixtures: an in-memory event store and a flat test schema."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Union

import pandas as pd
import pytest

from bqinsights.core.schema import PropertyAccessor, PropertyStorage, SchemaConfig, UserIdentifier
from bqinsights.core.types import DateRange

Handler = Callable[[str, Sequence[object]], pd.DataFrame]
Response = Union[pd.DataFrame, BaseException, Handler]


@dataclass
class RecordedQuery:
    sql: str
    label: str
    parameters: tuple[object, ...]

    @property
    def entity_values(self) -> list[str]:
        """Values of the ``@entities`` array parameter, if one was sent."""

        for parameter in self.parameters:
            if getattr(parameter, "name", None) == "entities":
                return list(parameter.values)
        return []


class FakeEventStore:
    """Answers queries by label and records every call.

    A response is a dataframe, an exception to raise, or a callable receiving
    ``(sql, parameters)``.  Unknown labels answer with an empty dataframe.
    """

    def __init__(self, responses: Mapping[str, Response] | None = None) -> None:
        self.responses: dict[str, Response] = dict(responses or {})
        self.calls: list[RecordedQuery] = []

    @property
    def labels(self) -> list[str]:
        return [call.label for call in self.calls]

    async def execute(self, sql: str, *, label: str, parameters: Sequence[object] = ()) -> pd.DataFrame:
        self.calls.append(RecordedQuery(sql, label, tuple(parameters)))
        response = self.responses.get(label)
        if response is None:
            return pd.DataFrame()
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(sql, parameters)
        return response.copy()


@pytest.fixture
def schema() -> SchemaConfig:
    return SchemaConfig(
        table_id="proj.analytics.events",
        user_identifier=UserIdentifier(type="single", column="user_id"),
        properties=PropertyStorage(type="flat"),
    )


@pytest.fixture
def accessor(schema: SchemaConfig) -> PropertyAccessor:
    return PropertyAccessor(schema)


@pytest.fixture
def week() -> DateRange:
    return DateRange(date(2024, 1, 1), date(2024, 1, 7))


@pytest.fixture
def store() -> FakeEventStore:
    return FakeEventStore()


def micros(value: str) -> int:
    """Microseconds since the epoch for an ISO timestamp (UTC)."""

    return int(pd.Timestamp(value, tz="UTC").value // 1_000)
