"""Optional result caching keyed by request shape."""

from __future__ import annotations

import copy
import hashlib
import logging
from typing import Any, Protocol, runtime_checkable

__all__ = ["AnalyticsCache", "InMemoryCache", "make_cache_key"]

logger = logging.getLogger(__name__)

_KEY_PREFIX = "bqinsights"


@runtime_checkable
class AnalyticsCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def invalidate_all(self) -> None: ...


def make_cache_key(operation: str, *request: object) -> str:
    """Return a stable key for ``operation`` applied to ``request``.

    Requests are frozen dataclasses, enums, dates and tuples, all of which
    have a deterministic ``repr``.
    """

    digest = hashlib.sha256(repr(request).encode("utf-8")).hexdigest()
    return f"{_KEY_PREFIX}:{operation}:{digest}"


class InMemoryCache:
    """Process-local cache without expiry; entries live until invalidated.

    Values are copied on the way in and out so callers mutating a result do
    not affect later hits.
    """

    def __init__(self) -> None:
        self._entries: dict[str, Any] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        value = self._entries.get(key)
        return None if value is None else copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = copy.deepcopy(value)

    def invalidate_all(self) -> None:
        logger.info("Clearing %d cached analytics results", len(self._entries))
        self._entries.clear()
