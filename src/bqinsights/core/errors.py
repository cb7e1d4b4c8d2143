"""Exception hierarchy shared by the analytics engines."""

from __future__ import annotations

__all__ = ["AnalyticsError", "ConfigurationError", "StoreExecutionError"]


class AnalyticsError(Exception):
    """Base class for every error raised by :mod:`bqinsights`."""


class ConfigurationError(AnalyticsError, ValueError):
    """An analysis request is invalid.

    Always raised before any query is dispatched to the event store.
    """


class StoreExecutionError(AnalyticsError):
    """The event store failed to execute a query.

    The message is the store's own message; the original exception is chained.
    """
