"""Structured fan-out helpers used by the engines."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Coroutine
from typing import Any, TypeVar

__all__ = ["gather_required", "run_optional"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _first_leaf(group: BaseExceptionGroup) -> BaseException:
    first = group.exceptions[0]
    while isinstance(first, BaseExceptionGroup):
        first = first.exceptions[0]
    return first


async def gather_required(
    *coros: Coroutine[Any, Any, T], limit: int | None = None
) -> list[T]:
    """Run ``coros`` concurrently and return their results in order.

    The first failure cancels the siblings and is re-raised as-is (not wrapped
    in an exception group).  ``limit`` bounds how many run at once.
    """

    semaphore = asyncio.Semaphore(limit) if limit else None

    async def _bounded(coro: Coroutine[Any, Any, T]) -> T:
        if semaphore is None:
            return await coro
        try:
            await semaphore.acquire()
        except BaseException:
            # cancelled while queued: coro never started
            coro.close()
            raise
        try:
            return await coro
        finally:
            semaphore.release()

    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(_bounded(coro)) for coro in coros]
    except BaseExceptionGroup as errors:
        raise _first_leaf(errors) from None
    return [task.result() for task in tasks]


async def run_optional(aw: Awaitable[T], *, default: T, what: str) -> T:
    """Await ``aw``; log and return ``default`` if it fails.

    Only ``Exception`` is swallowed so cancellation still propagates.
    """

    try:
        return await aw
    except Exception:
        logger.warning("Optional %s failed, continuing without it", what, exc_info=True)
        return default
