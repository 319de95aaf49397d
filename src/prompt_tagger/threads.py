"""Blocking calls run in worker threads that are never abandoned mid-call."""

import asyncio
import contextlib
from collections.abc import Callable
from typing import TypeVar

from loguru import logger


T = TypeVar("T")


async def run_in_thread(func: Callable[..., T], /, *args: object) -> T:
    """
    Run ``func(*args)`` in a worker thread and return its result.

    Unlike a bare ``asyncio.to_thread`` await, a cancelled caller keeps waiting
    until the thread has finished before the cancellation is re-raised. Locks
    held by the caller and cleanup in its ``finally`` blocks therefore never
    overlap with the blocking call.

    Examples:
        >>> asyncio.run(run_in_thread(sum, [1, 2, 3]))
        6

    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        while not task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug("cancelled_thread_call_failed", func=getattr(func, "__name__", repr(func)))
        raise
