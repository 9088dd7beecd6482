"""
Cancellation helper.

Every backend call takes an optional asyncio.Event. When the event fires the
in-flight request task is cancelled and PipelineCancelled is raised.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import PipelineCancelled

T = TypeVar("T")


def raise_if_cancelled(cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled("Run cancelled")


async def run_cancellable(awaitable: Awaitable[T], cancel: Optional[asyncio.Event]) -> T:
    """Await `awaitable`, aborting it as soon as `cancel` is set."""
    if cancel is None:
        return await awaitable

    raise_if_cancelled(cancel)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise PipelineCancelled("Run cancelled during backend call")
