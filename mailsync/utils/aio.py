"""
Helpers for running blocking library calls from asyncio code.
"""
import asyncio
import functools
from typing import Any, Callable, TypeVar

from mailsync.utils.errors import TransportError

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """
    Run a blocking call in a worker thread, bounded by `timeout` seconds.

    A timeout is reported as TransportError, the same as any other network
    failure. The worker thread itself cannot be interrupted; its late result
    is discarded.
    """
    call = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(asyncio.to_thread(call), timeout)
    except asyncio.TimeoutError as e:
        name = getattr(func, "__name__", repr(func))
        raise TransportError(f"{name} timed out after {timeout:.0f}s") from e
