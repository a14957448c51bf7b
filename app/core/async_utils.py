"""
Async utilities for wrapping synchronous database calls.

The ledger and queue services are synchronous SQLAlchemy code; the API
handlers and the worker loops reach them through run_sync() so a slow
transaction never blocks the event loop.
"""

import asyncio
import functools
import logging
import time
from typing import TypeVar, Callable, Any

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, timeout: float = 30, **kwargs: Any
) -> T:
    """
    Run a synchronous function in a worker thread.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Maximum seconds to wait (default 30).
        **kwargs: Keyword arguments forwarded to func.

    Raises:
        TimeoutError: If execution exceeds the timeout. The thread is not
            interrupted; the transaction it runs still commits or rolls back.
        Exception: Any exception raised by func propagates unchanged.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    call = functools.partial(func, *args, **kwargs) if kwargs else functools.partial(func, *args)
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        raise TimeoutError(f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)")
    logger.debug("run_sync %s completed in %.2fms", name, (time.perf_counter() - start) * 1000)
    return result
