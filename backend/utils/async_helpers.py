"""
Async utility functions for blocking operations.

HTTP calls, DuckDB writes and image/video transforms are blocking; these
helpers move them onto a shared thread pool so node executors never stall
the event loop.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Any

logger = logging.getLogger(__name__)

# Shared pool for blocking I/O (requests, DuckDB, PIL, OpenCV)
_io_thread_pool = None
_IO_POOL_SIZE = 8


def get_io_thread_pool() -> ThreadPoolExecutor:
    """
    Get or create the global blocking I/O thread pool.

    Returns:
        ThreadPoolExecutor configured for blocking operations
    """
    global _io_thread_pool
    if _io_thread_pool is None:
        _io_thread_pool = ThreadPoolExecutor(
            max_workers=_IO_POOL_SIZE,
            thread_name_prefix="io_worker"
        )
        logger.info("Initialized blocking I/O thread pool with %d workers", _IO_POOL_SIZE)
    return _io_thread_pool


async def run_in_thread(func: Callable, *args, **kwargs) -> Any:
    """
    Run a blocking function in the shared thread pool.

    Args:
        func: Blocking function to execute
        *args: Positional arguments for the function
        **kwargs: Keyword arguments for the function

    Returns:
        Result from the function execution
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        get_io_thread_pool(),
        lambda: func(*args, **kwargs)
    )


def shutdown_thread_pools():
    """
    Shutdown all thread pools gracefully.

    Should be called on application shutdown.
    """
    global _io_thread_pool
    if _io_thread_pool:
        logger.info("Shutting down blocking I/O thread pool...")
        _io_thread_pool.shutdown(wait=True)
        _io_thread_pool = None
