"""
Blocking Operation Dispatcher

Runs archive-library calls (open, enumerate, search, read) on a dedicated
thread pool so a slow search or a huge archive open never stalls the event
loop that accepts and routes requests.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)


class BlockingDispatcher:

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="zim-blocking")

    async def run(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run fn(*args, **kwargs) on the blocking pool and await its result.

        Exceptions raised by fn propagate unchanged, so callers can tell
        archive-open, query and lookup failures apart.
        """
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args, **kwargs)
        return await loop.run_in_executor(self._executor, call)

    def shutdown(self, wait: bool = True) -> None:
        logger.info("[dispatcher] Shutting down blocking pool (%d workers)", self.max_workers)
        self._executor.shutdown(wait=wait)
