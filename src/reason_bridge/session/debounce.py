# File: reason_bridge/session/debounce.py

"""Trailing-edge debouncing for coroutine functions.

A `Debounced` wrapper collapses every call made within `wait` seconds of the
previous one into a single execution, run once the calls stop, with the
arguments of the last call.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class Debounced:
    """Wraps `func` so that bursts of calls run it once, on the trailing edge.

    Attributes:
        func: The coroutine function to run.
        wait (float): Quiet period in seconds before the last call executes.
    """

    def __init__(self, func: Callable[..., Awaitable[Any]], wait: float):
        self.func = func
        self.wait = wait
        self._handle: Optional[asyncio.TimerHandle] = None
        self._args: Optional[Tuple[Any, ...]] = None
        self._running: Set[asyncio.Task] = set()

    def __call__(self, *args: Any) -> None:
        """Schedules `func(*args)`, superseding any call still waiting."""
        if self._handle is not None:
            self._handle.cancel()
        self._args = args
        self._handle = asyncio.get_running_loop().call_later(self.wait, self._fire)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def pending_args(self) -> Optional[Tuple[Any, ...]]:
        return self._args

    def cancel(self) -> None:
        """Drops the waiting call, if any. Executions already started continue."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._args = None

    def _fire(self) -> None:
        args = self._args or ()
        self._handle = None
        self._args = None
        task = asyncio.ensure_future(self.func(*args))
        self._running.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Debounced call to {getattr(self.func, '__name__', self.func)} failed: {exc!r}")

    async def wait_idle(self) -> None:
        """Waits for executions that have already fired to finish."""
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
