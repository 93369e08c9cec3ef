"""
Sequential delivery queue.

Runs asynchronous units of work strictly one at a time, in submission order,
no matter how fast new units are pushed.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

logger = logging.getLogger(__name__)


@dataclass
class DeliveryUnit:
    """One unit of work and the action to run if it fails."""
    execute: Callable[[], Awaitable[None]]
    on_error: Callable[[Exception], Any]


class TaskQueue:
    """
    Single-lane FIFO executor.

    After a unit succeeds the next pending unit starts immediately. After a
    unit fails its ``on_error`` is invoked and the queue stops advancing on
    its own: pending units stay put until ``clear()`` or the next ``push()``.

    Thread Safety: NOT thread-safe. Use from one event loop.
    """

    def __init__(self):
        self._pending: Deque[DeliveryUnit] = deque()
        self._current: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def busy(self) -> bool:
        """True while a unit is running (or its failure action is)."""
        return self._current is not None

    def push(self, unit: DeliveryUnit) -> None:
        """Append a unit; start it right away if nothing is running."""
        self._pending.append(unit)
        if self._current is None:
            self._next()

    def clear(self) -> None:
        """Drop units that have not started. A running unit is left alone."""
        if self._pending:
            logger.debug(f"Dropping {len(self._pending)} pending deliveries")
        self._pending.clear()

    def resume(self) -> None:
        """Start the head pending unit if nothing is running (e.g. after a failure)."""
        if self._current is None:
            self._next()

    async def join(self) -> None:
        """Wait until the running unit, and everything after it, has settled."""
        while self._current is not None:
            await asyncio.shield(self._current)

    def _next(self) -> None:
        if not self._pending:
            return
        unit = self._pending.popleft()
        self._current = asyncio.ensure_future(self._run(unit))

    async def _run(self, unit: DeliveryUnit) -> None:
        try:
            await unit.execute()
        except asyncio.CancelledError:
            self._current = None
            raise
        except Exception as e:
            try:
                result = unit.on_error(e)
                if inspect.isawaitable(result):
                    await result
            finally:
                self._current = None
            return

        self._current = None
        self._next()
