"""Cancellable fixed-interval tasks bound to a playback context."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from contextlib import suppress

logger = logging.getLogger(__name__)


class RepeatingTask:
    """
    Runs a coroutine function on a fixed interval until stopped.

    The task is bound to a context, e.g. ``(queue_id, provider_name)``. Whoever owns the
    task must stop it before starting a task for a different context, so that a poller
    of an abandoned track or provider never reports stale positions. Exceptions raised by
    the callback are logged and the task keeps running.
    """

    _task: asyncio.Task[None] | None = None

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        context: Hashable = None,
    ) -> None:
        """
        Create a stopped repeating task.

        Args:
            name: Name used in log messages and for the asyncio task.
            interval: Seconds between the end of one run and the start of the next.
            callback: Coroutine function run on every tick.
            context: The playback context this task belongs to.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._interval = interval
        self._callback = callback
        self._context = context

    @property
    def context(self) -> Hashable:
        """The playback context this task belongs to."""
        return self._context

    @property
    def running(self) -> bool:
        """Whether the task is scheduled."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking, the first run happens immediately."""
        if self.running:
            return
        logger.debug("Starting %s for %s", self._name, self._context)
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        """Stop ticking and wait until a run in progress has been cancelled."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        logger.debug("Stopping %s for %s", self._name, self._context)
        task.cancel()
        if task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in %s", self._name)
            await asyncio.sleep(self._interval)
