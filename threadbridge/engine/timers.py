"""Per-session cancellable timers.

Debounced flushes, typing indicators and status refreshes all run as
named asyncio tasks held here. Teardown calls ``cancel_all()`` so that
nothing fires against a session that is no longer registered.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class SessionTimers:
    """Named one-shot and periodic tasks belonging to a single session."""

    def __init__(self, owner: str = "") -> None:
        self._owner = owner
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active(self) -> list[str]:
        """Names of timers that are still pending."""
        return [name for name, task in self._tasks.items() if not task.done()]

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def schedule(self, name: str, delay: float, callback: TimerCallback) -> bool:
        """Run ``callback`` once after ``delay`` seconds.

        Returns False (and does nothing) when a timer with the same name
        is already pending.
        """
        if self.is_scheduled(name):
            return False
        self._tasks[name] = asyncio.create_task(
            self._run_once(name, delay, callback),
            name=f"{self._owner}:{name}",
        )
        return True

    def every(
        self,
        name: str,
        interval: float,
        callback: TimerCallback,
        *,
        immediate: bool = False,
    ) -> bool:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        if self.is_scheduled(name):
            return False
        self._tasks[name] = asyncio.create_task(
            self._run_periodic(name, interval, callback, immediate),
            name=f"{self._owner}:{name}",
        )
        return True

    def cancel(self, name: str) -> bool:
        """Cancel one timer. Returns True if something was pending."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every pending timer for this session."""
        current = asyncio.current_task()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            # A timer callback may itself trigger teardown.
            if task is not current and not task.done():
                task.cancel()
        if tasks:
            logger.debug("Cancelled %d timer(s) for %s", len(tasks), self._owner)

    async def _run_once(
        self, name: str, delay: float, callback: TimerCallback,
    ) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer %s failed for %s", name, self._owner)

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        callback: TimerCallback,
        immediate: bool,
    ) -> None:
        if immediate:
            await self._invoke(name, callback)
        # Stops once cancel_all() has dropped it, even from inside its own callback.
        while self._tasks.get(name) is asyncio.current_task():
            await asyncio.sleep(interval)
            await self._invoke(name, callback)

    async def _invoke(self, name: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic timer %s failed for %s", name, self._owner)
