"""Idle-session cleanup.

Runs periodically: warns sessions approaching the idle timeout, times
out the ones past it (killing the process but keeping the record so a
🔄 reaction can resume them), and expires old history records.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .models import utcnow

if TYPE_CHECKING:
    from .models import Session
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)


def timeout_message(idle_seconds: float) -> str:
    return (
        f"⏰ **Session timed out** after {round(idle_seconds / 60)} minutes of inactivity\n\n"
        "💡 React with 🔄 to resume, or send a new message to continue."
    )


def warning_message(remaining_seconds: float) -> str:
    return (
        f"⏰ **Session idle** - will timeout in ~{max(1, round(remaining_seconds / 60))} "
        "minutes without activity"
    )


class CleanupScheduler:
    """Background sweep over the registry's live sessions."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._config = registry.ctx.config
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-cleanup")
        logger.info(
            "Cleanup scheduler started (interval=%.0fs, timeout=%.0fs)",
            self._config.cleanup_interval_seconds, self._config.session_timeout_seconds,
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.cleanup_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                logger.info("Cleanup scheduler stopped")
                return
            except Exception:
                logger.exception("Cleanup sweep error")

    async def sweep(self) -> None:
        """One pass over live sessions, then the history retention sweep."""
        timeout = self._config.session_timeout_seconds
        warn_at = timeout - self._config.session_warning_seconds
        now = utcnow()
        for session in self._registry.list_active():
            idle = (now - session.last_activity_at).total_seconds()
            if idle > timeout:
                await self._time_out(session, idle)
            elif idle > warn_at and not session.timeout_warning_posted:
                session.timeout_warning_posted = True
                try:
                    await session.platform.create_post(
                        warning_message(timeout - idle), session.thread_id,
                    )
                except Exception as exc:
                    logger.warning("Could not post idle warning to %s: %s", session.short_id, exc)
        self._registry.store.clean_history(self._config.history_retention_seconds)

    async def _time_out(self, session: Session, idle: float) -> None:
        logger.info("Session %s timed out after %.0fs idle", session.short_id, idle)
        platform = session.platform
        message = timeout_message(idle)
        try:
            if session.timeout_post_id:
                await platform.update_post(session.timeout_post_id, message)
            else:
                post = await platform.create_post(message, session.thread_id)
                session.timeout_post_id = post.id
                self._registry.index_post(post.id, session)
        except Exception as exc:
            logger.warning("Could not post timeout notice to %s: %s", session.short_id, exc)
        controller = self._registry.controller
        controller.persist(session)
        await controller.kill_session(session, unpersist=False)
