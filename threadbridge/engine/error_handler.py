"""Severity-aware error handling for session handlers.

Recoverable failures are logged and swallowed so one bad platform call
never takes down a sibling session. Session-fatal and system-fatal
failures are logged and re-raised as SessionError.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import BridgeError, ErrorSeverity, SessionError

if TYPE_CHECKING:
    from .models import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def handle_error(
    error: BaseException,
    action: str,
    *,
    session: Session | None = None,
    severity: ErrorSeverity = ErrorSeverity.RECOVERABLE,
    notify_user: bool = False,
    details: dict[str, Any] | None = None,
) -> None:
    """Log ``error`` and apply the severity policy.

    Args:
        error: The exception that was caught.
        action: Human-readable description of what failed.
        session: Session the failure belongs to, if any.
        severity: Recoverable errors are swallowed; anything else is
            re-raised as SessionError.
        notify_user: Post a short notice to the session's thread.
        details: Extra context, logged at debug level.

    Raises:
        SessionError: When severity is not RECOVERABLE.
    """
    where = f" ({session.short_id})" if session is not None else ""
    if severity is ErrorSeverity.RECOVERABLE:
        logger.warning("%s%s: %s", action, where, error)
    else:
        logger.error("%s%s: %s", action, where, error, exc_info=error)
    if details:
        logger.debug("Error details for %s: %r", action, details)

    if notify_user and session is not None:
        try:
            await session.platform.create_post(
                f"⚠️ **Error**: {action} failed. Please try again.",
                session.thread_id,
            )
        except Exception as notify_exc:
            logger.warning("Could not notify user: %s", notify_exc)

    if severity is not ErrorSeverity.RECOVERABLE:
        if isinstance(error, SessionError):
            raise error
        raise SessionError(
            action,
            str(error),
            session_id=session.session_id if session is not None else None,
            severity=severity,
            cause=error,
        ) from error


async def try_operation(
    operation: Callable[[], Awaitable[T]],
    action: str,
    *,
    session: Session | None = None,
    severity: ErrorSeverity = ErrorSeverity.RECOVERABLE,
    notify_user: bool = False,
) -> T | None:
    """Await ``operation()``; route any failure through handle_error.

    Returns the operation's result, or None if it failed recoverably.
    """
    try:
        return await operation()
    except Exception as exc:
        await handle_error(
            exc, action, session=session, severity=severity, notify_user=notify_user,
        )
        return None


def format_error_for_user(error: BaseException) -> str:
    """Short, user-facing description of an error (no traceback)."""
    if isinstance(error, SessionError):
        return f"{error.action} failed"
    if isinstance(error, BridgeError):
        return str(error)
    if isinstance(error, FileNotFoundError):
        return "A required file or directory was not found"
    if isinstance(error, (TimeoutError, ConnectionError)):
        return "The chat service did not respond in time"
    return "An unexpected error occurred"
