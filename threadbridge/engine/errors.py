"""Exception hierarchy for the session bridge.

Specific exceptions for each failure mode. Never bare
`except Exception` without justification.
"""
from __future__ import annotations

from enum import Enum


class ErrorSeverity(str, Enum):
    """How far a failure is allowed to propagate."""
    RECOVERABLE = "recoverable"
    SESSION_FATAL = "session_fatal"
    SYSTEM_FATAL = "system_fatal"


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class SessionStartError(BridgeError):
    """The agent process for a session could not be launched."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to start session {session_id}: {reason}")


class SessionResumeError(BridgeError):
    """A persisted session failed validation and cannot be resumed."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Cannot resume session {session_id}: {reason}")


class AdmissionRejectedError(BridgeError):
    """The concurrency cap is reached; new sessions are refused."""
    def __init__(self, active: int, limit: int):
        self.active = active
        self.limit = limit
        super().__init__(f"Concurrency limit: {active}/{limit} sessions active")


class SessionConflictError(BridgeError):
    """A live session is already registered under the same id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session already registered: {session_id}")


class ProcessNotRunningError(BridgeError):
    """Attempted to talk to an agent process that is not running."""
    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        suffix = f" for {session_id}" if session_id else ""
        super().__init__(f"Agent process not running{suffix}")


class StoreError(BridgeError):
    """The session store file could not be read or written."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Session store {path}: {reason}")


class SessionError(BridgeError):
    """An operation inside a session's handler failed.

    Carries the severity so callers can decide whether to continue,
    tear down the session, or abort the process.
    """
    def __init__(
        self,
        action: str,
        message: str,
        session_id: str | None = None,
        severity: ErrorSeverity = ErrorSeverity.RECOVERABLE,
        cause: BaseException | None = None,
    ):
        self.action = action
        self.session_id = session_id
        self.severity = severity
        self.cause = cause
        where = f" [{session_id}]" if session_id else ""
        super().__init__(f"{action} failed{where}: {message}")
