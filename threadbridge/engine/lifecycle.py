"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STARTING ──> ACTIVE <──> AWAITING_INPUT
       │           │              │
       │           ├──────────────┴──> PAUSED_INTERRUPTED
       │           ├─────────────────> EXITED_NORMAL
       │           ├─────────────────> EXITED_RETRYABLE
       │           └─────────────────> EXITED_PERMANENT
       │
       └──> AWAITING_INPUT  (first message held for a workspace prompt)

    Any live state ──> EXITED_*  (process exit or kill)

Terminal states always remove the session from the registry; they differ
only in what happens to the persisted record. ``classify_exit`` picks the
terminal disposition for a process exit.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import SessionState

_LIVE = {SessionState.STARTING, SessionState.ACTIVE, SessionState.AWAITING_INPUT}
_EXITS = {
    SessionState.PAUSED_INTERRUPTED,
    SessionState.EXITED_NORMAL,
    SessionState.EXITED_RETRYABLE,
    SessionState.EXITED_PERMANENT,
}

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.STARTING: {
        SessionState.ACTIVE,
        SessionState.AWAITING_INPUT,
        *_EXITS,
    },
    SessionState.ACTIVE: {
        SessionState.AWAITING_INPUT,
        *_EXITS,
    },
    SessionState.AWAITING_INPUT: {
        SessionState.ACTIVE,
        *_EXITS,
    },
    SessionState.PAUSED_INTERRUPTED: set(),
    SessionState.EXITED_NORMAL: set(),
    SessionState.EXITED_RETRYABLE: set(),
    SessionState.EXITED_PERMANENT: set(),
}

TERMINAL_STATES: frozenset[SessionState] = frozenset(_EXITS)


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Raise ValueError if the transition is not allowed."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
        )


def is_live(state: SessionState) -> bool:
    return state in _LIVE


class ExitAction(str, Enum):
    """What the controller does with a session whose process exited."""
    RESTARTING = "restarting"
    SHUTDOWN = "shutdown"
    PAUSE = "pause"
    DROP_INTERRUPTED = "drop_interrupted"
    DROP_NO_RESPONSE = "drop_no_response"
    PERMANENT_FAILURE = "permanent_failure"
    RETRY_EXHAUSTED = "retry_exhausted"
    RETRY_LATER = "retry_later"
    NORMAL = "normal"
    NORMAL_ERROR = "normal_error"


@dataclass(frozen=True)
class ExitDisposition:
    """Outcome of ``classify_exit``.

    ``state`` is the terminal state to enter (None when the session is
    being replaced or the process is shutting down), ``resume_fail_count``
    the counter value to store.
    """
    action: ExitAction
    state: SessionState | None
    resume_fail_count: int


def classify_exit(
    *,
    code: int | None,
    is_restarting: bool,
    shutting_down: bool,
    was_interrupted: bool,
    has_agent_responded: bool,
    is_resumed: bool,
    resume_fail_count: int,
    is_permanent_failure: bool,
    max_resume_failures: int = 3,
) -> ExitDisposition:
    """Classify a process exit. Conditions are checked most specific first."""
    if is_restarting:
        return ExitDisposition(ExitAction.RESTARTING, None, resume_fail_count)
    if shutting_down:
        return ExitDisposition(ExitAction.SHUTDOWN, None, resume_fail_count)
    if was_interrupted:
        action = ExitAction.PAUSE if has_agent_responded else ExitAction.DROP_INTERRUPTED
        return ExitDisposition(action, SessionState.PAUSED_INTERRUPTED, resume_fail_count)
    if not has_agent_responded and not is_resumed:
        return ExitDisposition(
            ExitAction.DROP_NO_RESPONSE, SessionState.EXITED_NORMAL, resume_fail_count,
        )
    if is_resumed and code not in (0, None):
        if is_permanent_failure:
            return ExitDisposition(
                ExitAction.PERMANENT_FAILURE, SessionState.EXITED_PERMANENT, resume_fail_count,
            )
        failures = resume_fail_count + 1
        if failures >= max_resume_failures:
            return ExitDisposition(
                ExitAction.RETRY_EXHAUSTED, SessionState.EXITED_PERMANENT, failures,
            )
        return ExitDisposition(
            ExitAction.RETRY_LATER, SessionState.EXITED_RETRYABLE, failures,
        )
    if code in (0, None):
        return ExitDisposition(ExitAction.NORMAL, SessionState.EXITED_NORMAL, resume_fail_count)
    return ExitDisposition(
        ExitAction.NORMAL_ERROR, SessionState.EXITED_RETRYABLE, resume_fail_count,
    )
