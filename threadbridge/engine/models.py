"""Core data models for the session bridge.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from .timers import SessionTimers

if TYPE_CHECKING:
    from .capabilities import AgentProcess, ChatPlatform


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    ACTIVE = "active"
    AWAITING_INPUT = "awaiting_input"
    PAUSED_INTERRUPTED = "paused_interrupted"
    EXITED_NORMAL = "exited_normal"
    EXITED_RETRYABLE = "exited_retryable"
    EXITED_PERMANENT = "exited_permanent"


class EventType(str, Enum):
    """Event kinds emitted by the agent process on stdout."""
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    SYSTEM = "system"
    USER = "user"


def make_agent_session_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AgentEvent:
    """One parsed JSON line from the agent process."""
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AgentEvent:
        return cls(type=str(data.get("type", "")), payload=data)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


@dataclass
class ProcessExit:
    """Sentinel placed on the event queue when the process exits."""
    code: int | None


@dataclass
class ChatPost:
    """A message as returned by the chat platform."""
    id: str
    message: str = ""
    channel_id: str = ""
    user_id: str = ""


@dataclass
class ChatFile:
    """A file attached to an inbound chat message."""
    id: str
    name: str
    mime_type: str


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class Question:
    header: str
    question: str
    options: list[QuestionOption] = field(default_factory=list)
    answer: str | None = None


@dataclass
class PlanApproval:
    """Pending approve/deny decision on a plan."""
    post_id: str
    tool_use_id: str = ""
    kind: str = "plan"


@dataclass
class QuestionSet:
    """Ordered questions asked one at a time."""
    tool_use_id: str
    questions: list[Question]
    current_index: int = 0
    current_post_id: str | None = None
    kind: str = "questions"

    @property
    def post_id(self) -> str | None:
        return self.current_post_id

    @property
    def current(self) -> Question | None:
        if self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None


@dataclass
class MessageApproval:
    """A message from a non-collaborator held for approval."""
    post_id: str
    original_message: str
    from_user: str
    kind: str = "message_approval"


PendingPrompt = Union[PlanApproval, QuestionSet, MessageApproval]


@dataclass
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    context_window: int = 0
    cost_usd: float = 0.0


@dataclass
class UsageStats:
    """Token and cost totals taken from the last ``result`` event."""
    primary_model: str = ""
    model_display_name: str = ""
    context_window_size: int = 200_000
    total_tokens_used: int = 0
    total_cost_usd: float = 0.0
    model_usage: dict[str, ModelUsage] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class StartRequest:
    """Parameters for starting (or following up on) a conversation."""
    platform_id: str
    thread_id: str
    username: str
    prompt: str
    working_dir: str
    display_name: str | None = None
    files: list[ChatFile] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return f"{self.platform_id}:{self.thread_id}"


@dataclass
class Rejected:
    """Returned by the registry when admission control refuses a start."""
    reason: str
    active: int
    limit: int


@dataclass
class PersistedSession:
    """Durable projection of a Session, keyed by composite id."""
    platform_id: str
    thread_id: str
    agent_session_id: str
    started_by: str
    working_dir: str
    started_by_display_name: str | None = None
    started_at: str | None = None
    last_activity_at: str | None = None
    session_number: int = 1
    plan_approved: bool = False
    allowed_users: list[str] = field(default_factory=list)
    force_interactive_permissions: bool = False
    session_start_post_id: str | None = None
    tasks_post_id: str | None = None
    last_tasks_content: str | None = None
    tasks_completed: bool = False
    tasks_minimized: bool = False
    resume_fail_count: int = 0
    message_count: int = 0
    cleaned_at: str | None = None
    timeout_post_id: str | None = None
    title: str | None = None
    description: str | None = None
    workspace_info: dict[str, Any] | None = None
    queued_prompt: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    REQUIRED = ("platform_id", "thread_id", "agent_session_id", "working_dir")

    @property
    def session_id(self) -> str:
        return f"{self.platform_id}:{self.thread_id}"

    @property
    def last_activity(self) -> datetime | None:
        return from_iso(self.last_activity_at)

    def missing_fields(self) -> list[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if f.name in ("cleaned_at", "timeout_post_id") and value is None:
                continue
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistedSession:
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        for name in ("platform_id", "thread_id", "agent_session_id", "started_by", "working_dir"):
            kwargs.setdefault(name, "")
        return cls(**kwargs, extra=extra)


@dataclass(eq=False)
class Session:
    """Live state for one conversation (one chat thread on one platform).

    Created by LifecycleController, owned by SessionRegistry.
    """
    platform_id: str
    thread_id: str
    platform: ChatPlatform
    started_by: str
    working_dir: str
    started_by_display_name: str | None = None
    agent_session_id: str = field(default_factory=make_agent_session_id)
    process: AgentProcess | None = None
    state: SessionState = SessionState.STARTING
    session_number: int = 1
    started_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    # Streaming
    current_post_id: str | None = None
    pending_content: str = ""
    session_start_post_id: str | None = None

    # Interactive
    pending_prompt: PendingPrompt | None = None
    plan_approved: bool = False
    workspace_prompt_post_id: str | None = None
    queued_prompt: str | None = None
    workspace_info: dict[str, Any] | None = None

    # Collaboration
    allowed_users: set[str] = field(default_factory=set)
    force_interactive_permissions: bool = False

    # Lifecycle flags
    is_restarting: bool = False
    is_resumed: bool = False
    was_interrupted: bool = False
    has_agent_responded: bool = False
    resume_fail_count: int = 0
    timeout_warning_posted: bool = False
    timeout_post_id: str | None = None

    # Task list
    tasks_post_id: str | None = None
    last_tasks_content: str | None = None
    tasks_completed: bool = False
    tasks_minimized: bool = False
    in_progress_task_started: datetime | None = None

    # Bookkeeping
    title: str | None = None
    description: str | None = None
    message_count: int = 0
    active_subagents: dict[str, str] = field(default_factory=dict)
    active_tool_starts: dict[str, datetime] = field(default_factory=dict)
    usage: UsageStats | None = None
    # Record fields this version does not model, written back unchanged.
    extra: dict[str, Any] = field(default_factory=dict)

    timers: SessionTimers = field(default_factory=SessionTimers)
    flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    receive_task: Any = None

    def __post_init__(self) -> None:
        self.allowed_users.add(self.started_by)
        self.timers = SessionTimers(owner=self.session_id)

    @property
    def session_id(self) -> str:
        return f"{self.platform_id}:{self.thread_id}"

    @property
    def short_id(self) -> str:
        return self.thread_id[:8]

    def touch(self) -> None:
        """Record activity and re-arm the idle warning."""
        self.last_activity_at = utcnow()
        self.timeout_warning_posted = False

    def to_persisted(self) -> PersistedSession:
        return PersistedSession(
            platform_id=self.platform_id,
            thread_id=self.thread_id,
            agent_session_id=self.agent_session_id,
            started_by=self.started_by,
            started_by_display_name=self.started_by_display_name,
            started_at=to_iso(self.started_at),
            last_activity_at=to_iso(self.last_activity_at),
            session_number=self.session_number,
            working_dir=self.working_dir,
            plan_approved=self.plan_approved,
            allowed_users=sorted(self.allowed_users),
            force_interactive_permissions=self.force_interactive_permissions,
            session_start_post_id=self.session_start_post_id,
            tasks_post_id=self.tasks_post_id,
            last_tasks_content=self.last_tasks_content,
            tasks_completed=self.tasks_completed,
            tasks_minimized=self.tasks_minimized,
            resume_fail_count=self.resume_fail_count,
            message_count=self.message_count,
            timeout_post_id=self.timeout_post_id,
            title=self.title,
            description=self.description,
            workspace_info=self.workspace_info,
            queued_prompt=self.queued_prompt,
            extra=dict(self.extra),
        )
