"""Collaborator interfaces consumed by the session engine.

The chat-platform adapter, the agent process and the optional workspace
isolation helper live outside this package. Components receive them
through an explicit SessionContext instead of loose callbacks, so each
can be exercised in isolation with fakes.
"""
from __future__ import annotations

import abc
import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, Union

from .models import AgentEvent, ChatPost, ProcessExit

if TYPE_CHECKING:
    from threadbridge.shared.services.persistence import SessionStore

    from .config import BridgeConfig, EventCallback
    from .models import Session, SessionState

ProcessItem = Union[AgentEvent, ProcessExit]
MessageContent = Union[str, list[dict[str, Any]]]


class ChatFormatter:
    """Markdown helpers. Platforms with other dialects override these."""

    def bold(self, text: str) -> str:
        return f"**{text}**"

    def italic(self, text: str) -> str:
        return f"*{text}*"

    def code(self, text: str) -> str:
        return f"`{text}`"

    def code_block(self, text: str, language: str = "") -> str:
        return f"```{language}\n{text}\n```"

    def quote(self, text: str) -> str:
        return "\n".join(f"> {line}" for line in text.splitlines() or [""])

    def mention(self, username: str) -> str:
        return f"@{username}"


class ChatPlatform(abc.ABC):
    """One connection to a chat platform. Sessions hold a reference only."""

    @property
    @abc.abstractmethod
    def platform_id(self) -> str:
        """Stable id of this platform instance."""

    @abc.abstractmethod
    async def create_post(self, message: str, thread_id: str) -> ChatPost:
        """Post a new message in a thread."""

    @abc.abstractmethod
    async def update_post(self, post_id: str, message: str) -> ChatPost:
        """Replace the content of an existing message."""

    @abc.abstractmethod
    async def delete_post(self, post_id: str) -> None:
        """Delete a message."""

    @abc.abstractmethod
    async def add_reaction(self, post_id: str, emoji_name: str) -> None:
        """Add a reaction as the bot user."""

    @abc.abstractmethod
    async def remove_reaction(self, post_id: str, emoji_name: str) -> None:
        """Remove the bot user's reaction."""

    async def create_interactive_post(
        self, message: str, reactions: list[str], thread_id: str,
    ) -> ChatPost:
        """Post a message and pre-seed the reactions users can click."""
        post = await self.create_post(message, thread_id)
        for emoji_name in reactions:
            await self.add_reaction(post.id, emoji_name)
        return post

    @abc.abstractmethod
    async def send_typing(self, thread_id: str) -> None:
        """Show a typing indicator in the thread."""

    @abc.abstractmethod
    async def get_post(self, post_id: str) -> ChatPost | None:
        """Fetch a message, or None when it no longer exists."""

    async def get_thread_history(self, thread_id: str, limit: int = 50) -> list[ChatPost]:
        return []

    async def download_file(self, file_id: str) -> bytes:
        raise NotImplementedError(f"{type(self).__name__} cannot download files")

    @abc.abstractmethod
    def is_user_allowed(self, username: str) -> bool:
        """Whether ``username`` is globally allowed to use the bot."""

    def get_mcp_config(self) -> dict[str, Any] | None:
        """MCP config for the permission-prompt server, if any."""
        return None

    def get_formatter(self) -> ChatFormatter:
        return ChatFormatter()


@dataclass
class ProcessOptions:
    """Launch parameters for one agent process."""
    working_dir: str
    agent_session_id: str
    resume: bool = False
    thread_id: str = ""
    skip_permissions: bool = False
    mcp_config: dict[str, Any] | None = None
    chrome: bool = False
    append_system_prompt: str | None = None
    command: str = "claude"
    permission_tool_name: str = "mcp__threadbridge-permissions__permission_prompt"
    extra_env: dict[str, str] = field(default_factory=dict)


class AgentProcess(abc.ABC):
    """Handle to one external agent process.

    Events (and finally a ProcessExit) are delivered on ``events``; the
    lifecycle controller consumes them from an explicit receive loop.
    """

    def __init__(self) -> None:
        self.events: asyncio.Queue[ProcessItem] = asyncio.Queue()

    @abc.abstractmethod
    async def start(self) -> None:
        """Launch the process."""

    @abc.abstractmethod
    async def kill(self) -> None:
        """Terminate unconditionally."""

    @abc.abstractmethod
    def interrupt(self) -> bool:
        """Soft-stop the current turn. Returns False if nothing is running."""

    @abc.abstractmethod
    async def send_message(self, content: MessageContent) -> None:
        """Send a user message."""

    @abc.abstractmethod
    async def send_tool_result(self, tool_use_id: str, content: Any) -> None:
        """Answer a pending tool call."""

    @abc.abstractmethod
    def is_running(self) -> bool:
        """Whether the process is alive."""

    def is_permanent_failure(self) -> bool:
        """Whether retrying a resume of this conversation is futile."""
        return False

    def get_permanent_failure_reason(self) -> str | None:
        return None


AgentProcessFactory = Callable[[ProcessOptions], AgentProcess]


class WorkspaceIsolation(Protocol):
    """Optional helper for isolated workspaces (e.g. git worktrees)."""

    def directory_exists(self, path: str) -> bool: ...

    async def should_prompt(self, session: Session) -> str | None: ...

    async def create_workspace(self, session: Session, branch: str) -> dict[str, Any]: ...

    async def remove_workspace(self, info: dict[str, Any]) -> None: ...


class SessionIndex(Protocol):
    """The registry operations lifecycle components are allowed to use."""

    @property
    def shutting_down(self) -> bool: ...

    @property
    def active_count(self) -> int: ...

    def register(self, session: Session) -> None: ...

    def unregister(self, session: Session) -> None: ...

    def index_post(self, post_id: str, session: Session) -> None: ...

    def get(self, session_id: str) -> Session | None: ...


class SessionActions(Protocol):
    """Controller operations the prompt and event handlers may invoke."""

    async def send_to_agent(self, session: Session, content: MessageContent) -> bool: ...

    def persist(self, session: Session) -> None: ...

    async def update_header(self, session: Session) -> None: ...

    async def transition(self, session: Session, target: SessionState) -> None: ...

@dataclass
class SessionContext:
    """Everything a lifecycle component needs, passed explicitly."""
    config: BridgeConfig
    store: SessionStore
    index: SessionIndex
    process_factory: AgentProcessFactory
    workspace: WorkspaceIsolation | None = None
    event_callback: EventCallback | None = None
