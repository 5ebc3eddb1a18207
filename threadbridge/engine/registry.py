"""Session registry: the single owner of live sessions.

Tracks every live session by composite id (``platform_id:thread_id``)
plus a secondary index from chat post id to session, so reactions on
any session post route in O(1). Enforces the concurrency cap and is
the entry point for inbound chat events.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from threadbridge.shared.services.persistence import SessionStore

from . import emoji
from .capabilities import SessionContext
from .config import fire_event
from .controller import LifecycleController
from .errors import SessionConflictError, SessionStartError
from .lifecycle import is_live
from .models import MessageApproval, Rejected

if TYPE_CHECKING:
    from .capabilities import AgentProcessFactory, ChatPlatform, WorkspaceIsolation
    from .config import BridgeConfig, EventCallback
    from .models import ChatFile, PersistedSession, Session, StartRequest

logger = logging.getLogger(__name__)


def too_busy_message(active: int) -> str:
    return f"⚠️ **Too busy** - {active} sessions active. Please try again later."


class SessionRegistry:
    """Owns live sessions and routes chat events to them.

    Enforces:
    - At most one live session per composite id
    - At most ``max_sessions`` live sessions (never queued)
    - Post ids are indexed only for registered sessions and dropped with them
    """

    def __init__(
        self,
        config: BridgeConfig,
        store: SessionStore | None = None,
        process_factory: AgentProcessFactory | None = None,
        *,
        workspace: WorkspaceIsolation | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        if process_factory is None:
            from .agent_process import create_agent_process
            process_factory = create_agent_process
        self._config = config
        self._store = store if store is not None else SessionStore(config.store_path)
        self._event_callback = event_callback
        self._platforms: dict[str, ChatPlatform] = {}
        self._sessions: dict[str, Session] = {}
        self._post_index: dict[str, str] = {}
        self._posts_by_session: dict[str, set[str]] = {}
        self._shutting_down = False
        self.ctx = SessionContext(
            config=config,
            store=self._store,
            index=self,
            process_factory=process_factory,
            workspace=workspace,
            event_callback=event_callback,
        )
        self.controller = LifecycleController(self.ctx)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def add_platform(self, platform: ChatPlatform) -> None:
        self._platforms[platform.platform_id] = platform

    def get_platform(self, platform_id: str) -> ChatPlatform | None:
        return self._platforms.get(platform_id)

    # ── Index maintenance ────────────────────────────────────────

    def register(self, session: Session) -> None:
        """Add a session to the primary map.

        Raises:
            SessionConflictError: If another live session has the same id.
        """
        existing = self._sessions.get(session.session_id)
        if existing is not None and existing is not session:
            raise SessionConflictError(session.session_id)
        self._sessions[session.session_id] = session
        self._posts_by_session.setdefault(session.session_id, set())
        logger.debug("Registered session %s (%d active)", session.session_id, self.active_count)

    def index_post(self, post_id: str, session: Session) -> None:
        """Route reactions on ``post_id`` to ``session``."""
        if self._sessions.get(session.session_id) is not session:
            logger.debug("Not indexing post %s: session %s not registered", post_id, session.short_id)
            return
        self._post_index[post_id] = session.session_id
        self._posts_by_session[session.session_id].add(post_id)

    def unregister(self, session: Session) -> None:
        """Remove a session and every post id pointing at it."""
        if self._sessions.get(session.session_id) is not session:
            return
        del self._sessions[session.session_id]
        for post_id in self._posts_by_session.pop(session.session_id, set()):
            if self._post_index.get(post_id) == session.session_id:
                del self._post_index[post_id]
        logger.debug("Unregistered session %s (%d active)", session.session_id, self.active_count)

    # ── Lookups ──────────────────────────────────────────────────

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def lookup_by_thread(self, platform_id: str, thread_id: str) -> Session | None:
        return self._sessions.get(f"{platform_id}:{thread_id}")

    def lookup_by_message_id(self, post_id: str) -> Session | None:
        session_id = self._post_index.get(post_id)
        return self._sessions.get(session_id) if session_id else None

    def list_active(self) -> list[Session]:
        return list(self._sessions.values())

    def is_user_allowed_in_session(self, session: Session, username: str) -> bool:
        return username in session.allowed_users or session.platform.is_user_allowed(username)

    @staticmethod
    def _may_resume(record: PersistedSession, platform: ChatPlatform, username: str) -> bool:
        return (
            username == record.started_by
            or username in record.allowed_users
            or platform.is_user_allowed(username)
        )

    def has_paused_session(self, platform_id: str, thread_id: str) -> bool:
        """A resumable record exists for the thread but nothing is live."""
        if self.lookup_by_thread(platform_id, thread_id) is not None:
            return False
        return self._store.find_by_thread(platform_id, thread_id) is not None

    # ── Start / resume ───────────────────────────────────────────

    def _platform_for(self, platform_id: str, session_id: str) -> ChatPlatform:
        platform = self._platforms.get(platform_id)
        if platform is None:
            raise SessionStartError(session_id, f"platform {platform_id!r} is not registered")
        return platform

    async def _admit(self, platform: ChatPlatform, thread_id: str) -> Rejected | None:
        """Admission check. Posts the refusal; never queues."""
        limit = self._config.max_sessions
        if self._shutting_down:
            return Rejected("shutting down", self.active_count, limit)
        if self.active_count < limit:
            return None
        active = self.active_count
        logger.warning("Admission refused for %s: %d/%d sessions active", thread_id, active, limit)
        try:
            await platform.create_post(too_busy_message(active), thread_id)
        except Exception as exc:
            logger.warning("Could not post busy notice to %s: %s", thread_id, exc)
        await fire_event(self._event_callback, {
            "event": "session_rejected",
            "thread_id": thread_id,
            "active": active,
            "limit": limit,
        })
        return Rejected("too busy", active, limit)

    async def start(self, request: StartRequest) -> Session | Rejected:
        """Start a session, or route to the live one for the thread.

        Raises:
            SessionStartError: Unknown platform or launch failure.
        """
        platform = self._platform_for(request.platform_id, request.session_id)
        existing = self._sessions.get(request.session_id)
        if existing is not None and is_live(existing.state):
            await self.controller.send_follow_up(existing, request.prompt, request.files)
            return existing

        rejected = await self._admit(platform, request.thread_id)
        if rejected is not None:
            return rejected
        return await self.controller.start_session(request, platform)

    async def initialize(self) -> int:
        """Sweep stale records, then resume every persisted session.

        Returns the number of sessions resumed.
        """
        stale = self._store.clean_stale(self._config.stale_age_seconds)
        if stale:
            logger.info("Cleaned %d stale session(s) at startup", len(stale))
        resumed = 0
        for record in self._store.load().values():
            platform = self._platforms.get(record.platform_id)
            if platform is None:
                logger.info(
                    "Platform %s not registered, skipping resume of %s",
                    record.platform_id, record.session_id,
                )
                continue
            if self._sessions.get(record.session_id) is not None:
                continue
            if await self.controller.resume_session(record, platform) is not None:
                resumed += 1
        logger.info("Resumed %d persisted session(s)", resumed)
        return resumed

    # ── Inbound chat events ──────────────────────────────────────

    async def handle_message(
        self,
        platform_id: str,
        thread_id: str,
        username: str,
        message: str,
        files: list[ChatFile] | None = None,
    ) -> bool:
        """Deliver a thread reply. Returns False when no session owns the thread."""
        session = self.lookup_by_thread(platform_id, thread_id)
        controller = self.controller
        if session is not None:
            if session.workspace_prompt_post_id and controller.can_manage(session, username):
                return await controller.handle_workspace_branch(session, username, message)
            if not self.is_user_allowed_in_session(session, username):
                await controller.prompts.request_message_approval(session, username, message)
                return True
            return await controller.send_follow_up(session, message, files)

        record = self._store.find_by_thread(platform_id, thread_id)
        platform = self._platforms.get(platform_id)
        if record is None or platform is None:
            return False
        if not self._may_resume(record, platform, username):
            return False
        if await self._admit(platform, thread_id) is not None:
            return True
        return await controller.resume_paused_session(record, platform, message, files) is not None

    async def handle_reaction(
        self,
        platform_id: str,
        post_id: str,
        emoji_name: str,
        username: str,
        action: str = "added",
    ) -> bool:
        """Route a reaction on a session post. Returns True when handled."""
        session = self.lookup_by_message_id(post_id)
        if session is None:
            if action == "added" and emoji.is_resume(emoji_name):
                return await self._resume_from_reaction(platform_id, post_id, username)
            return False
        if session.platform_id != platform_id:
            return False

        controller = self.controller
        if post_id == session.tasks_post_id and emoji.is_task_toggle(emoji_name):
            if not self.is_user_allowed_in_session(session, username):
                return False
            return await controller.events.toggle_tasks(session, action)
        if action != "added":
            return False

        # Message approvals carry their own authorization check.
        if isinstance(session.pending_prompt, MessageApproval):
            if await controller.prompts.handle_reaction(session, post_id, emoji_name, username):
                return True
        if not self.is_user_allowed_in_session(session, username):
            return False

        if post_id == session.workspace_prompt_post_id and emoji.is_cancel(emoji_name):
            return await controller.skip_workspace_prompt(session, username)
        if post_id == session.session_start_post_id:
            if emoji.is_cancel(emoji_name):
                await controller.cancel_session(session, username)
                return True
            if emoji.is_escape(emoji_name):
                await controller.interrupt_session(session, username)
                return True
        return await controller.prompts.handle_reaction(session, post_id, emoji_name, username)

    async def _resume_from_reaction(self, platform_id: str, post_id: str, username: str) -> bool:
        record = self._store.find_by_post_id(platform_id, post_id)
        platform = self._platforms.get(platform_id)
        if record is None or platform is None:
            return False
        if not self._may_resume(record, platform, username):
            logger.info("@%s may not resume %s", username, record.session_id)
            return False
        if self.lookup_by_thread(platform_id, record.thread_id) is not None:
            return True
        if await self._admit(platform, record.thread_id) is not None:
            return True
        logger.info("Resuming %s via reaction by @%s", record.session_id, username)
        return await self.controller.resume_session(record, platform) is not None

    # ── Bulk teardown ────────────────────────────────────────────

    async def kill_all(self, *, unpersist: bool = True) -> None:
        """Terminate every live session."""
        for session in self.list_active():
            await self.controller.kill_session(session, unpersist=unpersist)

    async def kill_all_and_unpersist(self) -> None:
        """Stop accepting work, then end every session as history."""
        self._shutting_down = True
        await self.kill_all(unpersist=True)

    async def shutdown(self, message: str | None = None) -> None:
        """Stop every session but keep its record for the next start."""
        self._shutting_down = True
        sessions = self.list_active()
        logger.info("Shutting down %d session(s)", len(sessions))
        for session in sessions:
            if message:
                try:
                    await session.platform.create_post(message, session.thread_id)
                except Exception as exc:
                    logger.warning("Could not post shutdown notice to %s: %s", session.short_id, exc)
            self.controller.persist(session)
            await self.controller.kill_session(session, unpersist=False)
