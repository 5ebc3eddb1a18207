"""Lifecycle controller: starts, resumes, restarts and tears down sessions.

One controller serves every session. It owns the StreamingEngine,
InteractivePrompts and EventRouter, and implements the SessionActions
interface they call back into. Each live session has a receive loop
task consuming its agent process's event queue; a ProcessExit on that
queue is classified by ``lifecycle.classify_exit`` and the controller
applies the side effects.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import TYPE_CHECKING

from .capabilities import ProcessOptions
from .config import fire_event
from .error_handler import format_error_for_user, handle_error, try_operation
from .errors import (
    AdmissionRejectedError,
    SessionResumeError,
    SessionStartError,
)
from .events import EventRouter, shorten_path
from .lifecycle import ExitAction, classify_exit, is_live, validate_transition
from .models import (
    ProcessExit,
    Session,
    SessionState,
    StartRequest,
    from_iso,
    make_agent_session_id,
    utcnow,
)
from .prompts import InteractivePrompts
from .streaming import StreamingEngine, build_message_content

if TYPE_CHECKING:
    from .capabilities import AgentProcess, ChatPlatform, MessageContent, SessionContext
    from .config import BridgeConfig
    from .models import ChatFile, PersistedSession

logger = logging.getLogger(__name__)

CHAT_PLATFORM_PROMPT = """
You are running inside a chat platform. Users interact with you through chat messages in a thread.

SESSION METADATA: At the START of your first response, include metadata about this session:

[SESSION_TITLE: <short title>]
[SESSION_DESCRIPTION: <brief description>]

The title is 3-7 words in imperative form without quotes. The description is
one or two sentences under 100 characters. Update both later if the focus of
the session changes significantly.
""".strip()

METADATA_REMINDER = """
<system-reminder>
If the session topic has shifted or evolved significantly, update the session metadata:
[SESSION_TITLE: <current focus>]
[SESSION_DESCRIPTION: <what you're working on now>]
</system-reminder>
""".strip()

METADATA_REMINDER_INTERVAL = 5

PAUSED_MESSAGE = "ℹ️ Session paused. Send a new message to continue."

_BRANCH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")

WORKSPACE_PROMPTS = {
    "uncommitted": (
        "🌿 **This repo has uncommitted changes.**\n"
        "Reply with a branch name to work in an isolated worktree, "
        "or react with ❌ to continue in the main repo."
    ),
    "concurrent": (
        "⚠️ **Another session is already using this repo.**\n"
        "Reply with a branch name to work in an isolated worktree, "
        "or react with ❌ to continue anyway."
    ),
    "require": (
        "🌿 **This deployment requires working in a worktree.**\n"
        "Please reply with a branch name to continue."
    ),
}
DEFAULT_WORKSPACE_PROMPT = (
    "🌿 **Would you like to work in an isolated worktree?**\n"
    "Reply with a branch name, or react with ❌ to continue in the main repo."
)


def with_metadata_reminder(message: str, message_count: int) -> str:
    """Append the title/description reminder on every Nth message."""
    if message_count > 1 and message_count % METADATA_REMINDER_INTERVAL == 0:
        return f"{message}\n\n{METADATA_REMINDER}"
    return message


def is_valid_branch_name(name: str) -> bool:
    return bool(_BRANCH_RE.match(name)) and ".." not in name and not name.endswith((".lock", "/"))


def _context_bar(percent: int) -> str:
    filled = max(0, min(10, round(percent / 10)))
    return "▓" * filled + "░" * (10 - filled)


def _uptime(started_at) -> str:
    minutes = int((utcnow() - started_at).total_seconds() // 60)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h{minutes % 60}m"


class LifecycleController:
    """Drives sessions through their lifecycle. See lifecycle.py for states."""

    def __init__(
        self,
        ctx: SessionContext,
        *,
        streaming: StreamingEngine | None = None,
    ) -> None:
        self._ctx = ctx
        self.streaming = streaming or StreamingEngine(ctx)
        self.prompts = InteractivePrompts(ctx, self.streaming, self)
        self.events = EventRouter(ctx, self.streaming, self.prompts, self)

    @property
    def config(self) -> BridgeConfig:
        return self._ctx.config

    # ── SessionActions ───────────────────────────────────────────

    async def send_to_agent(self, session: Session, content: MessageContent) -> bool:
        """Forward a message to the live agent process and show typing."""
        process = session.process
        if process is None or not process.is_running():
            logger.warning("No running process for %s; message not sent", session.short_id)
            return False
        try:
            await process.send_message(content)
        except Exception as exc:
            await handle_error(exc, "Send message", session=session, notify_user=True)
            return False
        session.touch()
        self.streaming.start_typing(session)
        return True

    def persist(self, session: Session) -> None:
        """Save the session's durable projection.

        Sessions are only persisted once the agent has answered, or when
        they were themselves resumed from a persisted record.
        """
        if not (session.has_agent_responded or session.is_resumed):
            logger.debug("Not persisting %s: agent has not responded", session.short_id)
            return
        self._ctx.store.save(session.session_id, session.to_persisted())

    async def update_header(self, session: Session) -> None:
        """Rewrite the session start post with current status."""
        if not session.session_start_post_id:
            return
        text = self.render_header(session)
        await try_operation(
            lambda: session.platform.update_post(session.session_start_post_id, text),
            "Update session header", session=session,
        )

    def render_header(self, session: Session) -> str:
        config = self.config
        interactive = not config.skip_permissions or session.force_interactive_permissions
        status: list[str] = []
        if session.usage is not None:
            usage = session.usage
            percent = round(usage.total_tokens_used / max(usage.context_window_size, 1) * 100)
            status.append(f"`🤖 {usage.model_display_name}`")
            status.append(f"`{_context_bar(percent)} {percent}%`")
            status.append(f"`💰 ${usage.total_cost_usd:.2f}`")
        status.append(f"`{session.session_number}/{config.max_sessions}`")
        status.append("`🔐 Interactive`" if interactive else "`⚡ Auto`")
        if config.chrome_enabled:
            status.append("`🌐 Chrome`")
        status.append(f"`⏱️ {_uptime(session.started_at)}`")

        rows: list[str] = []
        if session.title:
            rows.append(f"| 📝 **Topic** | {session.title} |")
        if session.description:
            rows.append(f"| 📄 **Summary** | _{session.description}_ |")
        rows.append(f"| 📂 **Directory** | `{shorten_path(session.working_dir)}` |")
        rows.append(f"| 👤 **Started by** | @{session.started_by} |")
        if session.workspace_info:
            rows.append(f"| 🌿 **Worktree** | `{session.workspace_info.get('branch', '')}` |")
        others = sorted(u for u in session.allowed_users if u != session.started_by)
        if others:
            rows.append(f"| 👥 **Participants** | {', '.join('@' + u for u in others)} |")

        return "\n".join([
            " · ".join(status),
            "",
            "| | |",
            "|:--|:--|",
            *rows,
        ])

    # ── Internals ────────────────────────────────────────────────

    async def transition(self, session: Session, target: SessionState) -> None:
        """Move ``session`` to ``target``, logging and announcing the change."""
        validate_transition(session.state, target)
        old = session.state
        session.state = target
        logger.info("Session %s: %s -> %s", session.short_id, old.value, target.value)
        await fire_event(self._ctx.event_callback, {
            "event": "session_state_changed",
            "session_id": session.session_id,
            "old_state": old.value,
            "new_state": target.value,
        })

    async def _post(self, session: Session, message: str, action: str = "Post message") -> None:
        await try_operation(
            lambda: session.platform.create_post(message, session.thread_id),
            action, session=session,
        )

    async def _close_post(self, session: Session) -> None:
        await try_operation(
            lambda: self.streaming.close_current_post(session),
            "Flush output", session=session,
        )

    def _process_options(self, session: Session, *, resume: bool) -> ProcessOptions:
        config = self.config
        skip = config.skip_permissions and not session.force_interactive_permissions
        prompt_parts = []
        if not session.title:
            prompt_parts.append(CHAT_PLATFORM_PROMPT)
        if config.append_system_prompt:
            prompt_parts.append(config.append_system_prompt)
        return ProcessOptions(
            working_dir=session.working_dir,
            agent_session_id=session.agent_session_id,
            resume=resume,
            thread_id=session.thread_id,
            skip_permissions=skip,
            mcp_config=None if skip else session.platform.get_mcp_config(),
            chrome=config.chrome_enabled,
            append_system_prompt="\n\n".join(prompt_parts) or None,
            command=config.agent_command,
            permission_tool_name=config.permission_tool_name,
        )

    async def _launch(self, session: Session, *, resume: bool) -> None:
        """Create and start the agent process plus its receive loop.

        Raises:
            SessionStartError: When the process cannot be started.
        """
        try:
            process = self._ctx.process_factory(self._process_options(session, resume=resume))
            await process.start()
        except Exception as exc:
            raise SessionStartError(session.session_id, str(exc)) from exc
        session.process = process
        session.receive_task = asyncio.create_task(
            self._receive_loop(session, process),
            name=f"session-{session.short_id}",
        )

    async def _receive_loop(self, session: Session, process: AgentProcess) -> None:
        """Consume ``process.events`` until the process exits."""
        while True:
            item = await process.events.get()
            if isinstance(item, ProcessExit):
                try:
                    await self.handle_exit(session, process, item.code)
                except Exception:
                    logger.exception("Error handling exit of %s", session.short_id)
                return
            try:
                await self.events.handle_event(session, item)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Error handling %s event for %s", item.type, session.short_id,
                )

    async def _teardown(self, session: Session, state: SessionState | None) -> None:
        """Remove a session from memory. Every exit path ends here."""
        if state is not None and is_live(session.state):
            await self.transition(session, state)
        session.timers.cancel_all()
        task = session.receive_task
        session.receive_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._ctx.index.unregister(session)
        await fire_event(self._ctx.event_callback, {
            "event": "session_ended",
            "session_id": session.session_id,
            "state": session.state.value,
        })

    async def _restart(self, session: Session, *, resume: bool) -> bool:
        """Replace the running process, e.g. after a directory change."""
        session.is_restarting = True
        self.streaming.stop_typing(session)
        old = session.process
        if old is not None:
            await old.kill()
        await self._close_post(session)
        try:
            await self._launch(session, resume=resume)
        except SessionStartError as exc:
            session.is_restarting = False
            await self._post(session, f"❌ {format_error_for_user(exc)}")
            await self.kill_session(session, unpersist=False)
            return False
        return True

    # ── Start / resume ───────────────────────────────────────────

    async def start_session(self, request: StartRequest, platform: ChatPlatform) -> Session:
        """Start a new session for a thread and send its first message.

        Raises:
            SessionConflictError: If a live session already owns the thread.
            SessionStartError: If the agent process could not be launched.
        """
        index = self._ctx.index
        session = Session(
            platform_id=request.platform_id,
            thread_id=request.thread_id,
            platform=platform,
            started_by=request.username,
            started_by_display_name=request.display_name,
            working_dir=request.working_dir,
            session_number=index.active_count + 1,
        )
        index.register(session)

        post = await try_operation(
            lambda: platform.create_post("*Starting session...*", request.thread_id),
            "Post session header", session=session,
        )
        if post is not None:
            session.session_start_post_id = post.id
            index.index_post(post.id, session)

        try:
            await self._launch(session, resume=False)
        except SessionStartError as exc:
            logger.error("Failed to start session %s: %s", session.short_id, exc.reason)
            await self._post(session, f"❌ {format_error_for_user(exc)}")
            await self._teardown(session, SessionState.EXITED_NORMAL)
            raise

        await self.transition(session, SessionState.ACTIVE)
        logger.info(
            "Session %s started by @%s in %s", session.short_id, session.started_by,
            session.working_dir,
        )
        await fire_event(self._ctx.event_callback, {
            "event": "session_started",
            "session_id": session.session_id,
            "started_by": session.started_by,
            "working_dir": session.working_dir,
        })
        await self.update_header(session)

        reason = await self._workspace_prompt_reason(session)
        if reason is not None:
            session.queued_prompt = request.prompt
            await self._post_workspace_prompt(session, reason)
            await self.transition(session, SessionState.AWAITING_INPUT)
            return session

        content = await build_message_content(request.prompt, platform, request.files)
        session.message_count += 1
        await self.send_to_agent(session, content)
        return session

    async def resume_session(
        self, record: PersistedSession, platform: ChatPlatform, *, notify: bool = True,
    ) -> Session | None:
        """Rebuild a live session from its persisted record.

        Returns None when the record fails validation (the record is then
        removed) or admission control refuses it (the record is kept).
        """
        store = self._ctx.store
        try:
            await self._validate_record(record, platform)
        except SessionResumeError as exc:
            logger.warning("%s", exc)
            store.remove(record.session_id)
            return None
        except AdmissionRejectedError as exc:
            logger.warning("Skipping resume of %s: %s", record.session_id, exc)
            return None

        session = Session(
            platform_id=record.platform_id,
            thread_id=record.thread_id,
            platform=platform,
            started_by=record.started_by,
            started_by_display_name=record.started_by_display_name,
            working_dir=record.working_dir,
            agent_session_id=record.agent_session_id,
            session_number=record.session_number,
            started_at=from_iso(record.started_at) or utcnow(),
            session_start_post_id=record.session_start_post_id,
            plan_approved=record.plan_approved,
            queued_prompt=record.queued_prompt,
            workspace_info=record.workspace_info,
            allowed_users=set(record.allowed_users),
            force_interactive_permissions=record.force_interactive_permissions,
            is_resumed=True,
            resume_fail_count=record.resume_fail_count,
            timeout_post_id=record.timeout_post_id,
            tasks_post_id=record.tasks_post_id,
            last_tasks_content=record.last_tasks_content,
            tasks_completed=record.tasks_completed,
            tasks_minimized=record.tasks_minimized,
            title=record.title,
            description=record.description,
            message_count=record.message_count,
            extra=dict(record.extra),
        )
        index = self._ctx.index
        index.register(session)
        for post_id in (record.session_start_post_id, record.tasks_post_id, record.timeout_post_id):
            if post_id:
                index.index_post(post_id, session)

        try:
            await self._launch(session, resume=True)
        except SessionStartError as exc:
            logger.error("Failed to resume session %s: %s", session.short_id, exc.reason)
            await self._teardown(session, SessionState.EXITED_PERMANENT)
            store.remove(session.session_id)
            await self._post(session, "Could not resume previous session. Starting fresh.")
            return None

        await self.transition(session, SessionState.ACTIVE)
        logger.info("Resumed session %s (@%s)", session.short_id, session.started_by)
        if notify:
            await self._post(
                session,
                "🔄 **Session resumed**\n*Reconnected to the agent session. "
                "You can continue where you left off.*",
            )
        await self.update_header(session)
        self.persist(session)
        await fire_event(self._ctx.event_callback, {
            "event": "session_resumed",
            "session_id": session.session_id,
        })
        return session

    async def _validate_record(self, record: PersistedSession, platform: ChatPlatform) -> None:
        """Raise when a persisted record can no longer be resumed."""
        missing = record.missing_fields()
        if missing:
            raise SessionResumeError(record.session_id, f"missing fields {', '.join(missing)}")

        thread = await try_operation(
            lambda: platform.get_post(record.thread_id), "Look up thread",
        )
        if thread is None:
            raise SessionResumeError(record.session_id, "thread no longer exists")

        workspace = self._ctx.workspace
        exists = (
            workspace.directory_exists(record.working_dir) if workspace is not None
            else os.path.isdir(record.working_dir)
        )
        if not exists:
            await try_operation(
                lambda: platform.create_post(
                    "⚠️ **Cannot resume session** - working directory no longer exists:\n"
                    f"`{record.working_dir}`\n\nPlease start a new session.",
                    record.thread_id,
                ),
                "Post resume failure",
            )
            raise SessionResumeError(record.session_id, "working directory no longer exists")

        index = self._ctx.index
        if index.active_count >= self.config.max_sessions:
            raise AdmissionRejectedError(index.active_count, self.config.max_sessions)

    # ── Messages ─────────────────────────────────────────────────

    async def send_follow_up(
        self, session: Session, message: str, files: list[ChatFile] | None = None,
    ) -> bool:
        """Forward a user message to a live session."""
        if session.process is None or not session.process.is_running():
            return False
        session.message_count += 1
        text = with_metadata_reminder(message, session.message_count)
        content = await build_message_content(text, session.platform, files)
        sent = await self.send_to_agent(session, content)
        if sent:
            self.persist(session)
        return sent

    async def resume_paused_session(
        self,
        record: PersistedSession,
        platform: ChatPlatform,
        message: str,
        files: list[ChatFile] | None = None,
    ) -> Session | None:
        """Resume a paused or timed-out session, then deliver ``message``."""
        session = await self.resume_session(record, platform, notify=False)
        if session is None:
            return None
        await self.send_follow_up(session, message, files)
        return session

    # ── Exit handling ────────────────────────────────────────────

    async def handle_exit(self, session: Session, process: AgentProcess, code: int | None) -> None:
        """Apply the side effects of a process exit."""
        if process is not session.process:
            # Exit of a process that a restart already replaced.
            session.is_restarting = False
            logger.debug("Ignoring exit of replaced process for %s", session.short_id)
            return

        disposition = classify_exit(
            code=code,
            is_restarting=session.is_restarting,
            shutting_down=self._ctx.index.shutting_down,
            was_interrupted=session.was_interrupted,
            has_agent_responded=session.has_agent_responded,
            is_resumed=session.is_resumed,
            resume_fail_count=session.resume_fail_count,
            is_permanent_failure=process.is_permanent_failure(),
            max_resume_failures=self.config.max_resume_failures,
        )
        action = disposition.action
        logger.info(
            "Session %s process exited (code=%s): %s", session.short_id, code, action.value,
        )

        if action is ExitAction.RESTARTING:
            session.is_restarting = False
            return

        self.streaming.stop_typing(session)
        if action is ExitAction.SHUTDOWN:
            await self._teardown(session, None)
            return

        store = self._ctx.store
        session.resume_fail_count = disposition.resume_fail_count
        # The session leaves memory even when the chat or the store fails below.
        try:
            if action in (ExitAction.PAUSE, ExitAction.DROP_INTERRUPTED):
                await self._close_post(session)
                if action is ExitAction.PAUSE:
                    self.persist(session)
                await self._post(session, PAUSED_MESSAGE)
            elif action is ExitAction.DROP_NO_RESPONSE:
                await self._close_post(session)
            elif action is ExitAction.PERMANENT_FAILURE:
                store.remove(session.session_id)
                reason = process.get_permanent_failure_reason() or "the previous conversation is no longer available"
                await self._post(
                    session,
                    f"❌ **Session cannot be resumed**: {reason}\n*Please start a new session.*",
                )
            elif action is ExitAction.RETRY_EXHAUSTED:
                store.remove(session.session_id)
                await self._post(
                    session,
                    f"❌ **Session permanently failed** after {session.resume_fail_count} "
                    f"attempts (exit code {code}). Please start a new session.",
                )
            elif action is ExitAction.RETRY_LATER:
                self.persist(session)
                await self._post(
                    session,
                    f"⚠️ **Session resume failed** (exit code {code}). The session data is "
                    f"preserved and will retry on next restart "
                    f"({session.resume_fail_count}/{self.config.max_resume_failures}).",
                )
            elif action is ExitAction.NORMAL:
                await self._close_post(session)
                store.soft_delete(session.session_id)
            else:
                await self._close_post(session)
                self.persist(session)
                await self._post(session, f"**[Exited: {code}]**")
        finally:
            await self._teardown(session, disposition.state)

    # ── Commands ─────────────────────────────────────────────────

    def can_manage(self, session: Session, username: str) -> bool:
        return username == session.started_by or session.platform.is_user_allowed(username)

    async def interrupt_session(self, session: Session, username: str) -> bool:
        """Stop the current turn; the session stays resumable."""
        process = session.process
        if process is None or not process.is_running():
            await self._post(session, "ℹ️ Session is idle, nothing to interrupt")
            return False
        # Must be set before the exit can arrive.
        session.was_interrupted = True
        if not process.interrupt():
            session.was_interrupted = False
            await self._post(session, "ℹ️ Session is idle, nothing to interrupt")
            return False
        self.streaming.stop_typing(session)
        logger.info("Session %s interrupted by @%s", session.short_id, username)
        await self._post(session, f"⏸️ **Interrupted** by @{username}")
        return True

    async def cancel_session(self, session: Session, username: str) -> None:
        """User-requested end of a session; the record becomes history."""
        logger.info("Session %s cancelled by @%s", session.short_id, username)
        await self._post(session, f"🛑 **Session cancelled** by @{username}")
        await self.kill_session(session, unpersist=True)

    async def kill_session(self, session: Session, *, unpersist: bool = True) -> None:
        """Terminate unconditionally.

        Args:
            session: The session to end.
            unpersist: Soft-delete the durable record. False keeps it so
                the session can be resumed later (timeouts, shutdown).
        """
        # Stop the receive loop first so the kill's exit is not classified.
        session.timers.cancel_all()
        task = session.receive_task
        session.receive_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        process = session.process
        if process is not None:
            try:
                await process.kill()
            except Exception as exc:
                logger.warning("Failed to kill process for %s: %s", session.short_id, exc)
        await self._teardown(session, SessionState.EXITED_NORMAL)
        if unpersist:
            self._ctx.store.soft_delete(session.session_id)

    async def change_directory(self, session: Session, username: str, path: str) -> bool:
        """Restart the agent in another directory with a fresh conversation."""
        if not self.can_manage(session, username):
            await self._post(session, f"⚠️ Only @{session.started_by} can change the working directory")
            return False
        target = os.path.abspath(os.path.expanduser(path))
        if not os.path.isdir(target):
            await self._post(session, f"❌ Directory does not exist: `{path}`")
            return False

        session.working_dir = target
        # Agent conversations are tied to their directory.
        session.agent_session_id = make_agent_session_id()
        if not await self._restart(session, resume=False):
            return False
        await self._post(
            session,
            f"📂 **Working directory changed** to `{shorten_path(target)}`\n"
            "*Agent restarted in the new directory*",
        )
        session.touch()
        await self.update_header(session)
        self.persist(session)
        return True

    async def invite_user(self, session: Session, inviter: str, username: str) -> bool:
        if not self.can_manage(session, inviter):
            await self._post(session, f"⚠️ Only @{session.started_by} can invite users")
            return False
        session.allowed_users.add(username)
        await self._post(
            session, f"✅ @{username} can now participate in this session (invited by @{inviter})",
        )
        await self.update_header(session)
        self.persist(session)
        return True

    async def kick_user(self, session: Session, kicker: str, username: str) -> bool:
        if not self.can_manage(session, kicker):
            await self._post(session, f"⚠️ Only @{session.started_by} can remove users")
            return False
        if username == session.started_by:
            await self._post(session, f"⚠️ Cannot kick @{username} - they started this session")
            return False
        if session.platform.is_user_allowed(username):
            await self._post(
                session,
                f"⚠️ @{username} is globally allowed and cannot be kicked from individual sessions",
            )
            return False
        if username not in session.allowed_users:
            await self._post(session, f"⚠️ @{username} was not in this session")
            return False
        session.allowed_users.discard(username)
        await self._post(session, f"🚫 @{username} removed from this session by @{kicker}")
        await self.update_header(session)
        self.persist(session)
        return True

    async def enable_interactive_permissions(self, session: Session, username: str) -> bool:
        """Switch from auto-approve to permission prompts. Never the reverse."""
        if not self.can_manage(session, username):
            await self._post(session, f"⚠️ Only @{session.started_by} can change permissions")
            return False
        if not self.config.skip_permissions or session.force_interactive_permissions:
            await self._post(session, "ℹ️ Interactive permissions are already enabled for this session")
            return False
        session.force_interactive_permissions = True
        if not await self._restart(session, resume=True):
            return False
        await self._post(
            session,
            f"🔐 **Interactive permissions enabled** for this session by @{username}\n"
            "*Agent restarted with permission prompts*",
        )
        await self.update_header(session)
        self.persist(session)
        return True

    # ── Workspace isolation prompt ───────────────────────────────

    async def _workspace_prompt_reason(self, session: Session) -> str | None:
        workspace = self._ctx.workspace
        mode = self.config.workspace_mode
        if workspace is None or mode == "off" or session.workspace_info:
            return None
        if mode == "require":
            return "require"
        return await workspace.should_prompt(session)

    async def _post_workspace_prompt(self, session: Session, reason: str) -> None:
        message = WORKSPACE_PROMPTS.get(reason, DEFAULT_WORKSPACE_PROMPT)
        reactions = [] if reason == "require" else ["x"]
        post = await session.platform.create_interactive_post(
            message, reactions, session.thread_id,
        )
        session.workspace_prompt_post_id = post.id
        self._ctx.index.index_post(post.id, session)

    async def _release_queued_prompt(self, session: Session) -> None:
        prompt = session.queued_prompt
        session.queued_prompt = None
        session.workspace_prompt_post_id = None
        if session.state is SessionState.AWAITING_INPUT and session.pending_prompt is None:
            await self.transition(session, SessionState.ACTIVE)
        if prompt:
            session.message_count += 1
            await self.send_to_agent(session, prompt)
        self.persist(session)

    async def skip_workspace_prompt(self, session: Session, username: str) -> bool:
        """Continue in the original directory (❌ on the prompt)."""
        if session.workspace_prompt_post_id is None or not self.can_manage(session, username):
            return False
        if self.config.workspace_mode == "require":
            return False
        post_id = session.workspace_prompt_post_id
        await try_operation(
            lambda: session.platform.update_post(
                post_id, f"✅ Continuing in main repo (skipped by @{username})",
            ),
            "Update workspace prompt", session=session,
        )
        await self._release_queued_prompt(session)
        return True

    async def handle_workspace_branch(self, session: Session, username: str, branch: str) -> bool:
        """Create an isolated workspace from a branch-name reply."""
        workspace = self._ctx.workspace
        if (
            workspace is None
            or session.workspace_prompt_post_id is None
            or not self.can_manage(session, username)
        ):
            return False
        branch = branch.strip()
        if not is_valid_branch_name(branch):
            await self._post(
                session,
                f"❌ Invalid branch name: `{branch}`. Please provide a valid git branch name.",
            )
            return True

        try:
            info = await workspace.create_workspace(session, branch)
        except Exception as exc:
            logger.error("Failed to create workspace for %s: %s", session.short_id, exc)
            await self._post(session, f"❌ Failed to create worktree: {exc}")
            return True

        post_id = session.workspace_prompt_post_id
        await try_operation(
            lambda: session.platform.update_post(post_id, f"✅ Created worktree for `{branch}`"),
            "Update workspace prompt", session=session,
        )
        session.workspace_info = info
        session.working_dir = info.get("path", session.working_dir)
        session.agent_session_id = make_agent_session_id()
        if not await self._restart(session, resume=False):
            return True
        await self._post(
            session,
            f"✅ **Created worktree** for branch `{branch}`\n"
            f"📁 Working directory: `{shorten_path(session.working_dir)}`",
        )
        await self.update_header(session)
        await self._release_queued_prompt(session)
        return True
