"""Routing and formatting of agent process events.

Each event from the receive loop is turned into chat text (appended to
the session's stream) and, for a few tools, into dedicated posts: plan
approval, question sets, the task list and subagent status.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import TYPE_CHECKING, Any

from . import emoji
from .error_handler import try_operation
from .models import AgentEvent, EventType, ModelUsage, UsageStats, utcnow
from .streaming import MIN_BREAK_THRESHOLD, should_flush_early

if TYPE_CHECKING:
    from .capabilities import ChatFormatter, SessionActions, SessionContext
    from .models import Session
    from .prompts import InteractivePrompts
    from .streaming import StreamingEngine

logger = logging.getLogger(__name__)

# Events that count as the agent having answered; gate persistence.
SUBSTANTIVE_EVENTS = frozenset({
    EventType.ASSISTANT.value,
    EventType.TOOL_USE.value,
    EventType.TOOL_RESULT.value,
    EventType.RESULT.value,
})

STATUS_INTERVAL_SECONDS = 30.0
TOOL_ELAPSED_MIN_SECONDS = 3
TASK_ELAPSED_MIN_SECONDS = 5
THINKING_PREVIEW_CHARS = 200

_THINKING_TAG_RE = re.compile(r"<thinking>.*?</thinking>", re.DOTALL)
_TITLE_RE = re.compile(r"\[SESSION_TITLE:\s*([^\]]+)\]")
_DESCRIPTION_RE = re.compile(r"\[SESSION_DESCRIPTION:\s*([^\]]+)\]")
_LOCAL_STDOUT_RE = re.compile(r"<local-command-stdout>(.*?)</local-command-stdout>", re.DOTALL)
_PROGRESS_RE = re.compile(r"\((\d+)/(\d+) · (\d+)%\)")
_IN_PROGRESS_RE = re.compile(r"🔄 \*\*([^*]+)\*\*(?:\s*\((\d+)s\))?")

TASKS_COMPLETED_MESSAGE = "---\n📋 ~~Tasks~~ *(completed)*"


# ── Pure formatting helpers ──────────────────────────────────────


def shorten_path(path: str, home: str | None = None) -> str:
    if not path:
        return ""
    home = home if home is not None else os.environ.get("HOME", "")
    if home and path.startswith(home):
        return "~" + path[len(home):]
    return path


def format_tool_use(
    name: str, tool_input: dict[str, Any], fmt: ChatFormatter,
) -> str | None:
    """One-line summary of a tool call, or None for tools shown elsewhere."""
    if name in ("Task", "ExitPlanMode", "AskUserQuestion", "TodoWrite"):
        return None
    if name == "Read":
        return f"📄 {fmt.bold('Read')} {fmt.code(shorten_path(tool_input.get('file_path', '')))}"
    if name == "Edit":
        return f"✏️ {fmt.bold('Edit')} {fmt.code(shorten_path(tool_input.get('file_path', '')))}"
    if name == "Write":
        return f"📝 {fmt.bold('Write')} {fmt.code(shorten_path(tool_input.get('file_path', '')))}"
    if name == "Bash":
        command = str(tool_input.get("command", ""))
        shown = command[:50] + ("..." if len(command) >= 50 else "")
        return f"💻 {fmt.bold('Bash')} {fmt.code(shown)}"
    if name == "Glob":
        return f"🔍 {fmt.bold('Glob')} {fmt.code(str(tool_input.get('pattern', '')))}"
    if name == "Grep":
        return f"🔎 {fmt.bold('Grep')} {fmt.code(str(tool_input.get('pattern', '')))}"
    if name == "EnterPlanMode":
        return f"📋 {fmt.bold('Planning...')}"
    if name == "WebFetch":
        return f"🌐 {fmt.bold('Fetching')} {fmt.code(str(tool_input.get('url', ''))[:40])}"
    if name == "WebSearch":
        return f"🔍 {fmt.bold('Searching')} {fmt.code(str(tool_input.get('query', '')))}"
    if name.startswith("mcp__"):
        parts = name.split("__")
        if len(parts) >= 3:
            return f"🔌 {fmt.bold('__'.join(parts[2:]))} {fmt.italic(f'({parts[1]})')}"
    return f"● {fmt.bold(name)}"


def thinking_preview(text: str, max_length: int = THINKING_PREVIEW_CHARS) -> str:
    """Abbreviate extended thinking, cutting at a word boundary when possible."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.7:
        truncated = truncated[:last_space]
    return truncated + "..."


def _valid_metadata(value: str, min_length: int, placeholder: str) -> bool:
    return (
        len(value) >= min_length
        and value.strip(".…") != ""
        and value != placeholder
        and not value.startswith("...")
    )


def extract_metadata(text: str) -> tuple[str, str | None, str | None]:
    """Strip thinking tags and title/description markers from ``text``.

    Returns ``(visible_text, title, description)``; title and
    description are None when absent or placeholder values.
    """
    text = _THINKING_TAG_RE.sub("", text).strip()
    title = description = None

    match = _TITLE_RE.search(text)
    if match:
        candidate = match.group(1).strip()
        if _valid_metadata(candidate, 3, "<short title>"):
            title = candidate
        text = re.sub(r"\[SESSION_TITLE:\s*[^\]]+\]\s*", "", text).strip()

    match = _DESCRIPTION_RE.search(text)
    if match:
        candidate = match.group(1).strip()
        if _valid_metadata(candidate, 5, "<brief description>"):
            description = candidate
        text = re.sub(r"\[SESSION_DESCRIPTION:\s*[^\]]+\]\s*", "", text).strip()

    return text, title, description


def model_display_name(model_id: str) -> str:
    """e.g. ``claude-opus-4-5-20251101`` -> ``Opus 4.5``."""
    checks = (
        (("opus-4-5", "opus-4.5"), "Opus 4.5"),
        (("opus-4",), "Opus 4"),
        (("opus",), "Opus"),
        (("sonnet-4",), "Sonnet 4"),
        (("sonnet-3-5", "sonnet-3.5"), "Sonnet 3.5"),
        (("sonnet",), "Sonnet"),
        (("haiku-4-5", "haiku-4.5"), "Haiku 4.5"),
        (("haiku",), "Haiku"),
    )
    for needles, label in checks:
        if any(n in model_id for n in needles):
            return label
    match = re.search(r"claude-(\w+)", model_id)
    return match.group(1).capitalize() if match else model_id


def parse_usage(payload: dict[str, Any]) -> UsageStats | None:
    """Usage totals from a ``result`` event; primary model = highest cost."""
    raw = payload.get("modelUsage")
    if not raw:
        return None
    stats = UsageStats(total_cost_usd=float(payload.get("total_cost_usd") or 0))
    highest = 0.0
    for model_id, usage in raw.items():
        entry = ModelUsage(
            input_tokens=int(usage.get("inputTokens", 0)),
            output_tokens=int(usage.get("outputTokens", 0)),
            cache_read_input_tokens=int(usage.get("cacheReadInputTokens", 0)),
            cache_creation_input_tokens=int(usage.get("cacheCreationInputTokens", 0)),
            context_window=int(usage.get("contextWindow", 0)),
            cost_usd=float(usage.get("costUSD", 0)),
        )
        stats.model_usage[model_id] = entry
        stats.total_tokens_used += (
            entry.input_tokens + entry.output_tokens
            + entry.cache_read_input_tokens + entry.cache_creation_input_tokens
        )
        if entry.cost_usd > highest:
            highest = entry.cost_usd
            stats.primary_model = model_id
            stats.context_window_size = entry.context_window or stats.context_window_size
    stats.model_display_name = model_display_name(stats.primary_model)
    return stats


def render_tasks(
    todos: list[dict[str, Any]], elapsed_seconds: int | None = None,
) -> tuple[str, str]:
    """Full and minimized task list text for a TodoWrite payload."""
    total = len(todos)
    completed = sum(1 for t in todos if t.get("status") == "completed")
    pct = round(completed / total * 100) if total else 0
    elapsed = (
        f" ({elapsed_seconds}s)"
        if elapsed_seconds is not None and elapsed_seconds >= TASK_ELAPSED_MIN_SECONDS
        else ""
    )

    lines = [f"---\n📋 **Tasks** ({completed}/{total} · {pct}%)\n"]
    current = ""
    for todo in todos:
        status = todo.get("status")
        if status == "completed":
            lines.append(f"✅ ~~{todo.get('content', '')}~~")
        elif status == "in_progress":
            active = todo.get("activeForm") or todo.get("content", "")
            lines.append(f"🔄 **{active}**{elapsed}")
            if not current:
                current = f" · 🔄 {active}{elapsed}"
        else:
            lines.append(f"○ {todo.get('content', '')}")
    full = "\n".join(lines) + "\n"
    minimized = f"---\n📋 **Tasks** ({completed}/{total} · {pct}%){current} 🔽"
    return full, minimized


def minimize_tasks(full: str) -> str:
    """Rebuild the minimized line from a previously rendered full list."""
    progress = _PROGRESS_RE.search(full)
    completed, total, pct = progress.groups() if progress else ("0", "0", "0")
    current = ""
    in_progress = _IN_PROGRESS_RE.search(full)
    if in_progress:
        name, secs = in_progress.groups()
        current = f" · 🔄 {name}{f' ({secs}s)' if secs else ''}"
    return f"---\n📋 **Tasks** ({completed}/{total} · {pct}%){current} 🔽"


# ── Router ───────────────────────────────────────────────────────


class EventRouter:
    """Applies agent events to a session."""

    def __init__(
        self,
        ctx: SessionContext,
        streaming: StreamingEngine,
        prompts: InteractivePrompts,
        actions: SessionActions,
    ) -> None:
        self._ctx = ctx
        self._streaming = streaming
        self._prompts = prompts
        self._actions = actions

    async def handle_event(self, session: Session, event: AgentEvent) -> None:
        session.touch()
        if event.type in SUBSTANTIVE_EVENTS and not session.has_agent_responded:
            session.has_agent_responded = True
            # A real answer ends a run of failed resumes.
            session.resume_fail_count = 0

        if event.type == EventType.ASSISTANT.value:
            if await self._handle_special_tools(session, event):
                return
        elif event.type == EventType.USER.value:
            await self._complete_subagents(session, event)

        formatted = await self.format_event(session, event)
        if formatted:
            self._streaming.append(session, formatted)

        if (
            event.type == EventType.TOOL_RESULT.value
            and session.current_post_id
            and len(session.pending_content) > MIN_BREAK_THRESHOLD
            and should_flush_early(session.pending_content)
        ):
            await self._streaming.close_current_post(session)

    async def format_event(self, session: Session, event: AgentEvent) -> str | None:
        """Chat text for an event, or None when nothing should be shown."""
        if event.type == EventType.ASSISTANT.value:
            return await self._format_assistant(session, event)

        if event.type == EventType.TOOL_USE.value:
            tool = event.get("tool_use") or {}
            if tool.get("id"):
                session.active_tool_starts[tool["id"]] = utcnow()
            return format_tool_use(
                tool.get("name", ""), tool.get("input") or {},
                session.platform.get_formatter(),
            )

        if event.type == EventType.TOOL_RESULT.value:
            return self._format_tool_result(session, event.get("tool_result") or {})

        if event.type == EventType.RESULT.value:
            await self._handle_result(session, event)
            return None

        if event.type == EventType.SYSTEM.value:
            if event.get("subtype") == "error":
                return f"❌ {event.get('error')}"
            return None

        if event.type == EventType.USER.value:
            content = (event.get("message") or {}).get("content")
            if isinstance(content, str):
                match = _LOCAL_STDOUT_RE.search(content)
                if match:
                    return match.group(1).strip()
            return None

        logger.debug("Ignoring event type %r for %s", event.type, session.short_id)
        return None

    async def _format_assistant(self, session: Session, event: AgentEvent) -> str | None:
        fmt = session.platform.get_formatter()
        parts: list[str] = []
        for block in (event.get("message") or {}).get("content") or []:
            kind = block.get("type")
            if kind == "text" and block.get("text"):
                text = await self._apply_metadata(session, block["text"])
                if text:
                    parts.append(text)
            elif kind == "tool_use" and block.get("name"):
                formatted = format_tool_use(block["name"], block.get("input") or {}, fmt)
                if formatted:
                    parts.append(formatted)
            elif kind == "thinking" and block.get("thinking"):
                parts.append(f"> 💭 *{thinking_preview(block['thinking'])}*")
            elif kind == "server_tool_use" and block.get("name"):
                raw = json.dumps(block["input"])[:50] if block.get("input") else ""
                parts.append(f"🌐 {fmt.bold(block['name'])} {raw}")
        return "\n".join(parts) if parts else None

    async def _apply_metadata(self, session: Session, text: str) -> str:
        visible, title, description = extract_metadata(text)
        changed = False
        if title and title != session.title:
            session.title = title
            changed = True
        if description and description != session.description:
            session.description = description
            changed = True
        if changed:
            logger.debug("Session %s metadata: %r / %r", session.short_id, session.title, session.description)
            self._actions.persist(session)
            await self._actions.update_header(session)
        return visible

    def _format_tool_result(self, session: Session, result: dict[str, Any]) -> str | None:
        elapsed = ""
        started = session.active_tool_starts.pop(result.get("tool_use_id", ""), None)
        if started is not None:
            seconds = round((utcnow() - started).total_seconds())
            if seconds >= TOOL_ELAPSED_MIN_SECONDS:
                elapsed = f" ({seconds}s)"
        if result.get("is_error"):
            return f"  ↳ ❌ Error{elapsed}"
        if elapsed:
            return f"  ↳ ✓{elapsed}"
        return None

    async def _handle_result(self, session: Session, event: AgentEvent) -> None:
        # Turn complete: the next output starts a new post.
        self._streaming.stop_typing(session)
        await self._streaming.close_current_post(session)

        stats = parse_usage(event.payload)
        if stats is None:
            return
        session.usage = stats
        logger.debug(
            "Usage for %s: %s %d/%d tokens $%.4f",
            session.short_id, stats.model_display_name,
            stats.total_tokens_used, stats.context_window_size, stats.total_cost_usd,
        )
        if not session.timers.is_scheduled("status"):
            session.timers.every(
                "status", STATUS_INTERVAL_SECONDS, lambda: self._refresh_status(session),
            )
        await self._actions.update_header(session)

    async def _refresh_status(self, session: Session) -> None:
        if session.process is not None and session.process.is_running():
            await self._actions.update_header(session)

    # ── Special tools ────────────────────────────────────────────

    async def _handle_special_tools(self, session: Session, event: AgentEvent) -> bool:
        """Handle dedicated-post tools. True when normal output is suppressed."""
        suppress = False
        for block in (event.get("message") or {}).get("content") or []:
            if block.get("type") != "tool_use":
                continue
            name = block.get("name")
            tool_id = block.get("id", "")
            tool_input = block.get("input") or {}
            if name == "ExitPlanMode":
                await self._prompts.request_plan_approval(session, tool_id)
                suppress = True
            elif name == "AskUserQuestion":
                await self._prompts.start_question_set(
                    session, tool_id, tool_input.get("questions") or [],
                )
                suppress = True
            elif name == "TodoWrite":
                await self.update_tasks(session, tool_input.get("todos") or [])
            elif name == "Task":
                await self.start_subagent(session, tool_id, tool_input)
        return suppress

    async def update_tasks(self, session: Session, todos: list[dict[str, Any]]) -> None:
        platform = session.platform
        if not todos:
            session.tasks_completed = True
            if session.tasks_post_id:
                session.last_tasks_content = TASKS_COMPLETED_MESSAGE
                await try_operation(
                    lambda: platform.update_post(session.tasks_post_id, TASKS_COMPLETED_MESSAGE),
                    "Update tasks", session=session,
                )
            return

        session.tasks_completed = all(t.get("status") == "completed" for t in todos)
        has_in_progress = any(t.get("status") == "in_progress" for t in todos)
        if has_in_progress and session.in_progress_task_started is None:
            session.in_progress_task_started = utcnow()
        elif not has_in_progress:
            session.in_progress_task_started = None

        elapsed = None
        if session.in_progress_task_started is not None:
            elapsed = round((utcnow() - session.in_progress_task_started).total_seconds())
        full, minimized = render_tasks(todos, elapsed)
        session.last_tasks_content = full
        display = minimized if session.tasks_minimized else full

        if session.tasks_post_id:
            await try_operation(
                lambda: platform.update_post(session.tasks_post_id, display),
                "Update tasks", session=session,
            )
            return
        post = await try_operation(
            lambda: platform.create_interactive_post(
                display, [emoji.TASK_TOGGLE_EMOJIS[0]], session.thread_id,
            ),
            "Create tasks post", session=session,
        )
        if post is not None:
            session.tasks_post_id = post.id
            self._ctx.index.index_post(post.id, session)

    async def toggle_tasks(self, session: Session, action: str) -> bool:
        """Minimize on reaction added, expand on reaction removed."""
        if not session.tasks_post_id or not session.last_tasks_content:
            return False
        minimize = action == "added"
        if session.tasks_minimized == minimize:
            return True
        session.tasks_minimized = minimize
        display = (
            minimize_tasks(session.last_tasks_content) if minimize
            else session.last_tasks_content
        )
        post_id = session.tasks_post_id
        await try_operation(
            lambda: session.platform.update_post(post_id, display),
            "Toggle tasks display", session=session,
        )
        self._actions.persist(session)
        return True

    async def start_subagent(self, session: Session, tool_id: str, tool_input: dict[str, Any]) -> None:
        description = tool_input.get("description") or "Working..."
        subagent_type = tool_input.get("subagent_type") or "general"
        await self._streaming.close_current_post(session)
        message = f"🤖 **Subagent** *({subagent_type})*\n> {description}\n⏳ Running..."
        post = await try_operation(
            lambda: session.platform.create_post(message, session.thread_id),
            "Post subagent status", session=session,
        )
        if post is None:
            return
        session.active_subagents[tool_id] = post.id
        await self._streaming.bump_tasks_to_bottom(session)

    async def _complete_subagents(self, session: Session, event: AgentEvent) -> None:
        content = (event.get("message") or {}).get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if block.get("type") != "tool_result":
                continue
            post_id = session.active_subagents.pop(block.get("tool_use_id", ""), None)
            if post_id is None:
                continue
            await try_operation(
                lambda: session.platform.update_post(post_id, "🤖 **Subagent** ✅ *completed*"),
                "Update subagent status", session=session,
            )
