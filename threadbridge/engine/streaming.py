"""Streaming of agent output into chat posts.

Agent text accumulates in ``session.pending_content`` and is flushed to
the chat platform on a short debounce. Two limits shape each flush:

* SOFT_BREAK_THRESHOLD: past this length the engine looks for a natural
  breakpoint so platforms do not collapse the post behind "show more".
* HARD_BREAK_THRESHOLD: the split point that keeps every post under the
  platform ceiling (MAX_POST_LENGTH). If no breakpoint is found the
  content is split anyway, closing and reopening any open code fence so
  both halves render.

Breakpoint priority: tool result marker, heading, end of a code block,
paragraph break, any line break. Candidates inside an open fence are
never used.
"""
from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .emoji import TASK_TOGGLE_EMOJIS
from .models import ChatFile

if TYPE_CHECKING:
    from .capabilities import ChatPlatform, MessageContent, SessionContext
    from .models import Session

logger = logging.getLogger(__name__)

SOFT_BREAK_THRESHOLD = 2000
MIN_BREAK_THRESHOLD = 500
MAX_LINES_BEFORE_BREAK = 15
HARD_BREAK_THRESHOLD = 14000
MAX_POST_LENGTH = 16000
BREAKPOINT_LOOKAHEAD = 500

UPDATE_DEBOUNCE_SECONDS = 0.5
TYPING_INTERVAL_SECONDS = 3.0

CONTINUED_BELOW = "\n\n*... (continued below)*"
CONTINUED_PREFIX = "*(continued)*\n\n"
TRUNCATED_MARKER = "\n\n*... (truncated)*"

SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

_FENCE_RE = re.compile(r"^```([^\n`]*)", re.MULTILINE)
_TOOL_MARKER_RE = re.compile(r"^  ↳ (?:✓|❌)", re.MULTILINE)
_HEADING_RE = re.compile(r"\n#{2,3} ")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class CodeBlockState:
    is_inside: bool
    language: str | None = None
    open_position: int | None = None


@dataclass(frozen=True)
class Breakpoint:
    position: int
    type: str  # tool_marker | heading | code_block_end | paragraph | none


def get_code_block_state(content: str, position: int) -> CodeBlockState:
    """Whether ``position`` falls inside a fenced code block.

    Fence lines are counted from the start of ``content``; each one
    toggles the state. The language tag of the open fence is returned.
    """
    inside = False
    language: str | None = None
    open_position: int | None = None
    for match in _FENCE_RE.finditer(content, 0, max(0, position)):
        if inside:
            inside, language, open_position = False, None, None
        else:
            inside = True
            language = match.group(1).strip() or None
            open_position = match.start()
    return CodeBlockState(inside, language, open_position)


def _after_line(content: str, index: int) -> int:
    """Position just past the newline ending the line at ``index``."""
    line_end = content.find("\n", index)
    return len(content) if line_end == -1 else line_end + 1


def _outside(content: str, position: int) -> bool:
    return not get_code_block_state(content, position).is_inside


def find_logical_breakpoint(
    content: str,
    start_pos: int,
    max_look_ahead: int = BREAKPOINT_LOOKAHEAD,
) -> Breakpoint | None:
    """Find the best place to end a post at or after ``start_pos``.

    Only the window ``[start_pos, start_pos + max_look_ahead)`` is
    searched. When ``start_pos`` is inside a code fence, the only
    acceptable break is right after that fence closes.
    """
    end = min(len(content), start_pos + max_look_ahead)

    if get_code_block_state(content, start_pos).is_inside:
        close = _FENCE_RE.search(content, start_pos, end)
        if close is None:
            return None
        return Breakpoint(_after_line(content, close.start()), "code_block_end")

    for match in _TOOL_MARKER_RE.finditer(content, start_pos, end):
        if _outside(content, match.start()):
            return Breakpoint(_after_line(content, match.start()), "tool_marker")

    for match in _HEADING_RE.finditer(content, start_pos, end):
        if match.start() > 0 and _outside(content, match.start() + 1):
            return Breakpoint(match.start(), "heading")

    for match in _FENCE_RE.finditer(content, start_pos, end):
        if get_code_block_state(content, match.start()).is_inside:
            return Breakpoint(_after_line(content, match.start()), "code_block_end")

    index = content.find("\n\n", start_pos, end)
    while index != -1:
        if _outside(content, index):
            return Breakpoint(index + 2, "paragraph")
        index = content.find("\n\n", index + 1, end)

    index = content.find("\n", start_pos, end)
    while index != -1:
        if _outside(content, index):
            return Breakpoint(index + 1, "none")
        index = content.find("\n", index + 1, end)

    return None


def ends_at_breakpoint(content: str) -> str:
    """Classify how ``content`` ends, using the breakpoint type names."""
    trimmed = content.rstrip()
    last_line = trimmed.rsplit("\n", 1)[-1]
    if _TOOL_MARKER_RE.match(last_line):
        return "tool_marker"
    if last_line.startswith("```") and _outside(trimmed, len(trimmed)):
        return "code_block_end"
    if content.endswith("\n\n"):
        return "paragraph"
    return "none"


def should_flush_early(content: str) -> bool:
    """True once content is long enough that a platform may collapse it."""
    if len(content) > SOFT_BREAK_THRESHOLD:
        return True
    return len(content.split("\n")) > MAX_LINES_BEFORE_BREAK


def normalize_content(content: str) -> str:
    return _BLANK_RUN_RE.sub("\n\n", content).strip()


def _forced_break(content: str) -> int:
    """Hard split position: last line break near the limit, else the limit."""
    position = content.rfind("\n", 0, HARD_BREAK_THRESHOLD)
    if position < HARD_BREAK_THRESHOLD * 0.7:
        position = HARD_BREAK_THRESHOLD
    if position < len(content) and content[position] != "\n":
        # Never cut through a fence line; its language tag must survive whole.
        line_start = content.rfind("\n", 0, position) + 1
        if line_start > 0 and content.startswith("```", line_start):
            position = line_start
    return position


def plan_split(content: str) -> tuple[str, str] | None:
    """Decide whether ``content`` should end the current post.

    Returns ``(first, rest)`` or None when the content fits as is. A fence
    left open by the split is closed in ``first`` and reopened, with the
    same language tag, at the start of ``rest``.
    """
    if len(content) <= SOFT_BREAK_THRESHOLD:
        return None

    breakpoint_ = find_logical_breakpoint(content, SOFT_BREAK_THRESHOLD)
    if breakpoint_ is not None and breakpoint_.position <= HARD_BREAK_THRESHOLD:
        position = breakpoint_.position
    elif len(content) > HARD_BREAK_THRESHOLD:
        position = _forced_break(content)
    else:
        return None

    first = content[:position].rstrip()
    rest = content[position:].lstrip("\n")
    if not first or not rest.strip():
        return None

    fence = get_code_block_state(content, position)
    if fence.is_inside:
        first = f"{first}\n```"
        rest = f"```{fence.language or ''}\n{rest}"
    return first, rest


def split_content(content: str) -> list[str]:
    """Cut normalized content into post-sized parts with continuation markers."""
    parts: list[str] = []
    remaining = content
    while True:
        split = plan_split(remaining)
        if split is None:
            break
        first, rest = split
        parts.append(first + CONTINUED_BELOW)
        remaining = CONTINUED_PREFIX + rest
    if len(remaining) > MAX_POST_LENGTH:
        remaining = remaining[:MAX_POST_LENGTH - 50] + TRUNCATED_MARKER
    parts.append(remaining)
    return parts


class StreamingEngine:
    """Buffers a session's output and writes it to chat posts."""

    def __init__(
        self,
        ctx: SessionContext,
        *,
        debounce_seconds: float = UPDATE_DEBOUNCE_SECONDS,
        typing_interval_seconds: float = TYPING_INTERVAL_SECONDS,
    ) -> None:
        self._ctx = ctx
        self._debounce = debounce_seconds
        self._typing_interval = typing_interval_seconds

    # ── Buffering ────────────────────────────────────────────────

    def append(self, session: Session, text: str) -> None:
        """Queue text for the current post and schedule a flush."""
        if not text:
            return
        session.pending_content += text + "\n"
        self.schedule_update(session)

    def schedule_update(self, session: Session) -> None:
        """Debounced flush. No-op while one is already scheduled."""
        session.timers.schedule("update", self._debounce, lambda: self.flush(session))

    async def flush(self, session: Session) -> None:
        """Write pending content to the chat, splitting when needed."""
        async with session.flush_lock:
            if not session.pending_content.strip():
                return
            parts = split_content(normalize_content(session.pending_content))
            if len(parts) > 1:
                # The final part is what the next flush continues from.
                session.pending_content = parts[-1]
            for index, part in enumerate(parts):
                target = session.current_post_id
                is_last = index == len(parts) - 1
                if not is_last:
                    session.current_post_id = None
                post_id = await self._write_post(session, target, part)
                if is_last:
                    session.current_post_id = post_id

    async def close_current_post(self, session: Session) -> None:
        """Flush, then make the next output start a fresh post."""
        session.timers.cancel("update")
        try:
            await self.flush(session)
        finally:
            session.current_post_id = None
            session.pending_content = ""

    async def _write_post(self, session: Session, post_id: str | None, text: str) -> str:
        platform = session.platform
        if post_id is not None:
            await platform.update_post(post_id, text)
            return post_id
        if self._has_active_tasks(session):
            return await self._repurpose_tasks_post(session, text)
        post = await platform.create_post(text, session.thread_id)
        self._ctx.index.index_post(post.id, session)
        return post.id

    # ── Task list placement ──────────────────────────────────────

    @staticmethod
    def _has_active_tasks(session: Session) -> bool:
        return bool(
            session.tasks_post_id
            and session.last_tasks_content
            and not session.tasks_completed
        )

    async def _repurpose_tasks_post(self, session: Session, text: str) -> str:
        """Move the task list below new content without deleting posts.

        The existing task-list post receives ``text``; a fresh task-list
        post is created underneath it. Returns the id now holding ``text``.
        """
        platform = session.platform
        old_tasks_id = session.tasks_post_id
        tasks_content = session.last_tasks_content or ""
        try:
            await platform.remove_reaction(old_tasks_id, TASK_TOGGLE_EMOJIS[0])
        except Exception as exc:
            logger.debug("Could not remove task toggle from %s: %s", old_tasks_id, exc)
        await platform.update_post(old_tasks_id, text)
        new_post = await platform.create_interactive_post(
            tasks_content, [TASK_TOGGLE_EMOJIS[0]], session.thread_id,
        )
        session.tasks_post_id = new_post.id
        self._ctx.index.index_post(new_post.id, session)
        return old_tasks_id

    async def bump_tasks_to_bottom(self, session: Session) -> None:
        """Re-post an active task list so it sits below the latest message."""
        if not self._has_active_tasks(session):
            return
        platform = session.platform
        old_tasks_id = session.tasks_post_id
        try:
            new_post = await platform.create_interactive_post(
                session.last_tasks_content, [TASK_TOGGLE_EMOJIS[0]], session.thread_id,
            )
        except Exception as exc:
            logger.warning("Failed to bump task list for %s: %s", session.short_id, exc)
            return
        session.tasks_post_id = new_post.id
        self._ctx.index.index_post(new_post.id, session)
        try:
            await platform.delete_post(old_tasks_id)
        except Exception as exc:
            logger.warning("Failed to delete old task list %s: %s", old_tasks_id, exc)

    # ── Typing indicator ─────────────────────────────────────────

    def start_typing(self, session: Session) -> None:
        """Send typing now, then every few seconds until stopped."""
        platform = session.platform
        thread_id = session.thread_id
        session.timers.every(
            "typing",
            self._typing_interval,
            lambda: platform.send_typing(thread_id),
            immediate=True,
        )

    def stop_typing(self, session: Session) -> None:
        session.timers.cancel("typing")


async def build_message_content(
    text: str,
    platform: ChatPlatform,
    files: list[ChatFile] | None = None,
) -> MessageContent:
    """Plain text, or content blocks with base64 images when any are attached."""
    images = [f for f in files or [] if f.mime_type in SUPPORTED_IMAGE_TYPES]
    if not images:
        return text

    blocks: list[dict] = []
    for image in images:
        try:
            data = await platform.download_file(image.id)
        except NotImplementedError:
            logger.warning("Platform cannot download files, skipping %s", image.name)
            continue
        except Exception as exc:
            logger.warning("Failed to download image %s: %s", image.name, exc)
            continue
        blocks.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.mime_type,
                "data": base64.b64encode(data).decode("ascii"),
            },
        })
        logger.debug("Attached image %s (%s, %d bytes)", image.name, image.mime_type, len(data))

    if text:
        blocks.append({"type": "text", "text": text})
    return blocks
