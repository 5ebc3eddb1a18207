from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

from threadbridge.engine.capabilities import ChatFormatter
from threadbridge.engine.events import (
    TASKS_COMPLETED_MESSAGE,
    extract_metadata,
    format_tool_use,
    minimize_tasks,
    model_display_name,
    parse_usage,
    render_tasks,
    shorten_path,
    thinking_preview,
)
from threadbridge.engine.models import AgentEvent, Session, utcnow

TODOS = [
    {"content": "Plan", "status": "completed"},
    {"content": "Build", "activeForm": "Building", "status": "in_progress"},
    {"content": "Ship", "status": "pending"},
]


def _event(event_type: str, **payload) -> AgentEvent:
    return AgentEvent.from_json({"type": event_type, **payload})


def _assistant(*blocks) -> AgentEvent:
    return _event("assistant", message={"content": list(blocks)})


@pytest_asyncio.fixture
async def session(registry, platform, workdir):
    session = Session(
        platform_id="mm",
        thread_id="thread-1",
        platform=platform,
        started_by="alice",
        working_dir=str(workdir),
    )
    registry.register(session)
    yield session
    session.timers.cancel_all()


@pytest.fixture
def router(registry):
    return registry.controller.events


# ── Formatting helpers ───────────────────────────────────────────


def test_format_tool_use(monkeypatch) -> None:
    monkeypatch.setenv("HOME", "/home/alice")
    fmt = ChatFormatter()

    for name in ("Task", "ExitPlanMode", "AskUserQuestion", "TodoWrite"):
        assert format_tool_use(name, {}, fmt) is None
    assert format_tool_use("Read", {"file_path": "/home/alice/src/app.py"}, fmt) == "📄 **Read** `~/src/app.py`"
    assert format_tool_use("Bash", {"command": "x" * 60}, fmt) == "💻 **Bash** `" + "x" * 50 + "...`"
    assert format_tool_use("Bash", {"command": "ls"}, fmt) == "💻 **Bash** `ls`"
    assert format_tool_use("mcp__github__create_issue", {}, fmt) == "🔌 **create_issue** *(github)*"
    assert format_tool_use("Frobnicate", {}, fmt) == "● **Frobnicate**"


def test_shorten_path() -> None:
    assert shorten_path("/home/a/x", home="/home/a") == "~/x"
    assert shorten_path("/etc/x", home="/home/a") == "/etc/x"
    assert shorten_path("", home="/home/a") == ""


def test_thinking_preview_cuts_at_word() -> None:
    assert thinking_preview("short thought") == "short thought"
    preview = thinking_preview("word " * 60)
    assert preview.endswith("word...")
    assert len(preview) <= 203


def test_extract_metadata() -> None:
    text, title, description = extract_metadata(
        "<thinking>hmm</thinking>Hello [SESSION_TITLE: Fix login] "
        "[SESSION_DESCRIPTION: Repair the OAuth flow]"
    )
    assert (text, title, description) == ("Hello", "Fix login", "Repair the OAuth flow")


@pytest.mark.parametrize("marker", ["<short title>", "...", "ab"])
def test_extract_metadata_rejects_placeholder_titles(marker) -> None:
    text, title, _ = extract_metadata(f"[SESSION_TITLE: {marker}]")
    assert text == ""
    assert title is None


def test_model_display_name() -> None:
    assert model_display_name("claude-opus-4-5-20251101") == "Opus 4.5"
    assert model_display_name("claude-sonnet-4-20250514") == "Sonnet 4"
    assert model_display_name("claude-mystery-1") == "Mystery"
    assert model_display_name("gpt") == "gpt"


def test_parse_usage_picks_costliest_model() -> None:
    stats = parse_usage({
        "total_cost_usd": 0.5,
        "modelUsage": {
            "claude-haiku-4-5-20251001": {
                "inputTokens": 10, "outputTokens": 5, "costUSD": 0.01, "contextWindow": 100000,
            },
            "claude-opus-4-5-20251101": {
                "inputTokens": 100, "outputTokens": 50, "cacheReadInputTokens": 1000,
                "costUSD": 0.4, "contextWindow": 200000,
            },
        },
    })
    assert stats.primary_model == "claude-opus-4-5-20251101"
    assert stats.model_display_name == "Opus 4.5"
    assert stats.context_window_size == 200000
    assert stats.total_tokens_used == 1165
    assert stats.total_cost_usd == 0.5
    assert parse_usage({"total_cost_usd": 1.0}) is None


def test_render_and_minimize_tasks() -> None:
    full, minimized = render_tasks(TODOS, elapsed_seconds=12)
    assert full == (
        "---\n📋 **Tasks** (1/3 · 33%)\n\n"
        "✅ ~~Plan~~\n"
        "🔄 **Building** (12s)\n"
        "○ Ship\n"
    )
    assert minimized == "---\n📋 **Tasks** (1/3 · 33%) · 🔄 Building (12s) 🔽"
    assert minimize_tasks(full) == minimized

    full, minimized = render_tasks(TODOS, elapsed_seconds=2)
    assert "(2s)" not in full
    assert minimized.endswith("· 🔄 Building 🔽")


# ── Router ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_tool_result_reports_elapsed_time(router, session) -> None:
    session.active_tool_starts["t1"] = utcnow() - timedelta(seconds=7)
    session.active_tool_starts["t2"] = utcnow()

    await router.handle_event(session, _event("tool_result", tool_result={"tool_use_id": "t1"}))
    await router.handle_event(session, _event("tool_result", tool_result={"tool_use_id": "t2"}))
    await router.handle_event(session, _event("tool_result", tool_result={"tool_use_id": "t3", "is_error": True}))

    assert session.pending_content == "  ↳ ✓ (7s)\n  ↳ ❌ Error\n"
    assert session.has_agent_responded
    assert session.active_tool_starts == {}


@pytest.mark.asyncio
async def test_assistant_blocks_are_formatted(router, session) -> None:
    await router.handle_event(session, _assistant(
        {"type": "thinking", "thinking": "hmm"},
        {"type": "text", "text": "Looking now"},
        {"type": "tool_use", "id": "t1", "name": "Grep", "input": {"pattern": "TODO"}},
    ))
    assert session.pending_content == "> 💭 *hmm*\nLooking now\n🔎 **Grep** `TODO`\n"
    assert session.timers.is_scheduled("update")


@pytest.mark.asyncio
async def test_system_and_local_command_output(router, session) -> None:
    await router.handle_event(session, _event("system", subtype="error", error="boom"))
    await router.handle_event(session, _event("system", subtype="init"))
    await router.handle_event(session, _event(
        "user", message={"content": "<local-command-stdout>ok\n</local-command-stdout>"},
    ))
    assert session.pending_content == "❌ boom\nok\n"
    assert not session.has_agent_responded


@pytest.mark.asyncio
async def test_todo_write_creates_and_toggles_tasks_post(registry, router, session, platform) -> None:
    await router.handle_event(session, _assistant(
        {"type": "tool_use", "id": "t1", "name": "TodoWrite", "input": {"todos": TODOS}},
    ))

    tasks_post = session.tasks_post_id
    assert tasks_post is not None
    assert session.pending_content == ""
    assert (tasks_post, "arrow_down_small") in platform.reactions
    assert platform.posts[tasks_post].message.startswith("---\n📋 **Tasks** (1/3 · 33%)")
    assert registry.lookup_by_message_id(tasks_post) is session

    assert await registry.handle_reaction("mm", tasks_post, "arrow_down_small", "mallory") is False
    assert await registry.handle_reaction("mm", tasks_post, "arrow_down_small", "alice") is True
    assert session.tasks_minimized
    assert platform.posts[tasks_post].message.endswith("🔽")
    assert registry.store.find_by_thread("mm", "thread-1").tasks_minimized

    assert await registry.handle_reaction("mm", tasks_post, "arrow_down_small", "alice", "removed") is True
    assert not session.tasks_minimized
    assert platform.posts[tasks_post].message == session.last_tasks_content

    await router.update_tasks(session, [])
    assert session.tasks_completed
    assert platform.posts[tasks_post].message == TASKS_COMPLETED_MESSAGE


@pytest.mark.asyncio
async def test_subagent_status_post(router, session, platform) -> None:
    await router.handle_event(session, _assistant({
        "type": "tool_use", "id": "task-1", "name": "Task",
        "input": {"description": "Find bugs", "subagent_type": "explorer"},
    }))
    post_id = session.active_subagents["task-1"]
    assert platform.posts[post_id].message == "🤖 **Subagent** *(explorer)*\n> Find bugs\n⏳ Running..."

    await router.handle_event(session, _event(
        "user", message={"content": [{"type": "tool_result", "tool_use_id": "task-1"}]},
    ))
    assert session.active_subagents == {}
    assert platform.posts[post_id].message == "🤖 **Subagent** ✅ *completed*"


@pytest.mark.asyncio
async def test_result_records_usage_and_starts_status_refresh(router, session) -> None:
    session.pending_content = "partial\n"
    await router.handle_event(session, _event(
        "result",
        total_cost_usd=0.25,
        modelUsage={"claude-sonnet-4-20250514": {"inputTokens": 40, "outputTokens": 2, "costUSD": 0.25}},
    ))

    assert session.usage.model_display_name == "Sonnet 4"
    assert session.usage.total_tokens_used == 42
    assert session.timers.is_scheduled("status")
    assert session.current_post_id is None
    assert session.pending_content == ""


@pytest.mark.asyncio
async def test_title_marker_updates_session(router, session) -> None:
    await router.handle_event(session, _assistant(
        {"type": "text", "text": "[SESSION_TITLE: Fix login]Sure."},
    ))
    assert session.title == "Fix login"
    assert session.pending_content == "Sure.\n"
