from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeWorkspace, settle

from threadbridge.engine.controller import (
    METADATA_REMINDER,
    PAUSED_MESSAGE,
    is_valid_branch_name,
    with_metadata_reminder,
)
from threadbridge.engine.errors import SessionStartError
from threadbridge.engine.models import PersistedSession, SessionState, to_iso, utcnow
from threadbridge.engine.registry import SessionRegistry


def _record(workdir, thread_id: str = "thread-9", **kwargs) -> PersistedSession:
    kwargs.setdefault("last_activity_at", to_iso(utcnow()))
    return PersistedSession(
        platform_id="mm",
        thread_id=thread_id,
        agent_session_id="agent-prev",
        started_by="alice",
        working_dir=str(workdir),
        session_start_post_id="start-9",
        tasks_post_id="tasks-9",
        **kwargs,
    )


# ── Helpers ──────────────────────────────────────────────────────


def test_metadata_reminder_every_fifth_message() -> None:
    assert with_metadata_reminder("hi", 1) == "hi"
    assert with_metadata_reminder("hi", 4) == "hi"
    assert with_metadata_reminder("hi", 5) == f"hi\n\n{METADATA_REMINDER}"
    assert with_metadata_reminder("hi", 10).endswith(METADATA_REMINDER)


def test_branch_name_validation() -> None:
    assert is_valid_branch_name("feature/login-fix")
    assert is_valid_branch_name("v1.2")
    assert not is_valid_branch_name("-oops")
    assert not is_valid_branch_name("a..b")
    assert not is_valid_branch_name("bad name")
    assert not is_valid_branch_name("ref.lock")


# ── Start ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_launches_process_and_sends_prompt(
    registry, platform, factory, make_request,
) -> None:
    session = await registry.start(make_request(prompt="fix the tests"))

    process = factory.last
    assert session.state is SessionState.ACTIVE
    assert process.sent == ["fix the tests"]
    assert process.options.agent_session_id == session.agent_session_id
    assert process.options.resume is False
    assert process.options.mcp_config == platform.mcp_config
    assert session.message_count == 1
    assert platform.created[0] == ("thread-1", "*Starting session...*")
    assert registry.lookup_by_message_id(session.session_start_post_id) is session
    # Header rewritten with the status table.
    assert "👤 **Started by** | @alice" in platform.posts[session.session_start_post_id].message
    # Nothing durable until the agent answers.
    assert registry.store.load() == {}


@pytest.mark.asyncio
async def test_launch_failure_tears_down_without_persisting(
    registry, platform, factory, make_request,
) -> None:
    factory.fail_with = FileNotFoundError("claude: not found")

    with pytest.raises(SessionStartError):
        await registry.start(make_request())

    assert registry.active_count == 0
    assert registry.lookup_by_message_id("p1") is None
    assert platform.find("❌ Failed to start session mm:thread-1")
    assert registry.store.load() == {}


@pytest.mark.asyncio
async def test_event_callback_sees_lifecycle(config, factory, platform, make_request) -> None:
    events: list[dict] = []

    async def on_event(event: dict) -> None:
        events.append(event)

    registry = SessionRegistry(config, process_factory=factory, event_callback=on_event)
    registry.add_platform(platform)
    session = await registry.start(make_request())
    await registry.controller.kill_session(session)

    names = [e["event"] for e in events]
    assert "session_started" in names
    assert names[-1] == "session_ended"
    assert {"old_state": "starting", "new_state": "active"}.items() <= events[0].items()


# ── Exit classification side effects ─────────────────────────────


@pytest.mark.asyncio
async def test_first_answer_enables_persistence(registry, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.say("[SESSION_TITLE: Fix the login flow]\nLooking at it now.")
    await settle()

    assert session.has_agent_responded
    assert session.title == "Fix the login flow"
    record = registry.store.get(session.session_id)
    assert record is not None
    assert record.title == "Fix the login flow"


@pytest.mark.asyncio
async def test_normal_exit_soft_deletes_record(registry, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.say("[SESSION_TITLE: Fix the login flow]\nDone.")
    await settle()

    factory.last.exit(0)
    await settle()

    assert session.state is SessionState.EXITED_NORMAL
    assert registry.active_count == 0
    assert registry.store.load() == {}
    assert registry.store.get(session.session_id).cleaned_at is not None
    assert session.timers.active == []


@pytest.mark.asyncio
async def test_exit_before_any_answer_is_dropped(registry, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.exit(1)
    await settle()

    assert registry.active_count == 0
    assert session.state is SessionState.EXITED_NORMAL
    assert registry.store.get(session.session_id) is None


@pytest.mark.asyncio
async def test_error_exit_keeps_record(registry, platform, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.say("working")
    await settle()
    factory.last.exit(2)
    await settle()

    assert session.state is SessionState.EXITED_RETRYABLE
    assert platform.find("**[Exited: 2]**")
    assert registry.store.find_by_thread("mm", "thread-1") is not None


@pytest.mark.asyncio
async def test_interrupt_then_exit_pauses(registry, platform, factory, make_request) -> None:
    session = await registry.start(make_request())
    process = factory.last
    process.say("partial answer")
    await settle()

    assert await registry.controller.interrupt_session(session, "alice") is True
    assert session.was_interrupted
    assert process.interrupted
    assert platform.find("⏸️ **Interrupted** by @alice")

    process.exit(130)
    await settle()

    assert session.state is SessionState.PAUSED_INTERRUPTED
    assert platform.messages()[-1] == PAUSED_MESSAGE
    assert registry.active_count == 0
    assert registry.has_paused_session("mm", "thread-1")


@pytest.mark.asyncio
async def test_interrupt_before_answer_drops_record(registry, platform, factory, make_request) -> None:
    await registry.start(make_request())
    session = registry.lookup_by_thread("mm", "thread-1")
    await registry.controller.interrupt_session(session, "alice")
    factory.last.exit(130)
    await settle()

    assert platform.messages()[-1] == PAUSED_MESSAGE
    assert not registry.has_paused_session("mm", "thread-1")


@pytest.mark.asyncio
async def test_interrupt_idle_session(registry, platform, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.running = False

    assert await registry.controller.interrupt_session(session, "alice") is False
    assert not session.was_interrupted
    assert platform.find("Session is idle")


@pytest.mark.asyncio
async def test_kill_cancels_timers_and_receive_loop(registry, factory, make_request) -> None:
    session = await registry.start(make_request())
    receive_task = session.receive_task
    assert "typing" in session.timers.active

    await registry.controller.kill_session(session, unpersist=False)
    await settle()

    assert factory.last.killed
    assert session.timers.active == []
    assert session.receive_task is None
    assert receive_task.cancelled()
    assert registry.active_count == 0
    assert session.state is SessionState.EXITED_NORMAL


@pytest.mark.asyncio
async def test_receive_loop_survives_handler_errors(registry, factory, make_request) -> None:
    session = await registry.start(make_request())
    handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
    with patch.object(registry.controller.events, "handle_event", handler):
        factory.last.say("one")
        factory.last.say("two")
        await settle()
        assert handler.await_count == 2
        assert registry.get(session.session_id) is session


@pytest.mark.asyncio
async def test_exit_tears_down_when_final_flush_fails(
    registry, platform, factory, make_request,
) -> None:
    session = await registry.start(make_request())
    factory.last.say("some output")
    await settle()
    assert session.has_agent_responded

    failing = AsyncMock(side_effect=RuntimeError("chat down"))
    with patch.object(platform, "create_post", failing), \
            patch.object(platform, "update_post", failing):
        factory.last.exit(0)
        await settle()

    assert failing.await_count >= 1
    assert registry.active_count == 0
    assert registry.get(session.session_id) is None
    assert registry.lookup_by_message_id(session.session_start_post_id) is None
    assert session.state is SessionState.EXITED_NORMAL
    assert session.timers.active == []
    assert session.pending_content == ""
    assert registry.store.load() == {}
    assert session.receive_task is None


@pytest.mark.asyncio
async def test_exit_tears_down_when_store_fails(registry, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.say("some output")
    await settle()

    with patch.object(registry.store, "soft_delete", side_effect=OSError("disk full")):
        factory.last.exit(0)
        await settle()

    assert registry.active_count == 0
    assert registry.get(session.session_id) is None
    assert session.timers.active == []


@pytest.mark.asyncio
async def test_cancel_session_soft_deletes(registry, platform, factory, make_request) -> None:
    session = await registry.start(make_request())
    factory.last.say("[SESSION_TITLE: Refactor the parser]\nOk")
    await settle()

    await registry.controller.cancel_session(session, "alice")

    assert platform.find("🛑 **Session cancelled** by @alice")
    assert registry.active_count == 0
    assert registry.store.load() == {}


# ── Resume ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_resume_rebuilds_session(registry, platform, factory, workdir) -> None:
    record = _record(workdir, title="Old topic", allowed_users=["alice", "bob"], message_count=4)
    registry.store.save(record.session_id, record)

    session = await registry.controller.resume_session(record, platform)

    assert session is not None
    assert session.is_resumed
    assert session.state is SessionState.ACTIVE
    assert session.allowed_users == {"alice", "bob"}
    assert session.message_count == 4
    process = factory.last
    assert process.options.resume is True
    assert process.options.agent_session_id == "agent-prev"
    assert registry.lookup_by_message_id("start-9") is session
    assert registry.lookup_by_message_id("tasks-9") is session
    assert platform.find("🔄 **Session resumed**")
    assert registry.store.find_by_thread("mm", "thread-9") is not None


@pytest.mark.asyncio
async def test_resume_keeps_unknown_record_fields(registry, platform, factory, workdir) -> None:
    record = PersistedSession.from_dict({
        **_record(workdir).to_dict(),
        "customField": "keep-me",
    })
    registry.store.save(record.session_id, record)
    assert registry.store.get(record.session_id).extra == {"customField": "keep-me"}

    session = await registry.controller.resume_session(record, platform)
    assert session.extra == {"customField": "keep-me"}
    factory.last.say("[SESSION_TITLE: New topic]\nBack again.")
    await settle()
    registry.controller.persist(session)

    reloaded = registry.store.get(record.session_id)
    assert reloaded.title == "New topic"
    assert reloaded.extra == {"customField": "keep-me"}
    assert reloaded.to_dict()["customField"] == "keep-me"


@pytest.mark.asyncio
async def test_resume_with_missing_directory_removes_record(registry, platform, workdir) -> None:
    record = _record(workdir)
    record.working_dir = str(workdir / "gone")
    registry.store.save(record.session_id, record)

    assert await registry.controller.resume_session(record, platform) is None
    assert registry.store.get(record.session_id) is None
    assert platform.find("⚠️ **Cannot resume session**")
    assert registry.active_count == 0


@pytest.mark.asyncio
async def test_resume_with_deleted_thread_removes_record(registry, platform, workdir) -> None:
    record = _record(workdir)
    registry.store.save(record.session_id, record)
    platform.missing.add("thread-9")

    assert await registry.controller.resume_session(record, platform) is None
    assert registry.store.get(record.session_id) is None


@pytest.mark.asyncio
async def test_resume_with_missing_fields_removes_record(registry, platform, workdir) -> None:
    record = _record(workdir)
    record.agent_session_id = ""
    registry.store.save(record.session_id, record)

    assert await registry.controller.resume_session(record, platform) is None
    assert registry.store.get(record.session_id) is None


@pytest.mark.asyncio
async def test_resume_at_capacity_keeps_record(
    registry, config, platform, workdir, make_request,
) -> None:
    config.max_sessions = 1
    await registry.start(make_request())
    record = _record(workdir)
    registry.store.save(record.session_id, record)

    assert await registry.controller.resume_session(record, platform) is None
    assert registry.store.get(record.session_id) is not None
    assert registry.active_count == 1


@pytest.mark.asyncio
async def test_resume_launch_failure_starts_fresh(registry, platform, factory, workdir) -> None:
    record = _record(workdir)
    registry.store.save(record.session_id, record)
    factory.fail_with = OSError("spawn failed")

    assert await registry.controller.resume_session(record, platform) is None
    assert registry.store.get(record.session_id) is None
    assert platform.find("Could not resume previous session. Starting fresh.")
    assert registry.active_count == 0


@pytest.mark.asyncio
async def test_failed_resume_counts_toward_bound(registry, platform, factory, workdir) -> None:
    record = _record(workdir)
    registry.store.save(record.session_id, record)

    session = await registry.controller.resume_session(record, platform)
    factory.last.exit(1)
    await settle()

    assert session.state is SessionState.EXITED_RETRYABLE
    assert registry.store.get(record.session_id).resume_fail_count == 1
    assert platform.find("will retry on next restart (1/3)")


@pytest.mark.asyncio
async def test_failed_resume_at_bound_removes_record(registry, platform, factory, workdir) -> None:
    record = _record(workdir, resume_fail_count=2)
    registry.store.save(record.session_id, record)

    session = await registry.controller.resume_session(record, platform)
    factory.last.exit(1)
    await settle()

    assert session.state is SessionState.EXITED_PERMANENT
    assert registry.store.get(record.session_id) is None
    assert platform.find("permanently failed** after 3 attempts")


@pytest.mark.asyncio
async def test_permanent_resume_failure_removes_record(registry, platform, factory, workdir) -> None:
    record = _record(workdir)
    registry.store.save(record.session_id, record)
    factory.permanent_reason = "the previous conversation no longer exists"

    await registry.controller.resume_session(record, platform)
    factory.last.exit(1)
    await settle()

    assert registry.store.get(record.session_id) is None
    assert platform.find("the previous conversation no longer exists")


@pytest.mark.asyncio
async def test_answer_after_resume_resets_failure_count(registry, platform, factory, workdir) -> None:
    record = _record(workdir, resume_fail_count=2)
    registry.store.save(record.session_id, record)

    session = await registry.controller.resume_session(record, platform)
    factory.last.say("back again")
    await settle()

    assert session.resume_fail_count == 0


@pytest.mark.asyncio
async def test_follow_up_on_paused_session_resumes_first(registry, platform, factory, workdir) -> None:
    record = _record(workdir, last_activity_at=to_iso(utcnow() - timedelta(minutes=3)))
    registry.store.save(record.session_id, record)

    handled = await registry.handle_message("mm", "thread-9", "alice", "continue please")

    assert handled is True
    assert factory.last.sent == ["continue please"]
    assert not platform.find("🔄 **Session resumed**")
    assert registry.lookup_by_thread("mm", "thread-9") is not None


# ── Commands ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_change_directory_restarts_with_fresh_conversation(
    registry, platform, factory, make_request, workdir,
) -> None:
    target = workdir / "other"
    target.mkdir()
    session = await registry.start(make_request())
    old_process = factory.last
    old_agent_id = session.agent_session_id

    assert await registry.controller.change_directory(session, "alice", str(target)) is True
    await settle()

    new_process = factory.last
    assert new_process is not old_process
    assert old_process.killed
    assert new_process.options.working_dir == str(target)
    assert new_process.options.resume is False
    assert session.agent_session_id != old_agent_id
    assert session.is_restarting is False
    assert session.state is SessionState.ACTIVE
    assert registry.get(session.session_id) is session
    assert platform.find("📂 **Working directory changed**")


@pytest.mark.asyncio
async def test_change_directory_rejects_other_users(registry, platform, make_request, workdir) -> None:
    session = await registry.start(make_request())
    assert await registry.controller.change_directory(session, "mallory", str(workdir)) is False
    assert platform.find("Only @alice can change the working directory")


@pytest.mark.asyncio
async def test_invite_and_kick(registry, platform, make_request) -> None:
    platform.allowed = {"admin"}
    session = await registry.start(make_request())
    controller = registry.controller

    assert await controller.invite_user(session, "alice", "bob") is True
    assert "bob" in session.allowed_users
    assert "👥 **Participants** | @bob" in platform.posts[session.session_start_post_id].message

    assert await controller.kick_user(session, "alice", "alice") is False
    assert await controller.kick_user(session, "alice", "admin") is False
    assert await controller.kick_user(session, "alice", "carol") is False
    assert await controller.kick_user(session, "alice", "bob") is True
    assert "bob" not in session.allowed_users
    assert platform.find("🚫 @bob removed from this session by @alice")

    assert await controller.invite_user(session, "bob", "eve") is False


@pytest.mark.asyncio
async def test_enable_interactive_permissions_restarts_with_resume(
    registry, config, platform, factory, make_request,
) -> None:
    config.skip_permissions = True
    session = await registry.start(make_request())
    assert factory.last.options.skip_permissions is True
    assert factory.last.options.mcp_config is None

    assert await registry.controller.enable_interactive_permissions(session, "alice") is True
    await settle()

    process = factory.last
    assert process.options.skip_permissions is False
    assert process.options.resume is True
    assert process.options.mcp_config == platform.mcp_config
    assert session.force_interactive_permissions
    assert "🔐 Interactive" in platform.posts[session.session_start_post_id].message

    # One way only.
    assert await registry.controller.enable_interactive_permissions(session, "alice") is False


# ── Workspace prompt ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_workspace_prompt_holds_first_message_until_skipped(
    config, factory, platform, make_request,
) -> None:
    config.workspace_mode = "prompt"
    registry = SessionRegistry(config, process_factory=factory, workspace=FakeWorkspace())
    registry.add_platform(platform)

    session = await registry.start(make_request(prompt="build it"))
    assert session.state is SessionState.AWAITING_INPUT
    assert session.queued_prompt == "build it"
    assert factory.last.sent == []
    prompt_post = session.workspace_prompt_post_id
    assert (prompt_post, "x") in platform.reactions

    assert await registry.handle_reaction("mm", prompt_post, "x", "alice") is True
    assert factory.last.sent == ["build it"]
    assert session.state is SessionState.ACTIVE
    assert session.queued_prompt is None
    assert platform.find("Continuing in main repo")


@pytest.mark.asyncio
async def test_workspace_branch_reply_restarts_in_worktree(
    config, factory, platform, make_request, workdir,
) -> None:
    tree = workdir / "tree"
    tree.mkdir()
    config.workspace_mode = "require"
    workspace = FakeWorkspace(reason=None, root=str(tree))
    registry = SessionRegistry(config, process_factory=factory, workspace=workspace)
    registry.add_platform(platform)

    session = await registry.start(make_request(prompt="build it"))
    assert session.state is SessionState.AWAITING_INPUT
    first_process = factory.last

    assert await registry.handle_message("mm", "thread-1", "alice", "feature/login") is True
    await settle()

    assert workspace.created == ["feature/login"]
    assert session.working_dir == str(tree)
    assert session.workspace_info == {"branch": "feature/login", "path": str(tree)}
    assert factory.last is not first_process
    assert factory.last.sent == ["build it"]
    assert session.state is SessionState.ACTIVE
    assert platform.find("✅ **Created worktree** for branch `feature/login`")


@pytest.mark.asyncio
async def test_workspace_invalid_branch_name(config, factory, platform, make_request) -> None:
    config.workspace_mode = "require"
    registry = SessionRegistry(config, process_factory=factory, workspace=FakeWorkspace())
    registry.add_platform(platform)
    session = await registry.start(make_request())

    assert await registry.handle_message("mm", "thread-1", "alice", "not a branch") is True
    assert platform.find("❌ Invalid branch name")
    assert session.queued_prompt == "hello"
