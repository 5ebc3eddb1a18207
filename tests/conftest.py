"""Shared fakes: an in-memory chat platform and a scripted agent process."""
from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

import pytest

from threadbridge.engine.capabilities import AgentProcess, ChatPlatform, ProcessOptions
from threadbridge.engine.config import BridgeConfig
from threadbridge.engine.models import AgentEvent, ChatPost, ProcessExit, StartRequest
from threadbridge.engine.registry import SessionRegistry


class FakePlatform(ChatPlatform):
    """Records every call; post ids are ``p1``, ``p2``, ..."""

    def __init__(self, platform_id: str = "mm", allowed: set[str] | None = None) -> None:
        self._platform_id = platform_id
        self._ids = itertools.count(1)
        self.allowed = set(allowed or ())
        self.posts: dict[str, ChatPost] = {}
        self.created: list[tuple[str, str]] = []
        self.updates: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.reactions: list[tuple[str, str]] = []
        self.removed_reactions: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self.missing: set[str] = set()
        self.files: dict[str, bytes] = {}
        self.mcp_config: dict[str, Any] | None = {"mcpServers": {}}

    @property
    def platform_id(self) -> str:
        return self._platform_id

    async def create_post(self, message: str, thread_id: str) -> ChatPost:
        post = ChatPost(id=f"p{next(self._ids)}", message=message, channel_id=thread_id)
        self.posts[post.id] = post
        self.created.append((thread_id, message))
        return post

    async def update_post(self, post_id: str, message: str) -> ChatPost:
        post = self.posts.setdefault(post_id, ChatPost(id=post_id))
        post.message = message
        self.updates.append((post_id, message))
        return post

    async def delete_post(self, post_id: str) -> None:
        self.posts.pop(post_id, None)
        self.deleted.append(post_id)

    async def add_reaction(self, post_id: str, emoji_name: str) -> None:
        self.reactions.append((post_id, emoji_name))

    async def remove_reaction(self, post_id: str, emoji_name: str) -> None:
        self.removed_reactions.append((post_id, emoji_name))

    async def send_typing(self, thread_id: str) -> None:
        self.typing.append(thread_id)

    async def get_post(self, post_id: str) -> ChatPost | None:
        if post_id in self.missing:
            return None
        return self.posts.get(post_id) or ChatPost(id=post_id)

    async def download_file(self, file_id: str) -> bytes:
        return self.files[file_id]

    def is_user_allowed(self, username: str) -> bool:
        return username in self.allowed

    def get_mcp_config(self) -> dict[str, Any] | None:
        return self.mcp_config

    # ── Test helpers ─────────────────────────────────────────────

    def messages(self, thread_id: str | None = None) -> list[str]:
        return [m for t, m in self.created if thread_id is None or t == thread_id]

    def find(self, fragment: str) -> list[str]:
        """Created or updated texts containing ``fragment``."""
        texts = [m for _, m in self.created] + [m for _, m in self.updates]
        return [t for t in texts if fragment in t]


class FakeProcess(AgentProcess):
    """Agent process whose events are pushed by the test."""

    def __init__(self, options: ProcessOptions, *, permanent_reason: str | None = None) -> None:
        super().__init__()
        self.options = options
        self.running = False
        self.killed = False
        self.interrupted = False
        self.sent: list[Any] = []
        self.tool_results: list[tuple[str, Any]] = []
        self._permanent_reason = permanent_reason

    async def start(self) -> None:
        self.running = True

    async def kill(self) -> None:
        self.killed = True
        if self.running:
            self.exit(-15)

    def interrupt(self) -> bool:
        if not self.running:
            return False
        self.interrupted = True
        return True

    async def send_message(self, content: Any) -> None:
        self.sent.append(content)

    async def send_tool_result(self, tool_use_id: str, content: Any) -> None:
        self.tool_results.append((tool_use_id, content))

    def is_running(self) -> bool:
        return self.running

    def is_permanent_failure(self) -> bool:
        return self._permanent_reason is not None

    def get_permanent_failure_reason(self) -> str | None:
        return self._permanent_reason

    def emit(self, event_type: str, **payload: Any) -> None:
        self.events.put_nowait(AgentEvent.from_json({"type": event_type, **payload}))

    def say(self, text: str) -> None:
        self.emit("assistant", message={"content": [{"type": "text", "text": text}]})

    def exit(self, code: int | None) -> None:
        self.running = False
        self.events.put_nowait(ProcessExit(code))


class FakeProcessFactory:
    """AgentProcessFactory recording every process it creates."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.fail_with: Exception | None = None
        self.permanent_reason: str | None = None

    def __call__(self, options: ProcessOptions) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(options, permanent_reason=self.permanent_reason)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


class FakeWorkspace:
    """WorkspaceIsolation collaborator with a fixed prompt reason."""

    def __init__(self, reason: str | None = "uncommitted", root: str = "/tmp") -> None:
        self.reason = reason
        self.root = root
        self.created: list[str] = []
        self.removed: list[dict[str, Any]] = []

    def directory_exists(self, path: str) -> bool:
        return Path(path).is_dir()

    async def should_prompt(self, session) -> str | None:
        return self.reason

    async def create_workspace(self, session, branch: str) -> dict[str, Any]:
        self.created.append(branch)
        return {"branch": branch, "path": self.root}

    async def remove_workspace(self, info: dict[str, Any]) -> None:
        self.removed.append(info)


async def settle(rounds: int = 50) -> None:
    """Let receive loops and timer tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def workdir():
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(workdir: Path) -> BridgeConfig:
    return BridgeConfig(
        max_sessions=3,
        store_path=str(workdir / "store" / "sessions.json"),
    )


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def registry(config: BridgeConfig, factory: FakeProcessFactory, platform: FakePlatform):
    reg = SessionRegistry(config, process_factory=factory)
    reg.add_platform(platform)
    return reg


@pytest.fixture
def make_request(workdir: Path):
    def _make(
        thread_id: str = "thread-1",
        username: str = "alice",
        prompt: str = "hello",
        platform_id: str = "mm",
    ) -> StartRequest:
        return StartRequest(
            platform_id=platform_id,
            thread_id=thread_id,
            username=username,
            prompt=prompt,
            working_dir=str(workdir),
        )
    return _make
