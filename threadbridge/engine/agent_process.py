"""Agent CLI subprocess adapter.

Runs the agent CLI in streaming JSON mode: one JSON object per line on
stdin (user messages) and stdout (events). Uses
asyncio.create_subprocess_exec (array-based, no shell) for safe
argument passing.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections import deque
from typing import Any

from .capabilities import AgentProcess, MessageContent, ProcessOptions
from .errors import ProcessNotRunningError
from .models import AgentEvent, ProcessExit

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50
KILL_GRACE_SECONDS = 5.0


def build_args(options: ProcessOptions) -> list[str]:
    """Command line for one agent process.

    Raises:
        ValueError: When permissions are interactive but no MCP config
            was provided for the permission prompt server.
    """
    args = [
        options.command,
        "--input-format", "stream-json",
        "--output-format", "stream-json",
        "--verbose",
    ]
    if options.agent_session_id:
        flag = "--resume" if options.resume else "--session-id"
        args.extend([flag, options.agent_session_id])

    if options.skip_permissions:
        args.append("--dangerously-skip-permissions")
    else:
        if options.mcp_config is None:
            raise ValueError("mcp_config is required when permissions are interactive")
        args.extend(["--mcp-config", json.dumps(options.mcp_config)])
        args.extend(["--permission-prompt-tool", options.permission_tool_name])

    if options.chrome:
        args.append("--chrome")
    if options.append_system_prompt:
        args.extend(["--append-system-prompt", options.append_system_prompt])
    return args


class AgentCliProcess(AgentProcess):
    """One agent CLI subprocess feeding ``events``."""

    def __init__(self, options: ProcessOptions) -> None:
        super().__init__()
        self._options = options
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._stderr_reader: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def options(self) -> ProcessOptions:
        return self._options

    async def start(self) -> None:
        if self._proc is not None:
            raise RuntimeError("Agent process already started")
        args = build_args(self._options)
        env = dict(os.environ)
        env.update(self._options.extra_env)
        logger.debug("Starting agent: %s", " ".join(args[:6]))
        # create_subprocess_exec passes args as an array, no shell
        self._proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._options.working_dir,
            env=env,
            limit=16 * 1024 * 1024,
        )
        logger.info(
            "Agent process started (pid=%d, session=%s, resume=%s)",
            self._proc.pid, self._options.agent_session_id[:8], self._options.resume,
        )
        self._stderr_reader = asyncio.create_task(self._read_stderr(self._proc))
        self._reader = asyncio.create_task(self._read_stdout(self._proc))

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Raw agent output: %s", text[:200])
                    continue
                if not isinstance(data, dict):
                    continue
                await self.events.put(AgentEvent.from_json(data))
        finally:
            code = await proc.wait()
            if self._stderr_reader is not None:
                await asyncio.gather(self._stderr_reader, return_exceptions=True)
            logger.info("Agent process exited (pid=%d, code=%s)", proc.pid, code)
            if code and self._stderr_tail:
                logger.warning(
                    "Agent stderr before exit %s:\n%s", code, "\n".join(self._stderr_tail),
                )
            await self.events.put(ProcessExit(code))

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("agent stderr: %s", text)

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def _write(self, payload: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or not self.is_running():
            raise ProcessNotRunningError(self._options.thread_id)
        proc.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
        await proc.stdin.drain()

    async def send_message(self, content: MessageContent) -> None:
        preview = content[:50] if isinstance(content, str) else f"[{len(content)} blocks]"
        logger.debug("Sending: %s", preview)
        await self._write({"type": "user", "message": {"role": "user", "content": content}})

    async def send_tool_result(self, tool_use_id: str, content: Any) -> None:
        logger.debug("Sending tool_result for %s", tool_use_id)
        await self._write({
            "type": "user",
            "message": {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": content if isinstance(content, str) else json.dumps(content),
                }],
            },
        })

    def interrupt(self) -> bool:
        if not self.is_running():
            return False
        try:
            self._proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        return True

    async def kill(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
            logger.info("Agent process stopped (pid=%d)", proc.pid)
        except ProcessLookupError:
            pass

    @property
    def stderr_tail(self) -> list[str]:
        """Last lines the agent wrote to stderr."""
        return list(self._stderr_tail)

    # The CLI gives no reliable signal for an unrecoverable resume, so
    # failed resumes always go through the bounded retry path.
    def is_permanent_failure(self) -> bool:
        return False

    def get_permanent_failure_reason(self) -> str | None:
        return None


def create_agent_process(options: ProcessOptions) -> AgentCliProcess:
    """Default AgentProcessFactory."""
    return AgentCliProcess(options)
