"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BRIDGE_* env vars,
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for observing session lifecycle events.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

WORKSPACE_MODES = ("off", "prompt", "require")


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Observer errors never break a session."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


def _default_store_path() -> str:
    return str(Path.home() / ".threadbridge" / "sessions.json")


@dataclass
class BridgeConfig:
    """Session bridge configuration."""

    # Admission control
    max_sessions: int = 5

    # Idle handling (seconds)
    session_timeout_seconds: float = 30 * 60
    session_warning_seconds: float = 5 * 60
    cleanup_interval_seconds: float = 60.0

    # Resume handling
    max_resume_failures: int = 3
    history_retention_seconds: float = 30 * 24 * 3600

    # Persistence
    store_path: str = field(default_factory=_default_store_path)

    # Agent process
    agent_command: str = "claude"
    skip_permissions: bool = False
    chrome_enabled: bool = False
    append_system_prompt: str | None = None
    permission_tool_name: str = "mcp__threadbridge-permissions__permission_prompt"

    # Workspace isolation: "off", "prompt" or "require"
    workspace_mode: str = "off"

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def stale_age_seconds(self) -> float:
        """Persisted records idle longer than this are swept at startup."""
        return self.session_timeout_seconds * 2

    def validate(self) -> None:
        """Reject values that would make the bridge misbehave.

        Raises:
            ValueError: On a non-positive limit or unknown workspace mode.
        """
        if self.max_sessions < 1:
            raise ValueError(f"max_sessions must be >= 1, got {self.max_sessions}")
        if self.session_warning_seconds >= self.session_timeout_seconds:
            raise ValueError(
                "session_warning_seconds must be smaller than session_timeout_seconds"
            )
        if self.max_resume_failures < 1:
            raise ValueError(
                f"max_resume_failures must be >= 1, got {self.max_resume_failures}"
            )
        if self.workspace_mode not in WORKSPACE_MODES:
            raise ValueError(
                f"workspace_mode must be one of {', '.join(WORKSPACE_MODES)}, "
                f"got {self.workspace_mode!r}"
            )

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Build a config from BRIDGE_* environment variables."""
        defaults = cls()
        config = cls(
            max_sessions=int(os.getenv(
                "BRIDGE_MAX_SESSIONS", str(defaults.max_sessions)
            )),
            session_timeout_seconds=float(os.getenv(
                "BRIDGE_SESSION_TIMEOUT", str(defaults.session_timeout_seconds)
            )),
            session_warning_seconds=float(os.getenv(
                "BRIDGE_SESSION_WARNING", str(defaults.session_warning_seconds)
            )),
            cleanup_interval_seconds=float(os.getenv(
                "BRIDGE_CLEANUP_INTERVAL", str(defaults.cleanup_interval_seconds)
            )),
            max_resume_failures=int(os.getenv(
                "BRIDGE_MAX_RESUME_FAILURES", str(defaults.max_resume_failures)
            )),
            history_retention_seconds=float(os.getenv(
                "BRIDGE_HISTORY_RETENTION", str(defaults.history_retention_seconds)
            )),
            store_path=os.getenv("BRIDGE_STORE_PATH") or defaults.store_path,
            agent_command=(
                os.getenv("BRIDGE_AGENT_COMMAND")
                or os.getenv("CLAUDE_PATH")
                or defaults.agent_command
            ),
            skip_permissions=_env_flag("BRIDGE_SKIP_PERMISSIONS"),
            chrome_enabled=_env_flag("BRIDGE_CHROME"),
            append_system_prompt=os.getenv("BRIDGE_APPEND_SYSTEM_PROMPT") or None,
            workspace_mode=os.getenv("BRIDGE_WORKSPACE_MODE", defaults.workspace_mode).lower(),
            log_level=os.getenv("BRIDGE_LOG_LEVEL", defaults.log_level).upper(),
            log_file=os.getenv("BRIDGE_LOG_FILE") or None,
        )
        logger.info(
            "BridgeConfig.from_env: max_sessions=%d timeout=%.0fs store=%s command=%s",
            config.max_sessions, config.session_timeout_seconds,
            config.store_path, config.agent_command,
        )
        return config
