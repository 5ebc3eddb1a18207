"""threadbridge: bridges agent CLI sessions to chat threads."""
from .models import (
    AgentEvent,
    ChatFile,
    ChatPost,
    EventType,
    PersistedSession,
    ProcessExit,
    Rejected,
    Session,
    SessionState,
    StartRequest,
)
from .config import BridgeConfig
from .errors import (
    AdmissionRejectedError,
    BridgeError,
    ErrorSeverity,
    ProcessNotRunningError,
    SessionConflictError,
    SessionError,
    SessionResumeError,
    SessionStartError,
    StoreError,
)

__all__ = [
    # Registry and scheduler (lazy import)
    "SessionRegistry",
    "CleanupScheduler",
    "LifecycleController",
    # Collaborator interfaces (lazy import)
    "ChatPlatform",
    "AgentProcess",
    "AgentCliProcess",
    "SessionContext",
    # Models
    "AgentEvent",
    "ChatFile",
    "ChatPost",
    "EventType",
    "PersistedSession",
    "ProcessExit",
    "Rejected",
    "Session",
    "SessionState",
    "StartRequest",
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Errors
    "AdmissionRejectedError",
    "BridgeError",
    "ErrorSeverity",
    "ProcessNotRunningError",
    "SessionConflictError",
    "SessionError",
    "SessionResumeError",
    "SessionStartError",
    "StoreError",
]


def __getattr__(name: str):
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "CleanupScheduler":
        from .scheduler import CleanupScheduler
        return CleanupScheduler
    if name == "LifecycleController":
        from .controller import LifecycleController
        return LifecycleController
    if name in ("ChatPlatform", "AgentProcess", "SessionContext"):
        from . import capabilities
        return getattr(capabilities, name)
    if name == "AgentCliProcess":
        from .agent_process import AgentCliProcess
        return AgentCliProcess
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
