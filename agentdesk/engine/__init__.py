"""agentdesk engine: supervised agent sessions over the Claude CLI or SDK."""
from .models import (
    BackendKind,
    PermissionBehavior,
    PermissionMode,
    PermissionRequest,
    PermissionResponse,
    SessionState,
)
from .config import EngineConfig
from .errors import (
    BackendNotAvailableError,
    BackendStartError,
    ConfigError,
    ControlRequestError,
    OrchestrationError,
    SessionNotFoundError,
)

__all__ = [
    # Supervisor (lazy import to avoid circular deps)
    "SessionSupervisor",
    "AgentSession",
    # Models
    "BackendKind",
    "PermissionBehavior",
    "PermissionMode",
    "PermissionRequest",
    "PermissionResponse",
    "SessionState",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "AgentdeskConfig",
    "load_yaml_config",
    # Errors
    "BackendNotAvailableError",
    "BackendStartError",
    "ConfigError",
    "ControlRequestError",
    "OrchestrationError",
    "SessionNotFoundError",
]


def __getattr__(name: str):
    if name == "SessionSupervisor":
        from .supervisor import SessionSupervisor
        return SessionSupervisor
    if name == "AgentSession":
        from .agent_session import AgentSession
        return AgentSession
    if name == "AgentdeskConfig":
        from .yaml_config import AgentdeskConfig
        return AgentdeskConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
