"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTDESK_* env vars
or an agentdesk.yaml file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import ConfigError

if TYPE_CHECKING:
    from agentdesk.adapters.events import AgentEvent

logger = logging.getLogger(__name__)


# Async callback receiving every normalized event and permission request.
# Signature: async def callback(event: AgentEvent) -> None
EventCallback = Callable[["AgentEvent"], Awaitable[None]]

_TRUTHY = {"1", "true", "yes", "on"}


async def fire_event(
    callback: EventCallback | None,
    event: AgentEvent,
) -> None:
    """Fire an event callback if set. Listener errors never reach the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception(
            "Event callback failed for %s", getattr(event, "event_type", event),
        )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_number(name: str, default: float, cast: Callable[[str], Any]) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigError("environment", f"{name}={raw!r}: {exc}") from exc


def default_store_root() -> Path:
    """Directory holding one transcript folder per project slug."""
    return Path.home() / ".claude" / "projects"


def default_app_dir() -> Path:
    return Path.home() / ".agentdesk"


@dataclass
class EngineConfig:
    """Session orchestration configuration."""

    # Backend selection
    default_backend: str = "pipe"
    # Explicit path to the agent CLI; empty means auto-discover.
    claude_cli_path: str = ""
    default_permission_mode: str = "default"
    # Token-level streaming (stream_event records).
    include_partial_messages: bool = True

    # Grace window between SIGTERM and SIGKILL when killing a pipe backend.
    kill_grace_seconds: float = 5.0
    # Max wait for an operator permission decision.
    # 0 (or a negative value) waits indefinitely.
    permission_timeout_seconds: float = 0.0
    # Timeout for outbound control requests (e.g. set_permission_mode).
    control_request_timeout_seconds: float = 10.0

    # Session store
    store_root: Path = field(default_factory=default_store_root)
    first_prompt_scan_bytes: int = 16384
    watch_debounce_seconds: float = 0.5

    # Where the allow list and logs live.
    app_dir: Path = field(default_factory=default_app_dir)

    # Event bus
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTDESK_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTDESK_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: AGENTDESK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no AGENTDESK_* env vars set, using defaults"
            )

        store_root = os.getenv("AGENTDESK_STORE_ROOT", "").strip()
        app_dir = os.getenv("AGENTDESK_APP_DIR", "").strip()
        config = cls(
            default_backend=os.getenv(
                "AGENTDESK_BACKEND", cls.default_backend
            ).strip().lower(),
            claude_cli_path=os.getenv(
                "AGENTDESK_CLAUDE_CLI_PATH", cls.claude_cli_path
            ).strip(),
            default_permission_mode=os.getenv(
                "AGENTDESK_PERMISSION_MODE", cls.default_permission_mode
            ).strip(),
            include_partial_messages=_env_bool(
                "AGENTDESK_PARTIAL_MESSAGES", cls.include_partial_messages
            ),
            kill_grace_seconds=_env_number(
                "AGENTDESK_KILL_GRACE", cls.kill_grace_seconds, float
            ),
            permission_timeout_seconds=_env_number(
                "AGENTDESK_PERMISSION_TIMEOUT",
                cls.permission_timeout_seconds, float,
            ),
            control_request_timeout_seconds=_env_number(
                "AGENTDESK_CONTROL_TIMEOUT",
                cls.control_request_timeout_seconds, float,
            ),
            store_root=(
                Path(store_root).expanduser()
                if store_root
                else default_store_root()
            ),
            first_prompt_scan_bytes=_env_number(
                "AGENTDESK_PROMPT_SCAN_BYTES",
                cls.first_prompt_scan_bytes, int,
            ),
            watch_debounce_seconds=_env_number(
                "AGENTDESK_WATCH_DEBOUNCE",
                cls.watch_debounce_seconds, float,
            ),
            app_dir=(
                Path(app_dir).expanduser() if app_dir else default_app_dir()
            ),
            event_queue_size=_env_number(
                "AGENTDESK_QUEUE_SIZE", cls.event_queue_size, int
            ),
            log_level=os.getenv("AGENTDESK_LOG_LEVEL", cls.log_level).upper(),
        )
        logger.info(
            "EngineConfig.from_env: backend=%s mode=%s store=%s log_level=%s",
            config.default_backend,
            config.default_permission_mode,
            config.store_root,
            config.log_level,
        )
        return config
