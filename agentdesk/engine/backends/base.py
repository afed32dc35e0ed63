"""Abstract base for agent backends.

A backend owns one connection to the agent (a CLI subprocess or an
in-process SDK client) and exposes it as an async sequence of plain
stream-json records. Everything downstream, the normalizer included,
is backend-agnostic:

- PipeBackend: ``claude --print`` with newline-delimited JSON on stdio
- SdkBackend: claude_agent_sdk.ClaudeSDKClient message iterator

Permission requests reach the backend through ``permission_handler``
and never appear in ``records()``.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..models import PermissionResponse
from ..turn_injector import TurnInjector

logger = logging.getLogger(__name__)

# Signature: async def handler(tool_name, tool_input) -> PermissionResponse
PermissionHandler = Callable[[str, dict[str, Any]], Awaitable[PermissionResponse]]


@dataclass
class BackendOptions:
    """Launch parameters shared by every backend."""
    process_id: str
    cwd: str
    resume_session_id: str | None = None
    permission_mode: str | None = None
    include_partial_messages: bool = True
    cli_path: str = ""
    kill_grace_seconds: float = 5.0
    control_timeout_seconds: float = 10.0


class Backend(abc.ABC):
    """One live agent connection."""

    def __init__(
        self,
        options: BackendOptions,
        prompts: TurnInjector,
        permission_handler: PermissionHandler,
    ) -> None:
        self.options = options
        self._prompts = prompts
        self._permission_handler = permission_handler

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name ('pipe' or 'sdk')."""

    @property
    def pid(self) -> int | None:
        """OS process id of the agent, when there is one."""
        return None

    @abc.abstractmethod
    async def start(self) -> None:
        """Open the connection. Raises BackendStartError on launch failure."""

    @abc.abstractmethod
    def records(self) -> AsyncIterator[dict[str, Any]]:
        """Yield wire records until the connection ends.

        The last record is ``{"type": "exit", ...}`` when the agent
        exits on its own.
        """

    @abc.abstractmethod
    async def set_permission_mode(self, mode: str) -> bool:
        """Change the permission mode of the live connection (best effort)."""

    @abc.abstractmethod
    async def terminate(self) -> None:
        """Tear down the connection and reclaim any processes."""
