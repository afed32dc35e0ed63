"""In-process backend built on claude_agent_sdk.ClaudeSDKClient.

SDK message objects are turned into the same stream-json record dicts
the pipe backend produces, by attribute inspection, so one normalizer
serves both. The SDK is imported lazily so the rest of the engine works
without it installed.
"""
from __future__ import annotations

import logging
import os
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from ..errors import BackendNotAvailableError, BackendStartError
from ..models import PermissionResponse
from ..turn_injector import TurnInjector
from .base import Backend, BackendOptions, PermissionHandler

logger = logging.getLogger(__name__)


def block_to_dict(block: Any) -> dict[str, Any] | None:
    """Convert one SDK content block to its wire dict."""
    if isinstance(block, dict):
        return block
    if hasattr(block, "tool_use_id"):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": getattr(block, "content", None),
            "is_error": bool(getattr(block, "is_error", False)),
        }
    if hasattr(block, "thinking"):
        return {"type": "thinking", "thinking": block.thinking}
    if hasattr(block, "name") and hasattr(block, "input"):
        return {
            "type": "tool_use",
            "id": getattr(block, "id", ""),
            "name": block.name,
            "input": block.input,
        }
    if hasattr(block, "text"):
        return {"type": "text", "text": block.text}
    logger.debug("Unrecognized SDK content block %s", type(block).__name__)
    return None


def _content(content: Any) -> Any:
    if isinstance(content, list):
        return [d for d in (block_to_dict(b) for b in content) if d is not None]
    return content


def message_to_record(message: Any) -> dict[str, Any] | None:
    """Convert one SDK message object to a stream-json record.

    Order matters: StreamEvent, SystemMessage, ResultMessage,
    AssistantMessage, UserMessage.
    """
    if isinstance(message, dict):
        return message
    parent = getattr(message, "parent_tool_use_id", None)
    if hasattr(message, "event") and isinstance(message.event, dict):
        return {
            "type": "stream_event",
            "uuid": getattr(message, "uuid", None),
            "session_id": getattr(message, "session_id", None),
            "event": message.event,
            "parent_tool_use_id": parent,
        }
    if hasattr(message, "subtype") and hasattr(message, "data"):
        data = dict(message.data or {})
        data["type"] = "system"
        data["subtype"] = message.subtype
        return data
    if hasattr(message, "total_cost_usd") or hasattr(message, "num_turns"):
        return {
            "type": "result",
            "subtype": getattr(message, "subtype", None),
            "uuid": getattr(message, "uuid", None),
            "session_id": getattr(message, "session_id", None),
            "num_turns": getattr(message, "num_turns", None),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "duration_ms": getattr(message, "duration_ms", None),
            "is_error": bool(getattr(message, "is_error", False)),
            "result": getattr(message, "result", None),
        }
    if hasattr(message, "content") and hasattr(message, "model"):
        return {
            "type": "assistant",
            "message": {
                "id": getattr(message, "id", None),
                "role": "assistant",
                "model": message.model,
                "content": _content(message.content),
                "stop_reason": getattr(message, "stop_reason", None),
            },
            "parent_tool_use_id": parent,
        }
    if hasattr(message, "content"):
        return {
            "type": "user",
            "message": {"role": "user", "content": _content(message.content)},
            "parent_tool_use_id": parent,
        }
    logger.debug("Unrecognized SDK message %s", type(message).__name__)
    return None


class SdkBackend(Backend):
    """ClaudeSDKClient driven by the session's TurnInjector."""

    def __init__(
        self,
        options: BackendOptions,
        prompts: TurnInjector,
        permission_handler: PermissionHandler,
    ) -> None:
        super().__init__(options, prompts, permission_handler)
        self._client: Any = None
        self._stderr: deque[str] = deque()
        self._closed = False

    @property
    def name(self) -> str:
        return "sdk"

    def _capture_stderr(self, line: str) -> None:
        text = line.rstrip()
        if text:
            self._stderr.append(text)
            logger.debug(
                "Session %s sdk stderr: %s", self.options.process_id[:8], text[:300],
            )

    async def _can_use_tool(
        self, tool_name: str, tool_input: dict, context: object = None,
    ):
        """can_use_tool callback: (tool_name, tool_input, context) -> PermissionResult."""
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        response: PermissionResponse = await self._permission_handler(
            tool_name, dict(tool_input or {})
        )
        if response.allowed:
            return PermissionResultAllow(
                updated_input=(
                    response.updated_input
                    if response.updated_input is not None
                    else tool_input
                ),
            )
        return PermissionResultDeny(message=response.to_wire(tool_input)["message"])

    def build_options_kwargs(self) -> dict[str, Any]:
        opts = self.options
        kwargs: dict[str, Any] = dict(
            cwd=opts.cwd,
            include_partial_messages=opts.include_partial_messages,
            can_use_tool=self._can_use_tool,
            stderr=self._capture_stderr,
        )
        if opts.permission_mode:
            kwargs["permission_mode"] = opts.permission_mode
        if opts.resume_session_id:
            kwargs["resume"] = opts.resume_session_id
        if opts.cli_path:
            kwargs["cli_path"] = opts.cli_path
        return kwargs

    async def start(self) -> None:
        try:
            from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
        except ImportError as exc:
            raise BackendNotAvailableError("sdk", str(exc)) from exc

        kwargs = self.build_options_kwargs()
        # The bundled CLI refuses to start when it believes it is nested.
        os.environ.pop("CLAUDECODE", None)
        logger.info(
            "Session %s connecting SDK client cwd=%s resume=%s mode=%s partial=%s",
            self.options.process_id[:8],
            self.options.cwd,
            (self.options.resume_session_id or "-")[:8],
            kwargs.get("permission_mode", "default"),
            self.options.include_partial_messages,
        )
        self._client = ClaudeSDKClient(options=ClaudeAgentOptions(**kwargs))
        try:
            await self._client.connect(prompt=self._prompts)
        except Exception as exc:
            raise BackendStartError(self.options.process_id, str(exc)) from exc

    def _drain_stderr(self) -> list[dict[str, Any]]:
        records = [
            {"type": "raw", "text": line, "stream": "stderr"}
            for line in self._stderr
        ]
        self._stderr.clear()
        return records

    async def records(self) -> AsyncIterator[dict[str, Any]]:
        if self._client is None:
            raise RuntimeError("SdkBackend.records() called before start()")
        async for message in self._client.receive_messages():
            for record in self._drain_stderr():
                yield record
            record = message_to_record(message)
            if record is not None:
                yield record
        for record in self._drain_stderr():
            yield record
        yield {"type": "exit", "code": 0, "signal": None}

    async def set_permission_mode(self, mode: str) -> bool:
        if self._client is None or not hasattr(self._client, "set_permission_mode"):
            return False
        try:
            await self._client.set_permission_mode(mode)
        except Exception as exc:
            logger.warning(
                "Session %s set_permission_mode(%s) failed: %s",
                self.options.process_id[:8], mode, exc,
            )
            return False
        self.options.permission_mode = mode
        return True

    async def terminate(self) -> None:
        if self._closed or self._client is None:
            return
        self._closed = True
        try:
            await self._client.disconnect()
        except Exception as exc:
            logger.warning(
                "Session %s SDK disconnect failed: %s",
                self.options.process_id[:8], exc,
            )
        logger.info("Session %s SDK client disconnected", self.options.process_id[:8])
