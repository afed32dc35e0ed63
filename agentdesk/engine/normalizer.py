"""Protocol normalizer: wire records -> AgentEvent.

Both backends hand over plain dict records in the stream-json shape
(the pipe backend after framing, the SDK backend after converting its
message objects). One ProtocolNormalizer per session turns each record
into zero or more typed events, in order.

Mapping:
    system/init                      -> Init
    stream_event content_block_start -> ToolStarted (tool_use blocks)
    stream_event content_block_delta -> TextDelta / ToolInputChunk / ThinkingDelta
    stream_event message_delta       -> ToolFinishedGenerating (stop_reason tool_use)
    assistant                        -> TextDelta fallback, ToolStarted for unseen tools
    user (tool_result blocks)        -> ToolResult, queued while the tool is unknown
    result                           -> TurnComplete (deduplicated)
    error                            -> Failed
    exit                             -> Exited
    raw                              -> RawOutput

Records carrying a ``parent_tool_use_id`` belong to a sub-agent and
are dropped. Failed and Exited are emitted at most once; nothing is
emitted after Exited.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from agentdesk.adapters.events import (
    AgentEvent,
    Exited,
    Failed,
    Init,
    RawOutput,
    TextDelta,
    ThinkingDelta,
    ToolFinishedGenerating,
    ToolInputChunk,
    ToolResult,
    ToolStarted,
    TurnComplete,
)

logger = logging.getLogger(__name__)

TOOL_RUNNING = "running"
TOOL_SENT = "sent"
TOOL_DONE = "done"

_TURN_RECORDS = frozenset({"stream_event", "assistant", "user"})


@dataclass
class ToolActivity:
    """One tool invocation tracked across a turn."""
    tool_id: str
    name: str
    status: str = TOOL_RUNNING
    input_json: str = ""


def tool_result_text(content: Any) -> str:
    """Best-effort plain text from a tool_result ``content`` payload."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    chunks.append(text)
            elif isinstance(item, str):
                chunks.append(item)
        if chunks:
            return "\n".join(chunks)
    if isinstance(content, dict):
        for key in ("text", "output", "result", "content"):
            value = content.get(key)
            if isinstance(value, str):
                return value
    try:
        return json.dumps(content)
    except (TypeError, ValueError):
        return str(content)


def _as_int(value: Any, default: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _error_text(record: dict[str, Any]) -> str:
    message = record.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
        return tool_result_text(content)
    if isinstance(message, str):
        return message
    error = record.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if error:
        return str(error)
    return "Unknown backend error"


class ProtocolNormalizer:
    """Stateful record-to-event mapper for one session."""

    def __init__(self, process_id: str) -> None:
        self.process_id = process_id
        self.session_id: str | None = None
        self._tools: dict[str, ToolActivity] = {}
        # content block index -> tool id, per assistant message
        self._block_tools: dict[int, str] = {}
        self._queued_results: dict[str, list[ToolResult]] = {}
        self._turn_text: list[str] = []
        self._saw_delta = False
        # message id -> text already emitted from snapshots
        self._snapshot_text: dict[str, str] = {}
        self._seen_result_uuids: set[str] = set()
        self._last_result: dict[str, Any] | None = None
        # any stream, assistant or user record since the last result
        self._turn_activity = False
        self._failed = False
        self._exited = False
        self._handlers = {
            "system": self._on_system,
            "stream_event": self._on_stream_event,
            "assistant": self._on_assistant,
            "user": self._on_user,
            "result": self._on_result,
            "error": self._on_error,
            "exit": self._on_exit,
            "raw": self._on_raw,
        }

    @property
    def tools(self) -> dict[str, ToolActivity]:
        return self._tools

    @property
    def exited(self) -> bool:
        return self._exited

    def normalize(self, record: dict[str, Any]) -> list[AgentEvent]:
        """Map one wire record to events. Never raises on unknown shapes."""
        if self._exited:
            return []
        if record.get("parent_tool_use_id"):
            logger.debug(
                "Session %s dropping sub-agent %s record",
                self.process_id[:8], record.get("type"),
            )
            return []
        rtype = record.get("type", "")
        if rtype in _TURN_RECORDS:
            self._turn_activity = True
        handler = self._handlers.get(rtype)
        if handler is None:
            logger.debug(
                "Session %s ignoring record type %r", self.process_id[:8], rtype,
            )
            return []
        return handler(record)

    # ── Terminal events ──────────────────────────────────────

    def failure(self, message: str, *, fatal: bool = False) -> list[AgentEvent]:
        if self._failed or self._exited:
            return []
        self._failed = True
        return [Failed(process_id=self.process_id, message=message, fatal=fatal)]

    def exit(
        self,
        code: int | None = None,
        signal: str | None = None,
        *,
        cancelled: bool = False,
    ) -> list[AgentEvent]:
        if self._exited:
            return []
        self._exited = True
        return [Exited(
            process_id=self.process_id,
            code=code,
            signal=signal,
            cancelled=cancelled,
        )]

    # ── Record handlers ──────────────────────────────────────

    def _on_system(self, record: dict[str, Any]) -> list[AgentEvent]:
        if record.get("subtype") != "init":
            logger.debug(
                "Session %s system/%s ignored",
                self.process_id[:8], record.get("subtype"),
            )
            return []
        session_id = str(record.get("session_id") or "")
        self.session_id = session_id or self.session_id
        return [Init(
            process_id=self.process_id,
            session_id=session_id,
            model=record.get("model"),
            cwd=record.get("cwd"),
        )]

    def _on_stream_event(self, record: dict[str, Any]) -> list[AgentEvent]:
        event = record.get("event") or {}
        etype = event.get("type")
        if etype == "message_start":
            self._block_tools = {}
            return []
        if etype == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") != "tool_use":
                return []
            tool_id = str(block.get("id") or "")
            self._block_tools[_as_int(event.get("index"), 0)] = tool_id
            return self._start_tool(tool_id, str(block.get("name") or ""))
        if etype == "content_block_delta":
            return self._on_block_delta(event)
        if etype == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason") == "tool_use":
                return self._finish_generating()
            return []
        # content_block_stop, message_stop and pings carry nothing new
        return []

    def _on_block_delta(self, event: dict[str, Any]) -> list[AgentEvent]:
        delta = event.get("delta") or {}
        dtype = delta.get("type")
        if dtype == "text_delta":
            text = str(delta.get("text") or "")
            if not text:
                return []
            self._saw_delta = True
            self._turn_text.append(text)
            return [TextDelta(process_id=self.process_id, text=text)]
        if dtype == "input_json_delta":
            tool_id = self._block_tools.get(_as_int(event.get("index"), 0))
            if tool_id is None:
                logger.debug(
                    "Session %s input_json_delta for unknown block %s",
                    self.process_id[:8], event.get("index"),
                )
                return []
            partial = str(delta.get("partial_json") or "")
            activity = self._tools.get(tool_id)
            if activity is not None:
                activity.input_json += partial
            return [ToolInputChunk(
                process_id=self.process_id,
                tool_id=tool_id,
                partial_json=partial,
            )]
        if dtype == "thinking_delta":
            return [ThinkingDelta(
                process_id=self.process_id,
                text=str(delta.get("thinking") or ""),
            )]
        return []

    def _on_assistant(self, record: dict[str, Any]) -> list[AgentEvent]:
        message = record.get("message") or {}
        content = message.get("content")
        if not isinstance(content, list):
            return []
        message_id = message.get("id")
        events: list[AgentEvent] = []
        cumulative = ""
        for block in content:
            if not isinstance(block, dict):
                continue
            btype = block.get("type")
            if btype == "text":
                cumulative += str(block.get("text") or "")
                if not self._saw_delta:
                    events.extend(self._snapshot_delta(message_id, cumulative))
            elif btype == "tool_use":
                tool_id = str(block.get("id") or "")
                if tool_id and tool_id not in self._tools:
                    events.extend(
                        self._start_tool(tool_id, str(block.get("name") or ""))
                    )
                    tool_input = block.get("input")
                    if tool_input:
                        self._tools[tool_id].input_json = json.dumps(tool_input)
        if message.get("stop_reason") == "tool_use":
            events.extend(self._finish_generating())
        return events

    def _snapshot_delta(self, message_id: str | None, cumulative: str) -> list[AgentEvent]:
        """Emit only the part of a snapshot's text not yet emitted."""
        key = message_id or ""
        emitted = self._snapshot_text.get(key, "") if message_id else ""
        if cumulative.startswith(emitted):
            new_text = cumulative[len(emitted):]
        else:
            new_text = cumulative
        if message_id:
            self._snapshot_text[key] = cumulative
        if not new_text:
            return []
        self._turn_text.append(new_text)
        return [TextDelta(process_id=self.process_id, text=new_text)]

    def _on_user(self, record: dict[str, Any]) -> list[AgentEvent]:
        message = record.get("message") or {}
        content = message.get("content")
        if not isinstance(content, list):
            return []
        events: list[AgentEvent] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_id = str(block.get("tool_use_id") or "")
            result = ToolResult(
                process_id=self.process_id,
                tool_id=tool_id,
                output=tool_result_text(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            )
            activity = self._tools.get(tool_id)
            if activity is None:
                logger.debug(
                    "Session %s queueing result for unknown tool %s",
                    self.process_id[:8], tool_id[:12],
                )
                self._queued_results.setdefault(tool_id, []).append(result)
                continue
            activity.status = TOOL_DONE
            events.append(result)
        return events

    def _on_result(self, record: dict[str, Any]) -> list[AgentEvent]:
        if self._is_duplicate_result(record):
            logger.debug(
                "Session %s dropping duplicate result %s",
                self.process_id[:8], record.get("uuid") or "(no uuid)",
            )
            return []
        if record.get("session_id"):
            self.session_id = str(record["session_id"])
        result = record.get("result")
        text = result if isinstance(result, str) else "".join(self._turn_text)
        event = TurnComplete(
            process_id=self.process_id,
            text=text,
            cost=_as_float(record.get("total_cost_usd")),
            duration_ms=_as_int(record.get("duration_ms")),
            session_id=record.get("session_id") or self.session_id,
            is_error=bool(record.get("is_error", False)),
        )
        self._reset_turn()
        return [event]

    def _on_error(self, record: dict[str, Any]) -> list[AgentEvent]:
        return self.failure(_error_text(record))

    def _on_exit(self, record: dict[str, Any]) -> list[AgentEvent]:
        return self.exit(_as_int(record.get("code")), record.get("signal"))

    def _on_raw(self, record: dict[str, Any]) -> list[AgentEvent]:
        return [RawOutput(
            process_id=self.process_id,
            text=str(record.get("text") or ""),
            stream=str(record.get("stream") or "stdout"),
        )]

    # ── Helpers ──────────────────────────────────────────────

    def _start_tool(self, tool_id: str, name: str) -> list[AgentEvent]:
        self._tools[tool_id] = ToolActivity(tool_id=tool_id, name=name)
        events: list[AgentEvent] = [
            ToolStarted(process_id=self.process_id, tool_id=tool_id, name=name)
        ]
        queued = self._queued_results.pop(tool_id, [])
        if queued:
            self._tools[tool_id].status = TOOL_DONE
            events.extend(queued)
        return events

    def _finish_generating(self) -> list[AgentEvent]:
        running = [
            t.tool_id for t in self._tools.values() if t.status == TOOL_RUNNING
        ]
        if not running:
            return []
        for tool_id in running:
            self._tools[tool_id].status = TOOL_SENT
        return [ToolFinishedGenerating(process_id=self.process_id, tool_ids=running)]

    def _is_duplicate_result(self, record: dict[str, Any]) -> bool:
        """Same uuid as an earlier result, or a uuid-less repeat of the last one.

        A uuid-less result is a repeat only when it equals the previous
        result and no turn activity happened in between.
        """
        uuid = record.get("uuid")
        if uuid:
            uuid = str(uuid)
            if uuid in self._seen_result_uuids:
                return True
            self._seen_result_uuids.add(uuid)
        elif not self._turn_activity and record == self._last_result:
            return True
        self._last_result = dict(record)
        return False

    def _reset_turn(self) -> None:
        self._turn_activity = False
        self._turn_text = []
        self._saw_delta = False
        self._snapshot_text = {}
        self._block_tools = {}
        self._tools = {
            k: v for k, v in self._tools.items() if v.status != TOOL_DONE
        }
