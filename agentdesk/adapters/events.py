"""Event types emitted by the session orchestration engine.

Every normalized backend record and every permission request is
published as one of these dataclasses. ``event_to_dict`` and
``dict_to_event`` convert them for the SSE control surface.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentEvent:
    """Base event for one session."""
    event_type: str = ""
    process_id: str = ""


@dataclass
class Init(AgentEvent):
    event_type: str = "init"
    session_id: str = ""
    model: str | None = None
    cwd: str | None = None


@dataclass
class TextDelta(AgentEvent):
    event_type: str = "text_delta"
    text: str = ""


@dataclass
class ThinkingDelta(AgentEvent):
    event_type: str = "thinking_delta"
    text: str = ""


@dataclass
class ToolStarted(AgentEvent):
    event_type: str = "tool_started"
    tool_id: str = ""
    name: str = ""


@dataclass
class ToolInputChunk(AgentEvent):
    event_type: str = "tool_input_chunk"
    tool_id: str = ""
    partial_json: str = ""


@dataclass
class ToolFinishedGenerating(AgentEvent):
    event_type: str = "tool_finished_generating"
    tool_ids: list[str] = field(default_factory=list)


@dataclass
class ToolResult(AgentEvent):
    event_type: str = "tool_result"
    tool_id: str = ""
    output: str = ""
    is_error: bool = False


@dataclass
class TurnComplete(AgentEvent):
    event_type: str = "turn_complete"
    text: str = ""
    cost: float | None = None
    duration_ms: int | None = None
    session_id: str | None = None
    is_error: bool = False


@dataclass
class Failed(AgentEvent):
    event_type: str = "failed"
    message: str = ""
    # True when the session cannot continue (launch or transport failure).
    fatal: bool = False


@dataclass
class Exited(AgentEvent):
    event_type: str = "exited"
    code: int | None = None
    signal: str | None = None
    cancelled: bool = False


@dataclass
class RawOutput(AgentEvent):
    event_type: str = "raw_output"
    text: str = ""
    stream: str = "stdout"


@dataclass
class PermissionRequested(AgentEvent):
    event_type: str = "permission_requested"
    request_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionResolved(AgentEvent):
    event_type: str = "permission_resolved"
    request_id: str = ""
    behavior: str = ""
    message: str | None = None


@dataclass
class SessionsChanged(AgentEvent):
    event_type: str = "sessions_changed"


# Event type string -> dataclass mapping
_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "init": Init,
    "text_delta": TextDelta,
    "thinking_delta": ThinkingDelta,
    "tool_started": ToolStarted,
    "tool_input_chunk": ToolInputChunk,
    "tool_finished_generating": ToolFinishedGenerating,
    "tool_result": ToolResult,
    "turn_complete": TurnComplete,
    "failed": Failed,
    "exited": Exited,
    "raw_output": RawOutput,
    "permission_requested": PermissionRequested,
    "permission_resolved": PermissionResolved,
    "sessions_changed": SessionsChanged,
}


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a plain dict back to a typed event dataclass."""
    event_type = data.get("event", data.get("event_type", ""))
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event_type" not in filtered:
        filtered["event_type"] = event_type
    return cls(**filtered)
