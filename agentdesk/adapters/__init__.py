"""Adapters package - Bridge between the engine and its consumers.

This package contains the typed event model, the event bus and the
persistent permission allow list shared by the CLI and the HTTP server.
"""
from __future__ import annotations

__all__ = [
    "AgentEvent",
    "EventBus",
    "PermissionStore",
    "event_to_dict",
    "dict_to_event",
    "extract_tool_pattern",
]

from agentdesk.adapters.events import AgentEvent, dict_to_event, event_to_dict
from agentdesk.adapters.event_bus import EventBus
from agentdesk.adapters.permission_store import PermissionStore, extract_tool_pattern
