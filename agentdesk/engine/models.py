"""Core data models for the session orchestration engine.

All enums and plain dataclasses shared by the supervisor, the
backends and the permission mediator. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    KILLED = "killed"


class PermissionMode(str, Enum):
    """Maps to the agent CLI / claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: str | PermissionMode | None) -> PermissionMode | None:
        """Accept an enum member, its value, or None."""
        if value is None or isinstance(value, PermissionMode):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(
                f"Unknown permission mode '{value}'. "
                f"Expected one of: {', '.join(m.value for m in cls)}"
            ) from None


class BackendKind(str, Enum):
    """Which wire realization carries the agent protocol."""
    PIPE = "pipe"  # out-of-process CLI, newline-delimited JSON over stdio
    SDK = "sdk"    # in-process claude_agent_sdk message iterator


class PermissionBehavior(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


DEFAULT_DENY_MESSAGE = "User denied tool call"
SESSION_TERMINATED_MESSAGE = "Session terminated"


def make_id() -> str:
    return str(uuid.uuid4())


@dataclass
class PermissionResponse:
    """The operator's decision for one permission request."""
    behavior: PermissionBehavior = PermissionBehavior.DENY
    updated_input: dict[str, Any] | None = None
    message: str | None = None
    # Persist the derived tool pattern to the allow list (allow only).
    remember: bool = False

    @classmethod
    def allow(
        cls,
        updated_input: dict[str, Any] | None = None,
        *,
        remember: bool = False,
    ) -> PermissionResponse:
        return cls(
            behavior=PermissionBehavior.ALLOW,
            updated_input=updated_input,
            remember=remember,
        )

    @classmethod
    def deny(cls, message: str | None = None) -> PermissionResponse:
        return cls(
            behavior=PermissionBehavior.DENY,
            message=message or DEFAULT_DENY_MESSAGE,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionResponse:
        """Build a response from a loosely-typed client payload."""
        behavior = PermissionBehavior(str(data.get("behavior", "deny")).lower())
        updated = data.get("updated_input", data.get("updatedInput"))
        if behavior == PermissionBehavior.ALLOW:
            return cls.allow(
                updated if isinstance(updated, dict) else None,
                remember=bool(data.get("remember", False)),
            )
        message = data.get("message")
        return cls.deny(str(message) if message else None)

    @property
    def allowed(self) -> bool:
        return self.behavior == PermissionBehavior.ALLOW

    def to_wire(self, original_input: dict[str, Any]) -> dict[str, Any]:
        """Render as the control-protocol permission payload."""
        if self.allowed:
            return {
                "behavior": "allow",
                "updatedInput": (
                    self.updated_input
                    if self.updated_input is not None
                    else original_input
                ),
            }
        return {
            "behavior": "deny",
            "message": self.message or DEFAULT_DENY_MESSAGE,
        }


@dataclass
class PermissionRequest:
    """A gated tool call waiting on the operator."""
    process_id: str
    request_id: str = field(default_factory=make_id)
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
