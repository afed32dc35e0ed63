"""Transcript store records: index entries, project dirs, flattened sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 timestamps (``Z`` suffix included) into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def iso_from_epoch(seconds: float) -> str:
    return (
        datetime.fromtimestamp(seconds, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


@dataclass
class SessionIndexEntry:
    """One session as listed in ``sessions-index.json`` or synthesized from a transcript."""
    session_id: str
    project_path: str | None = None
    first_prompt: str | None = None
    summary: str | None = None
    created: str | None = None
    modified: str | None = None
    is_sidechain: bool = False
    full_path: str | None = None
    file_mtime: float | None = None  # milliseconds since epoch
    message_count: int | None = None
    git_branch: str | None = None

    # camelCase on disk -> field name
    _KEYS = {
        "sessionId": "session_id",
        "projectPath": "project_path",
        "firstPrompt": "first_prompt",
        "summary": "summary",
        "created": "created",
        "modified": "modified",
        "isSidechain": "is_sidechain",
        "fullPath": "full_path",
        "fileMtime": "file_mtime",
        "messageCount": "message_count",
        "gitBranch": "git_branch",
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionIndexEntry | None:
        """Parse an index entry; None when it has no session id."""
        session_id = data.get("sessionId") or data.get("session_id")
        if not session_id:
            return None
        kwargs = {
            field_name: data[key]
            for key, field_name in cls._KEYS.items()
            if key in data and data[key] is not None
        }
        kwargs["session_id"] = str(session_id)
        kwargs["is_sidechain"] = bool(kwargs.get("is_sidechain", False))
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            key: getattr(self, field_name)
            for key, field_name in self._KEYS.items()
            if getattr(self, field_name) is not None
        }

    def sort_key(self) -> float:
        """Modification time in milliseconds, for recency ordering."""
        modified = parse_timestamp(self.modified)
        if modified is not None:
            return modified.timestamp() * 1000
        return float(self.file_mtime or 0)


@dataclass
class ProjectDirectory:
    """A project's transcript directory and its best-known real path."""
    name: str
    path: str
    encoded_path: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "path": self.path, "encodedPath": self.encoded_path}


@dataclass
class SessionInfo:
    """A session flattened across projects for a history listing."""
    id: str
    project_path: str
    project_name: str
    title: str
    last_message: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectPath": self.project_path,
            "projectName": self.project_name,
            "title": self.title,
            "lastMessage": self.last_message,
            "updatedAt": self.updated_at,
        }
