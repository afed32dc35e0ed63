"""Read-only access to the agent CLI's transcript store.

Storage layout (written by the agent CLI, never by us):
    ~/.claude/projects/{slug}/sessions-index.json   (optional)
    ~/.claude/projects/{slug}/{session_id}.jsonl

The index is either ``{"version": N, "entries": [...]}`` or a bare list.
Transcripts missing from the index are synthesized from their first
few KiB and merged in; the index wins on conflicts. Every read degrades
to an empty result instead of raising.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from agentdesk.shared.models.session import (
    ProjectDirectory,
    SessionIndexEntry,
    SessionInfo,
    iso_from_epoch,
    parse_timestamp,
)
from agentdesk.shared.services.path_codec import decode_path, encode_path, project_name
from agentdesk.shared.services.store_watcher import StoreWatcher

logger = logging.getLogger(__name__)

INDEX_FILENAME = "sessions-index.json"
TRANSCRIPT_SUFFIX = ".jsonl"
DEFAULT_SCAN_BYTES = 16384
PROMPT_PREVIEW_CHARS = 200
TITLE_CHARS = 80
UNTITLED = "Untitled"

_IDE_TAG_RE = re.compile(r"<ide_opened_file>.*?</ide_opened_file>", re.DOTALL)
_IDE_TAG_UNCLOSED_RE = re.compile(r"<ide_opened_file>.*", re.DOTALL)


def clean_prompt(text: str | None) -> str:
    """Strip editor-injected ``<ide_opened_file>`` tags, closed or truncated."""
    if not text:
        return ""
    cleaned = _IDE_TAG_RE.sub("", text).strip()
    return _IDE_TAG_UNCLOSED_RE.sub("", cleaned).strip()


def _is_plain_name(name: str) -> bool:
    """A single path component that stays inside its parent directory."""
    if not name or name in (".", ".."):
        return False
    return not any(c in name for c in ("/", "\\", ":", "\0"))


def _user_text(record: dict[str, Any]) -> str:
    """Text of a real user message record, or ''."""
    if record.get("type") != "user":
        return ""
    message = record.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b["text"] for b in content
            if isinstance(b, dict) and b.get("type") == "text" and b.get("text")
        )
    return ""


class SessionStore:
    """Lists projects and sessions and loads transcripts."""

    def __init__(
        self,
        root: Path | str | None = None,
        first_prompt_scan_bytes: int = DEFAULT_SCAN_BYTES,
    ) -> None:
        self._root = Path(root) if root else Path.home() / ".claude" / "projects"
        self._scan_bytes = first_prompt_scan_bytes

    @property
    def root(self) -> Path:
        return self._root

    # ── Projects ─────────────────────────────────────────────

    def list_projects(self) -> list[ProjectDirectory]:
        """Every project directory, with its authoritative path when known."""
        projects: list[ProjectDirectory] = []
        for project_dir in self._project_dirs():
            real_path = self._index_project_path(project_dir) or decode_path(
                project_dir.name
            )
            projects.append(ProjectDirectory(
                name=project_name(real_path),
                path=real_path,
                encoded_path=project_dir.name,
            ))
        return projects

    def _project_dirs(self) -> list[Path]:
        try:
            return sorted(p for p in self._root.iterdir() if p.is_dir())
        except OSError:
            logger.debug("Session store root not readable: %s", self._root)
            return []

    def _index_project_path(self, project_dir: Path) -> str | None:
        for raw in self._read_index(project_dir):
            if isinstance(raw, dict) and raw.get("projectPath"):
                return str(raw["projectPath"])
        return None

    # ── Sessions ─────────────────────────────────────────────

    def list_sessions(self, project: str) -> list[SessionIndexEntry]:
        """Sessions of one project, most recently modified first.

        *project* is a slug (leading ``-``) or an absolute project path.
        """
        slug = project if project.startswith("-") else encode_path(project)
        if not _is_plain_name(slug):
            logger.warning("Rejected project slug %r", slug)
            return []
        project_dir = self._root / slug

        entries: list[SessionIndexEntry] = []
        for raw in self._read_index(project_dir):
            if not isinstance(raw, dict):
                continue
            entry = SessionIndexEntry.from_dict(raw)
            if entry is not None:
                entries.append(entry)

        known = {e.session_id for e in entries}
        for scanned in self._scan_transcripts(project_dir):
            if scanned.session_id not in known:
                entries.append(scanned)
                known.add(scanned.session_id)

        entries.sort(key=SessionIndexEntry.sort_key, reverse=True)
        return entries

    def _read_index(self, project_dir: Path) -> list[Any]:
        index_path = project_dir / INDEX_FILENAME
        if not index_path.is_file():
            return []
        try:
            parsed = json.loads(index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable sessions index %s: %s", index_path, exc)
            return []
        if isinstance(parsed, dict) and isinstance(parsed.get("entries"), list):
            return parsed["entries"]
        if isinstance(parsed, list):
            return parsed
        logger.warning("Unexpected sessions index shape in %s", index_path)
        return []

    def _scan_transcripts(self, project_dir: Path) -> list[SessionIndexEntry]:
        try:
            files = [
                p for p in project_dir.iterdir()
                if p.suffix == TRANSCRIPT_SUFFIX and p.is_file()
            ]
        except OSError:
            return []

        entries: list[SessionIndexEntry] = []
        for path in files:
            try:
                entries.append(self._synthesize_entry(path))
            except OSError as exc:
                logger.debug("Skipping unreadable transcript %s: %s", path, exc)
        entries.sort(key=lambda e: e.file_mtime or 0, reverse=True)
        return entries

    def _synthesize_entry(self, path: Path) -> SessionIndexEntry:
        stat = path.stat()
        first_prompt = ""
        cwd = None
        git_branch = None
        is_sidechain = False
        for record in self._head_records(path):
            if cwd is None and record.get("cwd"):
                cwd = str(record["cwd"])
            if git_branch is None and record.get("gitBranch"):
                git_branch = str(record["gitBranch"])
            if record.get("isSidechain"):
                is_sidechain = True
            if not first_prompt:
                first_prompt = clean_prompt(_user_text(record))[:PROMPT_PREVIEW_CHARS]
            if first_prompt and cwd is not None:
                break
        created = getattr(stat, "st_birthtime", None) or stat.st_ctime
        return SessionIndexEntry(
            session_id=path.stem,
            project_path=cwd,
            first_prompt=first_prompt or UNTITLED,
            created=iso_from_epoch(created),
            modified=iso_from_epoch(stat.st_mtime),
            is_sidechain=is_sidechain,
            full_path=str(path),
            file_mtime=stat.st_mtime * 1000,
            git_branch=git_branch,
        )

    def _head_records(self, path: Path) -> list[dict[str, Any]]:
        """JSON records in the first scan window; a cut-off last line is skipped."""
        with open(path, "rb") as f:
            head = f.read(self._scan_bytes)
        records: list[dict[str, Any]] = []
        for line in head.decode("utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                records.append(record)
        return records

    def read_first_prompt(self, path: Path) -> str:
        """First user message with real content, IDE tags removed."""
        try:
            records = self._head_records(path)
        except OSError:
            return ""
        for record in records:
            cleaned = clean_prompt(_user_text(record))
            if cleaned:
                return cleaned[:PROMPT_PREVIEW_CHARS]
        return ""

    def list_all_sessions(self) -> list[SessionInfo]:
        """Every top-level session across projects, newest first."""
        sessions: list[SessionInfo] = []
        for project in self.list_projects():
            project_dir = self._root / project.encoded_path
            for entry in self.list_sessions(project.encoded_path):
                if entry.is_sidechain:
                    continue
                resolved_path = entry.project_path or project.path
                first_prompt = self.read_first_prompt(
                    project_dir / f"{entry.session_id}{TRANSCRIPT_SUFFIX}"
                )
                sessions.append(SessionInfo(
                    id=entry.session_id,
                    project_path=resolved_path,
                    project_name=project_name(resolved_path) or project.name,
                    title=clean_prompt(
                        entry.summary or first_prompt[:TITLE_CHARS] or UNTITLED
                    ),
                    last_message=first_prompt,
                    updated_at=entry.modified or entry.created or "",
                ))

        def _updated(info: SessionInfo) -> float:
            ts = parse_timestamp(info.updated_at)
            return ts.timestamp() if ts else 0.0

        sessions.sort(key=_updated, reverse=True)
        return sessions

    # ── Messages ─────────────────────────────────────────────

    def find_encoded_dir(self, project_path: str) -> str | None:
        """Transcript directory name for *project_path*.

        Tries the direct encoding, then an index whose ``projectPath``
        matches, then *project_path* itself as a slug.
        """
        encoded = encode_path(project_path)
        if _is_plain_name(encoded) and (self._root / encoded).is_dir():
            return encoded
        for project_dir in self._project_dirs():
            for raw in self._read_index(project_dir):
                if isinstance(raw, dict) and raw.get("projectPath") == project_path:
                    return project_dir.name
        if _is_plain_name(project_path) and (self._root / project_path).is_dir():
            return project_path
        return None

    def load_messages(self, project_path: str, session_id: str) -> list[dict[str, Any]]:
        """All parseable records of one transcript; [] when it cannot be found."""
        if not _is_plain_name(session_id) or ".." in session_id:
            logger.warning("Rejected transcript id %r", session_id)
            return []
        encoded_dir = self.find_encoded_dir(project_path)
        if encoded_dir is None:
            logger.info("No transcript directory for project %s", project_path)
            return []
        path = self._root / encoded_dir / f"{session_id}{TRANSCRIPT_SUFFIX}"
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            logger.info("Transcript not readable %s: %s", path, exc)
            return []

        messages: list[dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                messages.append(record)
        logger.debug("Loaded %d records from %s", len(messages), path)
        return messages

    # ── Watching ─────────────────────────────────────────────

    def watch_for_changes(self, callback: Callable[[], None]) -> StoreWatcher | None:
        """Recursive watch on the store root; None when it cannot be watched.

        The callback fires on every filesystem event from a watchdog
        thread. Coalescing is up to the caller.
        """
        if not os.path.isdir(self._root):
            logger.info("Session store root %s missing, not watching", self._root)
            return None
        watcher = StoreWatcher(self._root, callback)
        if not watcher.start():
            return None
        return watcher
