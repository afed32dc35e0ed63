"""Persistent storage for remembered tool permissions.

Stores allowed tool patterns at two levels:
- Global: ~/.agentdesk/allowed_tools.json (applies to all projects)
- Project: ~/.agentdesk/projects/{slug}/allowed_tools.json (per-project)

A pattern is either a bare tool name ("Edit") or a Bash command
pattern ("Bash(git add *)").
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

FILENAME = "allowed_tools.json"

_SEGMENT_SPLIT = re.compile(r"\s*&&\s*|\s*;\s*")
_DIR_CHANGE_COMMANDS = {"cd", "pushd", "popd"}
_SUBCOMMAND_TOOLS = {"git", "npm", "yarn", "pnpm", "npx", "bun"}
_BASH_PATTERN = re.compile(r"^Bash\((?P<glob>.*)\)$")
# Pipes, redirections, substitutions, backgrounding and newlines are never
# auto-allowed.
_UNSAFE_SHELL = re.compile(r"[|`<>\n\r]|\$\(|(?<!&)&(?!&)")


def _main_command(command: str) -> str:
    """First segment of a chained command that is not a directory change."""
    segments = [s.strip() for s in _SEGMENT_SPLIT.split(command) if s.strip()]
    for seg in segments:
        if seg.split()[0] not in _DIR_CHANGE_COMMANDS:
            return seg
    return command.strip()


def extract_tool_pattern(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    """Derive the allow-list pattern for a tool call.

    "git add src/a.py" -> "Bash(git add *)"
    "cd /repo && npm install" -> "Bash(npm install *)"
    "ls -la" -> "Bash(ls *)"
    Non-Bash tools use the bare tool name.
    """
    if tool_name != "Bash":
        return tool_name
    command = str((tool_input or {}).get("command", ""))
    parts = _main_command(command).split()
    if not parts:
        return "Bash(*)"
    if parts[0] in _SUBCOMMAND_TOOLS and len(parts) > 1:
        return f"Bash({parts[0]} {parts[1]} *)"
    return f"Bash({parts[0]} *)"


def pattern_matches(pattern: str, tool_name: str, tool_input: dict[str, Any] | None) -> bool:
    """Whether an allow-list entry covers this tool call."""
    if pattern == tool_name:
        return True
    m = _BASH_PATTERN.match(pattern)
    if not m or tool_name != "Bash":
        return False
    command = str((tool_input or {}).get("command", ""))
    if _UNSAFE_SHELL.search(command):
        return False
    glob = m.group("glob")
    segments = [s.strip() for s in _SEGMENT_SPLIT.split(command) if s.strip()]
    matched = False
    # Every chained segment must be a directory change or covered by the glob.
    for seg in segments:
        if seg.split()[0] in _DIR_CHANGE_COMMANDS:
            continue
        if not _segment_matches(seg, glob):
            return False
        matched = True
    return matched or _segment_matches(command.strip(), glob)


def _segment_matches(segment: str, glob: str) -> bool:
    # "git add *" also covers a bare "git add"
    if glob.endswith(" *") and segment == glob[:-2]:
        return True
    return fnmatch.fnmatchcase(segment, glob)


class PermissionStore:
    """Load and save remembered tool permissions."""

    def __init__(
        self,
        global_dir: Path,
        project_dir: Path | None = None,
    ) -> None:
        self._global_path = Path(global_dir) / FILENAME
        self._project_path = (
            Path(project_dir) / FILENAME if project_dir else None
        )

    @classmethod
    def for_project(cls, app_dir: Path, project_slug: str | None) -> PermissionStore:
        project_dir = (
            Path(app_dir) / "projects" / project_slug if project_slug else None
        )
        return cls(Path(app_dir), project_dir)

    def load(self) -> set[str]:
        """Load all allowed patterns (global + project merged)."""
        allowed: set[str] = set()
        allowed |= self._load_file(self._global_path)
        if self._project_path:
            allowed |= self._load_file(self._project_path)
        return allowed

    def is_allowed(self, tool_name: str, tool_input: dict[str, Any] | None) -> bool:
        return any(
            pattern_matches(p, tool_name, tool_input) for p in self.load()
        )

    def remember(self, tool_name: str, tool_input: dict[str, Any] | None) -> str:
        """Persist the derived pattern at project level. Returns the pattern."""
        pattern = extract_tool_pattern(tool_name, tool_input)
        self.add_project(pattern)
        return pattern

    def add_project(self, pattern: str) -> None:
        """Add a pattern to the project-level allow list."""
        if not self._project_path:
            # No project context, fall back to global
            self.add_global(pattern)
            return
        self._add_to_file(self._project_path, pattern)

    def add_global(self, pattern: str) -> None:
        """Add a pattern to the global allow list."""
        self._add_to_file(self._global_path, pattern)

    @staticmethod
    def _load_file(path: Path) -> set[str]:
        """Load a set of patterns from a JSON file."""
        if not path.exists():
            return set()
        try:
            data = json.loads(path.read_text())
            if isinstance(data, list):
                return {str(item) for item in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return set()

    @staticmethod
    def _add_to_file(path: Path, pattern: str) -> None:
        """Add a pattern to a JSON file (create if needed)."""
        existing = PermissionStore._load_file(path)
        if pattern in existing:
            return
        existing.add(pattern)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(sorted(existing), indent=2) + "\n")
        except OSError:
            logger.warning("Failed to write %s", path)
