"""Platform helpers for launching and reaping the agent CLI."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

CLAUDE_BINARY = "claude"


def is_windows() -> bool:
    return sys.platform == "win32"


def resolve_claude_binary(configured: str = "") -> str:
    """Locate the agent CLI.

    Order: explicit configuration, ~/.local/bin/claude(.cmd), PATH lookup,
    then the bare name so the OS reports the failure at launch.
    """
    if configured:
        resolved = shutil.which(configured)
        if resolved:
            return resolved
        logger.warning(
            "Configured agent CLI not found: %s; falling back to discovery",
            configured,
        )
    name = f"{CLAUDE_BINARY}.cmd" if is_windows() else CLAUDE_BINARY
    local = Path.home() / ".local" / "bin" / name
    if local.is_file():
        return str(local)
    found = shutil.which(CLAUDE_BINARY)
    if found:
        return found
    return CLAUDE_BINARY


def signal_name(returncode: int | None) -> str | None:
    """Map a negative asyncio returncode to its signal name."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


def send_terminate(proc: asyncio.subprocess.Process) -> bool:
    """Ask the process (group) to exit. False when it is already gone."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
    except ProcessLookupError:
        return False
    return True


def send_kill(proc: asyncio.subprocess.Process) -> bool:
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        return False
    return True


async def tree_kill(proc: asyncio.subprocess.Process) -> bool:
    """Windows: kill the process and its descendants with taskkill."""
    if proc.returncode is not None:
        return False
    try:
        killer = await asyncio.create_subprocess_exec(
            "taskkill", "/pid", str(proc.pid), "/T", "/F",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
        return True
    except OSError as exc:
        logger.warning(
            "taskkill failed for pid=%s (%s); killing direct process", proc.pid, exc,
        )
        try:
            proc.kill()
        except ProcessLookupError:
            return False
        return True
