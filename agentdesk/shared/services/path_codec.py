"""Project path <-> transcript directory slug.

The agent CLI stores each project's transcripts under a directory named
by replacing every path separator, drive colon, dot and space with a
hyphen. The mapping is lossy: ``/a/b-c`` and ``/a/b/c`` share a slug.

``decode_path`` is a last-resort heuristic. Prefer the ``projectPath``
recorded in a sessions index or a transcript's ``cwd`` whenever one
exists.
"""

from __future__ import annotations

import os
import re
import sys
from collections.abc import Callable

_ENCODE_RE = re.compile(r"[/\\:. ]")
_JOINERS = ("-", ".")


def encode_path(path: str) -> str:
    """``/home/u/my.proj`` -> ``-home-u-my-proj``."""
    return _ENCODE_RE.sub("-", str(path))


def project_name(path: str) -> str:
    """Last segment of a POSIX or Windows path."""
    stripped = re.sub(r"[\\/]+$", "", path)
    return re.split(r"[\\/]", stripped)[-1] if stripped else path


def decode_path(
    slug: str,
    *,
    exists: Callable[[str], bool] = os.path.exists,
    windows: bool | None = None,
) -> str:
    """Best-guess absolute path for *slug*.

    Fragments are merged back into segments greedily, longest run first,
    keeping a merge (joined with ``-`` or ``.``) only when the resulting
    path exists below the part already resolved. Anything that never
    matches is emitted verbatim.
    """
    if windows is None:
        windows = sys.platform == "win32"
    sep = "\\" if windows else "/"
    parts = slug.lstrip("-").split("-")
    if parts == [""]:
        return sep

    if windows and len(parts) >= 2 and len(parts[0]) == 1 and parts[0].isalpha():
        base = f"{parts[0]}:{sep}"
        rest = parts[1:]
        # "C:\" encodes to "C--"
        while rest and rest[0] == "":
            rest = rest[1:]
        return base + _resolve_segments(rest, base, sep, exists)
    return sep + _resolve_segments(parts, sep, sep, exists)


def _resolve_segments(
    parts: list[str],
    base: str,
    sep: str,
    exists: Callable[[str], bool],
) -> str:
    resolved: list[str] = []
    i = 0
    while i < len(parts):
        segment = None
        for length in range(len(parts) - i, 1, -1):
            run = parts[i:i + length]
            for joiner in _JOINERS:
                candidate = joiner.join(run)
                if exists(base + sep.join(resolved + [candidate])):
                    segment = candidate
                    break
            if segment is not None:
                i += length
                break
        if segment is None:
            if parts[i] == "" and i + 1 < len(parts):
                # "--" usually was "/." (a hidden directory)
                segment = "." + parts[i + 1]
                i += 2
            else:
                segment = parts[i]
                i += 1
        resolved.append(segment)
    return sep.join(resolved)
