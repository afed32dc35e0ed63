"""Newline framing for the pipe backend's stdout.

Only the pipe backend frames bytes; the SDK backend already yields
structured messages.
"""
from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class LineFramer:
    """Split a byte stream into JSON records, one per line.

    Incomplete trailing lines are buffered across ``feed`` calls. Lines
    that are not JSON objects are kept as ``{"type": "raw", "text": ...}``
    so backend diagnostics are never lost.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return [r for r in (self._parse(line) for line in lines) if r is not None]

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left after EOF."""
        remainder, self._buffer = self._buffer, b""
        record = self._parse(remainder)
        return [record] if record is not None else []

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def _parse(self, line: bytes) -> dict[str, Any] | None:
        text = line.decode(self._encoding, errors="replace").rstrip("\r")
        if not text.strip():
            return None
        try:
            record = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from backend: %s", text[:200])
            return {"type": "raw", "text": text}
        if not isinstance(record, dict):
            return {"type": "raw", "text": text}
        return record
