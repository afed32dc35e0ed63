"""Queue-backed prompt stream for multi-turn sessions.

The backend consumes a TurnInjector as its async input iterable. Each
``send`` appends a user record; the iterator suspends while the queue is
empty and ends for good once ``mark_done`` is called, which lets one
connection host a whole conversation.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


def user_record(content: Any) -> dict[str, Any]:
    """Wire shape of one user turn."""
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
    }


class TurnInjector:
    """FIFO of pending user turns plus a single wake-up signal."""

    def __init__(self, label: str = "") -> None:
        self._label = label
        self._queue: deque[dict[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._done = False
        self._consuming = False

    @property
    def done(self) -> bool:
        return self._done

    def __len__(self) -> int:
        return len(self._queue)

    def send(self, content: Any) -> bool:
        """Queue a user turn. False once the injector is done."""
        if self._done:
            return False
        self._queue.append(user_record(content))
        self._wakeup.set()
        logger.debug(
            "Turn queued for session %s (pending=%d)",
            self._label[:8], len(self._queue),
        )
        return True

    def mark_done(self) -> None:
        """End the stream. Queued turns not yet consumed are discarded."""
        if self._done:
            return
        self._done = True
        dropped = len(self._queue)
        self._queue.clear()
        self._wakeup.set()
        if dropped:
            logger.debug(
                "Discarded %d unsent turns for session %s", dropped, self._label[:8],
            )

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        if self._consuming:
            raise RuntimeError("TurnInjector already has a consumer")
        self._consuming = True
        return self._drain()

    async def _drain(self) -> AsyncIterator[dict[str, Any]]:
        try:
            while True:
                if self._done:
                    return
                if self._queue:
                    yield self._queue.popleft()
                    continue
                self._wakeup.clear()
                await self._wakeup.wait()
        finally:
            self._consuming = False
