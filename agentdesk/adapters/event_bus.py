"""Async event bus bridging supervisor callbacks to consumers.

Sessions fire events via callback. The EventBus queues them for the
CLI chat loop or the SSE broadcaster.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from agentdesk.adapters.events import AgentEvent

logger = logging.getLogger(__name__)

# Backpressure window before an event is dropped.
PUT_TIMEOUT_SECONDS = 30.0


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def emit(self, event: AgentEvent) -> None:
        """Queue an event, waiting for room instead of dropping."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(
                self._queue.put(event), timeout=PUT_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                PUT_TIMEOUT_SECONDS,
                event.event_type,
                self._queue.qsize(),
            )

    def make_callback(self):
        """Return the async callback for SessionSupervisor."""
        return self.emit

    async def consume(self) -> AsyncIterator[AgentEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
