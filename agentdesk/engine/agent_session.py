"""Single session runner: one backend connection, one event sequence.

An AgentSession owns its backend, turn injector, permission mediator
and normalizer. ``run()`` opens the backend, feeds every record through
the normalizer and publishes the events in order. Transport failures
end the session with Failed + Exited events; they never propagate to
the supervisor.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from agentdesk.adapters.events import AgentEvent, Init

from .backends.base import Backend
from .config import EventCallback, fire_event
from .errors import OrchestrationError
from .lifecycle import is_terminal, validate_transition
from .models import PermissionMode, SessionState
from .normalizer import ProtocolNormalizer
from .permissions import PermissionMediator
from .turn_injector import TurnInjector

logger = logging.getLogger(__name__)


class AgentSession:
    """One live conversation and everything it exclusively owns."""

    def __init__(
        self,
        process_id: str,
        project_path: str,
        *,
        injector: TurnInjector,
        mediator: PermissionMediator,
        session_id: str | None = None,
        permission_mode: PermissionMode | None = None,
        event_callback: EventCallback | None = None,
        on_finished: Callable[[AgentSession], None] | None = None,
    ) -> None:
        self.process_id = process_id
        self.project_path = project_path
        self.session_id = session_id
        self.permission_mode = permission_mode
        self.injector = injector
        self.mediator = mediator
        self.cancel_event = asyncio.Event()
        self.normalizer = ProtocolNormalizer(process_id)
        self.normalizer.session_id = session_id
        self.state = SessionState.PENDING
        self.backend: Backend | None = None
        self.created_at = time.time()
        self._event_callback = event_callback
        self._on_finished = on_finished

    def attach_backend(self, backend: Backend) -> None:
        self.backend = backend

    @property
    def backend_name(self) -> str:
        return self.backend.name if self.backend else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "session_id": self.session_id,
            "project_path": self.project_path,
            "state": self.state.value,
            "backend": self.backend_name,
            "permission_mode": (
                self.permission_mode.value if self.permission_mode else None
            ),
            "pending_permissions": self.mediator.pending_ids,
            "created_at": self.created_at,
        }

    def transition(self, target: SessionState) -> None:
        validate_transition(self.state, target)
        logger.info(
            "Session %s state %s -> %s",
            self.process_id[:8], self.state.value, target.value,
        )
        self.state = target

    def mark_killed(self) -> None:
        if not is_terminal(self.state):
            self.transition(SessionState.KILLED)

    async def publish(self, events: list[AgentEvent]) -> None:
        for event in events:
            if isinstance(event, Init) and event.session_id:
                if event.session_id != self.session_id:
                    logger.info(
                        "Session %s bound to session_id %s",
                        self.process_id[:8], event.session_id[:8],
                    )
                self.session_id = event.session_id
            await fire_event(self._event_callback, event)

    async def run(self) -> None:
        """Consume the backend until it exits, fails, or the session is killed."""
        if self.backend is None:
            raise RuntimeError(f"Session {self.process_id} has no backend")
        try:
            self.transition(SessionState.STARTING)
            try:
                await self.backend.start()
            except OrchestrationError as exc:
                logger.error(
                    "Session %s failed to start: %s", self.process_id[:8], exc,
                )
                self.transition(SessionState.FAILED)
                await self.publish(self.normalizer.failure(str(exc), fatal=True))
                await self.publish(self.normalizer.exit())
                return

            self.transition(SessionState.RUNNING)
            async for record in self.backend.records():
                if self.cancel_event.is_set():
                    break
                await self.publish(self.normalizer.normalize(record))
                if self.normalizer.exited:
                    break

            if not self.cancel_event.is_set():
                await self.publish(self.normalizer.exit())
                if self.state == SessionState.RUNNING:
                    self.transition(SessionState.EXITED)
        except asyncio.CancelledError:
            logger.info("Session %s task cancelled", self.process_id[:8])
            raise
        except Exception as exc:
            logger.exception("Session %s transport failure", self.process_id[:8])
            if not is_terminal(self.state):
                self.transition(SessionState.FAILED)
            await self.publish(
                self.normalizer.failure(f"Transport failure: {exc}", fatal=True)
            )
            await self.publish(self.normalizer.exit())
        finally:
            if self.state != SessionState.KILLED:
                self.injector.mark_done()
                self.mediator.deny_all()
                if self.backend is not None:
                    await self._close_backend()
            if self._on_finished is not None:
                self._on_finished(self)

    async def _close_backend(self) -> None:
        try:
            await self.backend.terminate()
        except Exception:
            logger.exception(
                "Session %s backend teardown failed", self.process_id[:8],
            )
