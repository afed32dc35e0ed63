"""Session supervisor: the registry of live agent sessions.

Owns one table of AgentSession objects keyed by process id plus the
asyncio task consuming each. The table is only touched from the event
loop, so no locks are needed. Sessions leave the table when they exit,
fail fatally, or are killed.

Kill order: end the turn stream, set the cancellation token, deny every
pending permission, drop the session, cancel its task, reap the
backend in the background, publish a clean Exited(cancelled=True).
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from agentdesk.adapters.permission_store import PermissionStore
from agentdesk.shared.services.path_codec import encode_path

from .agent_session import AgentSession
from .backends import create_backend
from .backends.base import Backend, BackendOptions, PermissionHandler
from .config import EngineConfig, EventCallback, fire_event
from .errors import SessionNotFoundError
from .models import BackendKind, PermissionMode, PermissionResponse, make_id
from .permissions import PermissionMediator
from .turn_injector import TurnInjector

logger = logging.getLogger(__name__)

# Signature: factory(kind, options, prompts, permission_handler) -> Backend
BackendFactory = Callable[
    [str, BackendOptions, TurnInjector, PermissionHandler], Backend
]


class SessionSupervisor:
    """Spawns, tracks and kills agent sessions."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        event_callback: EventCallback | None = None,
        backend_factory: BackendFactory | None = None,
        use_allow_list: bool = True,
    ) -> None:
        self._config = config or EngineConfig()
        self._event_callback = event_callback
        self._backend_factory = backend_factory or create_backend
        self._use_allow_list = use_allow_list
        self._sessions: dict[str, AgentSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._reapers: set[asyncio.Task] = set()

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ── Queries ──────────────────────────────────────────────

    def get(self, process_id: str) -> AgentSession | None:
        return self._sessions.get(process_id)

    def require(self, process_id: str) -> AgentSession:
        """Like ``get`` but raises SessionNotFoundError for unknown ids."""
        session = self._sessions.get(process_id)
        if session is None:
            raise SessionNotFoundError(process_id)
        return session

    def find_by_session_id(self, session_id: str) -> AgentSession | None:
        for session in self._sessions.values():
            if session.session_id == session_id:
                return session
        return None

    def list_active(self) -> list[AgentSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Lifecycle ────────────────────────────────────────────

    async def spawn(
        self,
        cwd: str,
        session_id: str | None = None,
        permission_mode: str | PermissionMode | None = None,
        backend: str | BackendKind | None = None,
        initial_prompt: Any = None,
    ) -> str:
        """Start (or resume) a session and return its process id.

        Returns as soon as the consumption task is scheduled. Resuming a
        session_id that is already live kills the old session first.
        """
        if session_id:
            existing = self.find_by_session_id(session_id)
            if existing is not None:
                logger.info(
                    "Session id %s already live in %s, killing before resume",
                    session_id[:8], existing.process_id[:8],
                )
                await self.kill(existing.process_id)

        mode = PermissionMode.parse(
            permission_mode or self._config.default_permission_mode
        )
        kind = str(getattr(backend, "value", backend) or self._config.default_backend)
        process_id = make_id()

        allow_store = None
        if self._use_allow_list:
            allow_store = PermissionStore.for_project(
                self._config.app_dir, encode_path(cwd)
            )
        injector = TurnInjector(process_id)
        mediator = PermissionMediator(
            process_id,
            emit=self._event_callback,
            allow_store=allow_store,
            timeout_seconds=self._config.permission_timeout_seconds,
        )
        session = AgentSession(
            process_id,
            cwd,
            injector=injector,
            mediator=mediator,
            session_id=session_id,
            permission_mode=mode,
            event_callback=self._event_callback,
            on_finished=self._on_session_finished,
        )
        options = BackendOptions(
            process_id=process_id,
            cwd=cwd,
            resume_session_id=session_id,
            permission_mode=mode.value if mode else None,
            include_partial_messages=self._config.include_partial_messages,
            cli_path=self._config.claude_cli_path,
            kill_grace_seconds=self._config.kill_grace_seconds,
            control_timeout_seconds=self._config.control_request_timeout_seconds,
        )
        session.attach_backend(
            self._backend_factory(kind, options, injector, mediator.request)
        )
        if initial_prompt:
            injector.send(initial_prompt)

        self._sessions[process_id] = session
        self._tasks[process_id] = asyncio.create_task(
            session.run(), name=f"session-{process_id[:8]}",
        )
        logger.info(
            "Session spawned: %s (backend=%s, cwd=%s, resume=%s, mode=%s)",
            process_id[:8],
            kind,
            cwd,
            (session_id or "none")[:8],
            mode.value if mode else "default",
        )
        return process_id

    async def kill(self, process_id: str) -> bool:
        """Kill a session. False if it is unknown or already gone."""
        session = self._sessions.pop(process_id, None)
        if session is None:
            return False

        session.injector.mark_done()
        session.cancel_event.set()
        denied = session.mediator.deny_all()
        session.mark_killed()

        task = self._tasks.pop(process_id, None)
        if task is not None and not task.done():
            task.cancel()

        if session.backend is not None:
            reaper = asyncio.create_task(
                self._reap(session), name=f"reap-{process_id[:8]}",
            )
            self._reapers.add(reaper)
            reaper.add_done_callback(self._reapers.discard)

        logger.info(
            "Session killed: %s (denied %d pending permissions)",
            process_id[:8], denied,
        )
        for event in session.normalizer.exit(cancelled=True):
            await fire_event(self._event_callback, event)
        return True

    async def kill_all(self) -> int:
        """Kill every session and wait for their backends to be reaped."""
        killed = 0
        for process_id in list(self._sessions):
            if await self.kill(process_id):
                killed += 1
        await self.wait_reaped()
        return killed

    async def wait_reaped(self) -> None:
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

    async def _reap(self, session: AgentSession) -> None:
        try:
            await session.backend.terminate()
        except Exception:
            logger.exception(
                "Failed to reap backend for session %s", session.process_id[:8],
            )

    def _on_session_finished(self, session: AgentSession) -> None:
        # Killed sessions were already removed by kill().
        if self._sessions.get(session.process_id) is session:
            self._sessions.pop(session.process_id, None)
            self._tasks.pop(session.process_id, None)
            logger.info(
                "Session cleaned up: %s (state=%s)",
                session.process_id[:8], session.state.value,
            )

    # ── Interaction ──────────────────────────────────────────

    def send_message(self, process_id: str, content: Any) -> bool:
        """Queue a user turn for a live session."""
        session = self._sessions.get(process_id)
        if session is None:
            logger.debug("send_message: unknown session %s", process_id[:8])
            return False
        return session.injector.send(content)

    def respond_to_permission(
        self,
        process_id: str,
        request_id: str,
        response: PermissionResponse,
    ) -> bool:
        session = self._sessions.get(process_id)
        if session is None:
            logger.warning(
                "respond_to_permission: unknown session %s", process_id[:8],
            )
            return False
        return session.mediator.resolve(request_id, response)

    async def set_permission_mode(
        self,
        process_id: str,
        mode: str | PermissionMode,
    ) -> bool:
        """Best effort: False if unknown, unsupported or refused."""
        session = self._sessions.get(process_id)
        if session is None or session.backend is None:
            return False
        try:
            parsed = PermissionMode.parse(mode)
        except ValueError as exc:
            logger.warning("set_permission_mode: %s", exc)
            return False
        if not await session.backend.set_permission_mode(parsed.value):
            return False
        session.permission_mode = parsed
        logger.info(
            "Session %s permission mode -> %s", process_id[:8], parsed.value,
        )
        return True
