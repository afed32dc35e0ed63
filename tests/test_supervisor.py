"""Supervisor lifecycle tests against a scripted in-memory backend."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentdesk.adapters.events import (
    Exited,
    Failed,
    Init,
    PermissionRequested,
    TextDelta,
    TurnComplete,
)
from agentdesk.engine.backends.base import Backend
from agentdesk.engine.config import EngineConfig
from agentdesk.engine.errors import (
    BackendNotAvailableError,
    BackendStartError,
    SessionNotFoundError,
)
from agentdesk.engine.models import (
    SESSION_TERMINATED_MESSAGE,
    PermissionMode,
    PermissionResponse,
    SessionState,
)
from agentdesk.engine.supervisor import SessionSupervisor


class FakeBackend(Backend):
    """Yields a fixed script of records, then optionally blocks forever."""

    def __init__(self, options, prompts, permission_handler, script=(), block=False,
                 start_error=None, raise_after=None):
        super().__init__(options, prompts, permission_handler)
        self.script = list(script)
        self.block = block
        self.start_error = start_error
        self.raise_after = raise_after
        self.started = False
        self.terminated = False
        self.modes: list[str] = []

    @property
    def name(self) -> str:
        return "fake"

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def records(self):
        for record in self.script:
            yield record
        if self.raise_after is not None:
            raise self.raise_after
        if self.block:
            await asyncio.Event().wait()

    async def set_permission_mode(self, mode: str) -> bool:
        self.modes.append(mode)
        return True

    async def terminate(self) -> None:
        self.terminated = True

    async def ask(self, tool_name: str, tool_input: dict) -> PermissionResponse:
        return await self._permission_handler(tool_name, tool_input)


class FakeFactory:
    def __init__(self, **backend_kwargs):
        self.backend_kwargs = backend_kwargs
        self.backends: list[FakeBackend] = []
        self.kinds: list[str] = []

    def __call__(self, kind, options, prompts, permission_handler) -> FakeBackend:
        self.kinds.append(kind)
        backend = FakeBackend(options, prompts, permission_handler, **self.backend_kwargs)
        self.backends.append(backend)
        return backend


class Collector:
    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def of(self, process_id: str) -> list:
        return [e for e in self.events if e.process_id == process_id]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _supervisor(tmp_path: Path, factory, collector=None) -> SessionSupervisor:
    return SessionSupervisor(
        EngineConfig(app_dir=tmp_path),
        event_callback=collector,
        backend_factory=factory,
        use_allow_list=False,
    )


HELLO_SCRIPT = [
    {"type": "system", "subtype": "init", "session_id": "sess-hello", "model": "m"},
    {"type": "stream_event", "event": {
        "type": "content_block_delta", "index": 0,
        "delta": {"type": "text_delta", "text": "Hello world"},
    }},
    {"type": "result", "uuid": "r1", "result": "Hello world", "total_cost_usd": 0.01},
    {"type": "exit", "code": 0, "signal": None},
]


@pytest.mark.asyncio
async def test_session_runs_to_exit_and_leaves_registry(tmp_path: Path) -> None:
    collector = Collector()
    factory = FakeFactory(script=HELLO_SCRIPT)
    supervisor = _supervisor(tmp_path, factory, collector)

    pid = await supervisor.spawn("/work/demo", initial_prompt="hi")
    assert supervisor.get(pid) is not None
    await _wait_until(lambda: supervisor.get(pid) is None)

    events = collector.of(pid)
    assert [type(e) for e in events] == [Init, TextDelta, TurnComplete, Exited]
    assert events[2].cost == 0.01
    assert events[-1].code == 0 and events[-1].cancelled is False
    assert factory.kinds == ["pipe"]
    assert factory.backends[0].terminated


@pytest.mark.asyncio
async def test_registry_holds_live_session_and_binds_session_id(tmp_path: Path) -> None:
    factory = FakeFactory(script=HELLO_SCRIPT[:1], block=True)
    supervisor = _supervisor(tmp_path, factory)

    pid = await supervisor.spawn("/work/demo", permission_mode="plan")
    await _wait_until(lambda: supervisor.get(pid).state == SessionState.RUNNING)
    await _wait_until(lambda: supervisor.find_by_session_id("sess-hello") is not None)

    session = supervisor.get(pid)
    assert session.permission_mode == PermissionMode.PLAN
    assert session.to_dict()["session_id"] == "sess-hello"
    assert [s.process_id for s in supervisor.list_active()] == [pid]
    assert factory.backends[0].options.permission_mode == "plan"
    await supervisor.kill_all()


@pytest.mark.asyncio
async def test_kill_denies_pending_permissions_and_is_idempotent(tmp_path: Path) -> None:
    collector = Collector()
    factory = FakeFactory(block=True)
    supervisor = _supervisor(tmp_path, factory, collector)
    pid = await supervisor.spawn("/work/demo")
    backend = factory.backends[0]

    asks = [
        asyncio.create_task(backend.ask("Bash", {"command": "ls"})),
        asyncio.create_task(backend.ask("Edit", {"file_path": "a.py"})),
    ]
    await _wait_until(lambda: len(supervisor.get(pid).mediator.pending_ids) == 2)

    assert await supervisor.kill(pid) is True
    responses = await asyncio.gather(*asks)
    await supervisor.wait_reaped()

    assert [r.allowed for r in responses] == [False, False]
    assert {r.message for r in responses} == {SESSION_TERMINATED_MESSAGE}
    assert backend.terminated
    assert supervisor.get(pid) is None
    assert await supervisor.kill(pid) is False

    events = collector.of(pid)
    assert sum(isinstance(e, PermissionRequested) for e in events) == 2
    exits = [e for e in events if isinstance(e, Exited)]
    assert len(exits) == 1 and exits[0].cancelled is True
    assert events[-1] is exits[0]


@pytest.mark.asyncio
async def test_send_message_and_permission_for_unknown_process(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, FakeFactory(block=True))
    assert supervisor.send_message("nope", "hi") is False
    assert supervisor.respond_to_permission("nope", "r", PermissionResponse.deny()) is False
    assert await supervisor.set_permission_mode("nope", "plan") is False

    pid = await supervisor.spawn("/work/demo")
    assert supervisor.send_message(pid, "hello") is True
    assert len(supervisor.get(pid).injector) == 1
    assert supervisor.respond_to_permission(pid, "missing", PermissionResponse.allow()) is False

    await supervisor.kill(pid)
    assert supervisor.send_message(pid, "after kill") is False


@pytest.mark.asyncio
async def test_resume_of_live_session_kills_previous_holder(tmp_path: Path) -> None:
    collector = Collector()
    factory = FakeFactory(block=True)
    supervisor = _supervisor(tmp_path, factory, collector)

    first = await supervisor.spawn("/work/demo", session_id="sess-1")
    second = await supervisor.spawn("/work/demo", session_id="sess-1")

    assert first != second
    assert len(supervisor) == 1
    assert supervisor.find_by_session_id("sess-1").process_id == second
    assert any(isinstance(e, Exited) and e.cancelled for e in collector.of(first))
    assert factory.backends[1].options.resume_session_id == "sess-1"
    await supervisor.kill_all()


@pytest.mark.asyncio
async def test_start_failure_surfaces_as_events(tmp_path: Path) -> None:
    collector = Collector()
    factory = FakeFactory(start_error=BackendStartError("p", "claude: not found"))
    supervisor = _supervisor(tmp_path, factory, collector)

    pid = await supervisor.spawn("/work/demo")
    await _wait_until(lambda: supervisor.get(pid) is None)

    failed, exited = collector.of(pid)
    assert isinstance(failed, Failed) and failed.fatal is True
    assert "not found" in failed.message
    assert isinstance(exited, Exited) and exited.cancelled is False


@pytest.mark.asyncio
async def test_transport_failure_surfaces_as_fatal_failure(tmp_path: Path) -> None:
    collector = Collector()
    factory = FakeFactory(script=HELLO_SCRIPT[:2], raise_after=ConnectionResetError("pipe closed"))
    supervisor = _supervisor(tmp_path, factory, collector)

    pid = await supervisor.spawn("/work/demo")
    await _wait_until(lambda: supervisor.get(pid) is None)

    events = collector.of(pid)
    assert [type(e) for e in events] == [Init, TextDelta, Failed, Exited]
    assert events[2].fatal is True
    assert "pipe closed" in events[2].message


@pytest.mark.asyncio
async def test_set_permission_mode_forwards_to_backend(tmp_path: Path) -> None:
    factory = FakeFactory(block=True)
    supervisor = _supervisor(tmp_path, factory)
    pid = await supervisor.spawn("/work/demo")

    assert await supervisor.set_permission_mode(pid, "acceptEdits") is True
    assert factory.backends[0].modes == ["acceptEdits"]
    assert supervisor.get(pid).permission_mode == PermissionMode.ACCEPT_EDITS
    assert await supervisor.set_permission_mode(pid, "yolo") is False
    await supervisor.kill_all()


@pytest.mark.asyncio
async def test_unknown_backend_kind_is_rejected(tmp_path: Path) -> None:
    supervisor = SessionSupervisor(EngineConfig(app_dir=tmp_path))
    with pytest.raises(BackendNotAvailableError):
        await supervisor.spawn("/work/demo", backend="telnet")
    assert len(supervisor) == 0


@pytest.mark.asyncio
async def test_kill_all_counts_sessions(tmp_path: Path) -> None:
    factory = FakeFactory(block=True)
    supervisor = _supervisor(tmp_path, factory)
    await supervisor.spawn("/a")
    await supervisor.spawn("/b")

    assert await supervisor.kill_all() == 2
    assert len(supervisor) == 0
    assert all(b.terminated for b in factory.backends)


class PerSpawnFactory(FakeFactory):
    """Hands each spawn its own backend kwargs, in order."""

    def __init__(self, *per_spawn):
        super().__init__()
        self.per_spawn = list(per_spawn)

    def __call__(self, kind, options, prompts, permission_handler) -> FakeBackend:
        self.backend_kwargs = self.per_spawn[len(self.backends)]
        return super().__call__(kind, options, prompts, permission_handler)


@pytest.mark.asyncio
async def test_failing_session_leaves_sibling_running(tmp_path: Path) -> None:
    collector = Collector()
    factory = PerSpawnFactory(
        {"block": True},
        {"script": HELLO_SCRIPT[:1], "raise_after": ConnectionResetError("boom")},
    )
    supervisor = _supervisor(tmp_path, factory, collector)

    survivor = await supervisor.spawn("/work/a")
    await _wait_until(lambda: supervisor.get(survivor).state == SessionState.RUNNING)
    before = len(collector.of(survivor))

    doomed = await supervisor.spawn("/work/b")
    await _wait_until(lambda: supervisor.get(doomed) is None)

    assert isinstance(collector.of(doomed)[-1], Exited)
    assert supervisor.get(survivor).state == SessionState.RUNNING
    assert [s.process_id for s in supervisor.list_active()] == [survivor]
    assert len(collector.of(survivor)) == before
    assert factory.backends[0].terminated is False

    assert supervisor.send_message(survivor, "still here") is True
    await supervisor.kill(survivor)


@pytest.mark.asyncio
async def test_killing_one_session_leaves_sibling_running(tmp_path: Path) -> None:
    collector = Collector()
    supervisor = _supervisor(tmp_path, FakeFactory(block=True), collector)
    first = await supervisor.spawn("/work/a")
    second = await supervisor.spawn("/work/b")
    await _wait_until(lambda: supervisor.get(second).state == SessionState.RUNNING)
    before = len(collector.of(second))

    assert await supervisor.kill(first) is True

    assert supervisor.get(first) is None
    assert supervisor.require(second).state == SessionState.RUNNING
    assert len(collector.of(second)) == before
    await supervisor.kill_all()


@pytest.mark.asyncio
async def test_require_raises_for_unknown_process(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path, FakeFactory(block=True))
    with pytest.raises(SessionNotFoundError) as excinfo:
        supervisor.require("ghost")
    assert excinfo.value.process_id == "ghost"

    pid = await supervisor.spawn("/work/demo")
    assert supervisor.require(pid) is supervisor.get(pid)
    await supervisor.kill(pid)
