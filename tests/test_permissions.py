from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from agentdesk.adapters.events import PermissionRequested, PermissionResolved
from agentdesk.adapters.permission_store import PermissionStore
from agentdesk.engine.models import (
    DEFAULT_DENY_MESSAGE,
    SESSION_TERMINATED_MESSAGE,
    PermissionBehavior,
    PermissionResponse,
)
from agentdesk.engine.permissions import PermissionMediator


async def _wait_pending(mediator: PermissionMediator, count: int = 1) -> list[str]:
    for _ in range(100):
        if len(mediator.pending_ids) >= count:
            return mediator.pending_ids
        await asyncio.sleep(0)
    raise AssertionError("permission request never became pending")


@pytest.mark.asyncio
async def test_request_emits_and_resolves_allow() -> None:
    emit = AsyncMock()
    mediator = PermissionMediator("proc-1", emit=emit)

    task = asyncio.create_task(mediator.request("Bash", {"command": "ls"}))
    (request_id,) = await _wait_pending(mediator)
    assert mediator.resolve(request_id, PermissionResponse.allow({"command": "ls -la"}))
    response = await task

    assert response.allowed
    assert response.updated_input == {"command": "ls -la"}
    assert mediator.pending_ids == []
    requested, resolved = [call.args[0] for call in emit.await_args_list]
    assert isinstance(requested, PermissionRequested)
    assert requested.tool_name == "Bash"
    assert requested.input == {"command": "ls"}
    assert requested.request_id == request_id
    assert isinstance(resolved, PermissionResolved)
    assert resolved.behavior == "allow"


@pytest.mark.asyncio
async def test_resolve_unknown_or_twice_returns_false() -> None:
    mediator = PermissionMediator("p")
    assert mediator.resolve("missing", PermissionResponse.deny()) is False

    task = asyncio.create_task(mediator.request("Edit", {}))
    (request_id,) = await _wait_pending(mediator)
    assert mediator.resolve(request_id, PermissionResponse.deny()) is True
    assert mediator.resolve(request_id, PermissionResponse.allow()) is False
    response = await task
    assert response.behavior == PermissionBehavior.DENY
    assert response.message == DEFAULT_DENY_MESSAGE


@pytest.mark.asyncio
async def test_deny_all_releases_every_waiter() -> None:
    emit = AsyncMock()
    mediator = PermissionMediator("p", emit=emit)
    tasks = [
        asyncio.create_task(mediator.request("Bash", {"command": f"echo {i}"}))
        for i in range(3)
    ]
    await _wait_pending(mediator, 3)

    assert mediator.deny_all() == 3
    responses = await asyncio.gather(*tasks)

    assert all(not r.allowed for r in responses)
    assert {r.message for r in responses} == {SESSION_TERMINATED_MESSAGE}
    # No resolution events once the session is closed
    assert all(
        isinstance(call.args[0], PermissionRequested) for call in emit.await_args_list
    )
    # Requests after close are denied without waiting
    late = await mediator.request("Bash", {"command": "ls"})
    assert late.message == SESSION_TERMINATED_MESSAGE


@pytest.mark.asyncio
async def test_timeout_denies() -> None:
    mediator = PermissionMediator("p", timeout_seconds=0.01)
    response = await mediator.request("Bash", {"command": "sleep"})
    assert not response.allowed
    assert "timed out" in response.message
    assert mediator.pending_ids == []


@pytest.mark.asyncio
async def test_allow_list_short_circuits_and_remember_persists(tmp_path: Path) -> None:
    store = PermissionStore.for_project(tmp_path, "-work-demo")
    emit = AsyncMock()
    mediator = PermissionMediator("p", emit=emit, allow_store=store)

    task = asyncio.create_task(mediator.request("Bash", {"command": "git add a.py"}))
    (request_id,) = await _wait_pending(mediator)
    mediator.resolve(request_id, PermissionResponse.allow(remember=True))
    assert (await task).allowed
    assert "Bash(git add *)" in store.load()

    emit.reset_mock()
    auto = await mediator.request("Bash", {"command": "git add b.py"})
    assert auto.allowed
    emit.assert_not_awaited()


def test_response_wire_shapes() -> None:
    allow = PermissionResponse.allow()
    assert allow.to_wire({"a": 1}) == {"behavior": "allow", "updatedInput": {"a": 1}}
    deny = PermissionResponse.from_dict({"behavior": "deny"})
    assert deny.to_wire({}) == {"behavior": "deny", "message": DEFAULT_DENY_MESSAGE}
    parsed = PermissionResponse.from_dict(
        {"behavior": "ALLOW", "updatedInput": {"x": 2}, "remember": True}
    )
    assert parsed.allowed and parsed.remember and parsed.updated_input == {"x": 2}
    with pytest.raises(ValueError):
        PermissionResponse.from_dict({"behavior": "maybe"})


@pytest.mark.asyncio
async def test_get_request_exposes_pending_record_until_resolved() -> None:
    mediator = PermissionMediator("proc-7")

    task = asyncio.create_task(mediator.request("Write", {"file_path": "a.py"}))
    (request_id,) = await _wait_pending(mediator)
    pending = mediator.get_request(request_id)
    assert pending is not None
    assert pending.request_id == request_id
    assert pending.process_id == "proc-7"
    assert pending.tool_name == "Write"
    assert pending.input == {"file_path": "a.py"}
    assert mediator.get_request("nope") is None

    mediator.resolve(request_id, PermissionResponse.deny())
    await task
    assert mediator.get_request(request_id) is None
