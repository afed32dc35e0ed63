"""Permission mediation between the agent and the operator.

Each gated tool call becomes a PermissionRequested event plus a Future
keyed by request id. The agent's tool path awaits the Future; the
operator resolves it through ``resolve``. Killing the session calls
``deny_all`` so no awaiting tool call is left suspended.

    Requested ──> Allowed
        └──────> Denied      (operator, timeout, or session terminated)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from agentdesk.adapters.events import PermissionRequested, PermissionResolved
from agentdesk.adapters.permission_store import PermissionStore

from .config import EventCallback, fire_event
from .models import (
    SESSION_TERMINATED_MESSAGE,
    PermissionRequest,
    PermissionResponse,
)

logger = logging.getLogger(__name__)


class PermissionMediator:
    """Pending permission requests for one session."""

    def __init__(
        self,
        process_id: str,
        emit: EventCallback | None = None,
        allow_store: PermissionStore | None = None,
        timeout_seconds: float = 0.0,
    ) -> None:
        self._process_id = process_id
        self._emit = emit
        self._allow_store = allow_store
        self._timeout = timeout_seconds
        self._pending: dict[str, asyncio.Future[PermissionResponse]] = {}
        self._requests: dict[str, PermissionRequest] = {}
        self._closed = False

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def get_request(self, request_id: str) -> PermissionRequest | None:
        """The pending request with this id, if it is still awaiting a decision."""
        return self._requests.get(request_id)

    async def request(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
    ) -> PermissionResponse:
        """Suspend until the operator decides on this tool call."""
        tool_input = dict(tool_input or {})
        if self._closed:
            return PermissionResponse.deny(SESSION_TERMINATED_MESSAGE)

        if self._allow_store is not None and self._allow_store.is_allowed(
            tool_name, tool_input
        ):
            logger.info(
                "Permission auto-allowed session=%s tool=%s (allow list)",
                self._process_id[:8], tool_name,
            )
            return PermissionResponse.allow()

        pending = PermissionRequest(
            process_id=self._process_id, tool_name=tool_name, input=tool_input,
        )
        request_id = pending.request_id
        future: asyncio.Future[PermissionResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        self._requests[request_id] = pending

        await fire_event(self._emit, PermissionRequested(
            process_id=pending.process_id,
            request_id=pending.request_id,
            tool_name=pending.tool_name,
            input=pending.input,
        ))
        logger.info(
            "Permission request queued session=%s request_id=%s tool=%s",
            self._process_id[:8], request_id[:8], tool_name,
        )

        try:
            if self._timeout > 0:
                response = await asyncio.wait_for(
                    asyncio.shield(future), timeout=self._timeout
                )
            else:
                response = await future
        except asyncio.TimeoutError:
            logger.warning(
                "Permission request %s timed out after %.0fs, denying",
                request_id[:8], self._timeout,
            )
            response = PermissionResponse.deny(
                f"Permission request timed out after {self._timeout:.0f}s"
            )
            if not future.done():
                future.set_result(response)
        finally:
            self._pending.pop(request_id, None)
            self._requests.pop(request_id, None)

        if response.allowed and response.remember and self._allow_store:
            pattern = self._allow_store.remember(tool_name, tool_input)
            logger.info(
                "Remembered permission pattern %s for session %s",
                pattern, self._process_id[:8],
            )

        if not self._closed:
            await fire_event(self._emit, PermissionResolved(
                process_id=self._process_id,
                request_id=request_id,
                behavior=response.behavior.value,
                message=response.message,
            ))
        return response

    def resolve(self, request_id: str, response: PermissionResponse) -> bool:
        """Resolve a pending request. False if unknown or already resolved."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.warning(
                "Permission resolve ignored request_id=%s (missing or already done)",
                request_id[:8],
            )
            return False
        future.set_result(response)
        logger.info(
            "Permission future set request_id=%s behavior=%s",
            request_id[:8], response.behavior.value,
        )
        return True

    def deny_all(self, message: str = SESSION_TERMINATED_MESSAGE) -> int:
        """Force-resolve every pending request as deny. Returns the count."""
        self._closed = True
        denied = 0
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_result(PermissionResponse.deny(message))
                denied += 1
                logger.debug(
                    "Denied pending permission %s: %s", request_id[:8], message,
                )
        self._pending.clear()
        self._requests.clear()
        if denied:
            logger.info(
                "Denied %d pending permission requests for session %s",
                denied, self._process_id[:8],
            )
        return denied
