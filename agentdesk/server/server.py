"""HTTP + SSE control surface for the session supervisor.

A thin adapter: every route maps onto one SessionSupervisor or
SessionStore operation. Engine events and store changes reach clients
over a single Server-Sent Events stream.

Usage:
    agentdesk --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from agentdesk.adapters.event_bus import EventBus
from agentdesk.adapters.events import SessionsChanged, event_to_dict
from agentdesk.engine.agent_session import AgentSession
from agentdesk.engine.config import EngineConfig
from agentdesk.engine.errors import OrchestrationError, SessionNotFoundError
from agentdesk.engine.models import PermissionMode, PermissionResponse
from agentdesk.engine.supervisor import BackendFactory, SessionSupervisor
from agentdesk.shared.services.session_store import SessionStore
from agentdesk.shared.services.store_watcher import StoreWatcher

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


class AgentdeskServer:
    """HTTP routing, SSE fan-out and store-change debouncing.

    All session state lives in the SessionSupervisor; all transcript
    state lives on disk behind the SessionStore.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        cwd: str | None = None,
        config: EngineConfig | None = None,
        store: SessionStore | None = None,
        backend_factory: BackendFactory | None = None,
        use_allow_list: bool = True,
    ) -> None:
        self._host = host
        self._port = port
        self._cwd = cwd or str(Path.cwd())
        self._config = config or EngineConfig()
        self._bus = EventBus(maxsize=self._config.event_queue_size)
        self._supervisor = SessionSupervisor(
            self._config,
            event_callback=self._bus.make_callback(),
            backend_factory=backend_factory,
            use_allow_list=use_allow_list,
        )
        self._store = store or SessionStore(
            self._config.store_root, self._config.first_prompt_scan_bytes,
        )
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._started_at = time.time()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pump_task: asyncio.Task | None = None
        self._watcher: StoreWatcher | None = None
        self._sessions_changed_handle: asyncio.TimerHandle | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        logger.info(
            "AgentdeskServer init host=%s port=%s cwd=%s store=%s pid=%s",
            self._host, self._port, self._cwd, self._store.root, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def supervisor(self) -> SessionSupervisor:
        return self._supervisor

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-agentdesk-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        # Live sessions
        r.add_get("/sessions", self._handle_list_active)
        r.add_post("/sessions", self._handle_spawn)
        r.add_delete("/sessions/{id}", self._handle_kill)
        r.add_post("/sessions/{id}/messages", self._handle_send_message)
        r.add_post("/sessions/{id}/permissions/{request_id}", self._handle_respond_permission)
        r.add_post("/sessions/{id}/permission-mode", self._handle_set_permission_mode)
        # Transcript store
        r.add_get("/projects", self._handle_list_projects)
        r.add_get("/projects/sessions", self._handle_list_project_sessions)
        r.add_get("/history", self._handle_history)
        r.add_get("/messages", self._handle_load_messages)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("agentdesk server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentdesk server listening on %s:%d", self._host, actual_port)

        self.start_background()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.shutdown()
            await runner.cleanup()

    def start_background(self) -> None:
        """Start the event pump and the store watcher on the running loop."""
        self._loop = asyncio.get_running_loop()
        self._pump_task = asyncio.create_task(self._pump_events(), name="sse-pump")
        self._watcher = self._store.watch_for_changes(self._on_store_changed)
        if self._watcher is None:
            logger.info("Session store not watched; sessions_changed disabled")

    async def shutdown(self) -> None:
        killed = await self._supervisor.kill_all()
        if killed:
            logger.info("Killed %d live session(s) on shutdown", killed)
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._sessions_changed_handle is not None:
            self._sessions_changed_handle.cancel()
            self._sessions_changed_handle = None
        self._bus.close()
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping %s event", event_type)

    async def _pump_events(self) -> None:
        async for event in self._bus.consume():
            self._broadcast_sse(event.event_type, event_to_dict(event))

    # ── Store change debouncing ──

    def _on_store_changed(self) -> None:
        # Runs on the watchdog thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_sessions_changed)

    def _schedule_sessions_changed(self) -> None:
        if self._sessions_changed_handle is not None:
            self._sessions_changed_handle.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._sessions_changed_handle = loop.call_later(
            self._config.watch_debounce_seconds, self._emit_sessions_changed,
        )

    def _emit_sessions_changed(self) -> None:
        self._sessions_changed_handle = None
        logger.debug("Session store changed, notifying %d client(s)", len(self._sse_queues))
        event = SessionsChanged()
        self._broadcast_sse(event.event_type, event_to_dict(event))

    # ── Helpers ──

    def _require_session(self, request: web.Request) -> tuple[AgentSession | None, web.Response | None]:
        """Return (session, None) or (None, 404 response)."""
        try:
            return self._supervisor.require(request.match_info["id"]), None
        except SessionNotFoundError as exc:
            return None, web.json_response({"error": str(exc)}, status=404)

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any] | None:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return None
        return body if isinstance(body, dict) else None

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._cwd,
            "store_root": str(self._store.root),
            "active_sessions": len(self._supervisor),
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=self._config.event_queue_size,
        )
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            active = [s.process_id for s in self._supervisor.list_active()]
            await response.write(
                f"event: connected\ndata: {json.dumps({'sessions': active})}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_list_active(self, request: web.Request) -> web.Response:
        return web.json_response({
            "sessions": [s.to_dict() for s in self._supervisor.list_active()],
        })

    async def _handle_spawn(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "Body must be a JSON object"}, status=400)
        cwd = str(body.get("cwd") or self._cwd)
        session_id = body.get("session_id") or None
        try:
            mode = PermissionMode.parse(body.get("permission_mode"))
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        try:
            process_id = await self._supervisor.spawn(
                cwd,
                session_id=session_id,
                permission_mode=mode,
                backend=body.get("backend"),
                initial_prompt=body.get("prompt"),
            )
        except OrchestrationError as exc:
            logger.warning("Spawn rejected cwd=%s: %s", cwd, exc)
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response(
            {"process_id": process_id, "cwd": cwd, "session_id": session_id},
            status=201,
        )

    async def _handle_kill(self, request: web.Request) -> web.Response:
        process_id = request.match_info["id"]
        if not await self._supervisor.kill(process_id):
            return web.json_response(
                {"error": f"Session {process_id} not found"},
                status=404,
            )
        return web.json_response({"status": "killed", "process_id": process_id})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session, err = self._require_session(request)
        if err:
            return err
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "Body must be a JSON object"}, status=400)
        content = body.get("content", body.get("text"))
        if not content:
            return web.json_response({"error": "content is required"}, status=400)
        queued = self._supervisor.send_message(session.process_id, content)
        if not queued:
            return web.json_response(
                {"error": f"Session {session.process_id} no longer accepts messages"},
                status=409,
            )
        return web.json_response({"status": "queued"})

    async def _handle_respond_permission(self, request: web.Request) -> web.Response:
        session, err = self._require_session(request)
        if err:
            return err
        request_id = request.match_info["request_id"]
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "Body must be a JSON object"}, status=400)
        try:
            response = PermissionResponse.from_dict(body)
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        pending = session.mediator.get_request(request_id)
        if pending is None:
            return web.json_response(
                {"error": f"Permission request {request_id} not pending"},
                status=404,
            )
        logger.info(
            "Resolve permission session=%s request_id=%s tool=%s behavior=%s",
            session.process_id[:8], request_id[:8], pending.tool_name,
            response.behavior.value,
        )
        if not self._supervisor.respond_to_permission(
            session.process_id, request_id, response,
        ):
            return web.json_response(
                {"error": f"Permission request {request_id} not pending"},
                status=404,
            )
        return web.json_response({"status": "resolved"})

    async def _handle_set_permission_mode(self, request: web.Request) -> web.Response:
        session, err = self._require_session(request)
        if err:
            return err
        body = await self._read_body(request)
        if body is None or not body.get("mode"):
            return web.json_response({"error": "mode is required"}, status=400)
        ok = await self._supervisor.set_permission_mode(
            session.process_id, str(body["mode"]),
        )
        return web.json_response({"ok": ok})

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = self._store.list_projects()
        return web.json_response({"projects": [p.to_dict() for p in projects]})

    async def _handle_list_project_sessions(self, request: web.Request) -> web.Response:
        project = str(request.query.get("project", "")).strip()
        if not project:
            return web.json_response({"error": "project is required"}, status=400)
        sessions = self._store.list_sessions(project)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_history(self, request: web.Request) -> web.Response:
        sessions = self._store.list_all_sessions()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_load_messages(self, request: web.Request) -> web.Response:
        project = str(request.query.get("project", "")).strip()
        session_id = str(request.query.get("session_id", "")).strip()
        if not project or not session_id:
            return web.json_response(
                {"error": "project and session_id are required"}, status=400,
            )
        messages = self._store.load_messages(project, session_id)
        return web.json_response({"messages": messages})
