"""Framed-pipe backend: the agent CLI as a subprocess speaking stream-json.

stdout and stderr are read by separate tasks into one record queue so a
chatty stderr never stalls protocol records. Inbound control requests
(tool permission checks) are answered from their own tasks and never
reach the normalizer.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import uuid
from collections.abc import AsyncIterator, Coroutine
from typing import Any

from ..errors import BackendStartError, ControlRequestError
from ..models import SESSION_TERMINATED_MESSAGE, PermissionResponse
from ..turn_injector import TurnInjector
from .base import Backend, BackendOptions, PermissionHandler
from .framing import LineFramer
from .platform import (
    is_windows,
    resolve_claude_binary,
    send_kill,
    send_terminate,
    signal_name,
    tree_kill,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

# Marks the end of one output stream in the record queue.
_EOF = object()


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()``, this never raises
    ``LimitOverrunError``: when the buffer fills before a newline is
    found, the buffered bytes are drained and accumulation continues
    until the separator or EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            chunks.append(exc.partial)
            return b"".join(chunks)


class PipeBackend(Backend):
    """``claude --print`` over stdin/stdout."""

    def __init__(
        self,
        options: BackendOptions,
        prompts: TurnInjector,
        permission_handler: PermissionHandler,
    ) -> None:
        super().__init__(options, prompts, permission_handler)
        self._proc: asyncio.subprocess.Process | None = None
        self._framer = LineFramer()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._io_tasks: list[asyncio.Task] = []
        self._control_tasks: set[asyncio.Task] = set()
        self._control_futures: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._write_lock = asyncio.Lock()
        self._request_counter = itertools.count(1)
        self._terminating = False

    @property
    def name(self) -> str:
        return "pipe"

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    def build_command(self) -> list[str]:
        opts = self.options
        cmd = [
            resolve_claude_binary(opts.cli_path),
            "--print",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if opts.include_partial_messages:
            cmd.append("--include-partial-messages")
        cmd += ["--permission-prompt-tool", "stdio"]
        if opts.permission_mode:
            cmd += ["--permission-mode", opts.permission_mode]
        if opts.resume_session_id:
            cmd += ["--resume", opts.resume_session_id]
        return cmd

    @staticmethod
    def build_env() -> dict[str, str]:
        env = dict(os.environ)
        env["FORCE_COLOR"] = "0"
        # The CLI refuses to start when it believes it is nested in itself.
        env.pop("CLAUDECODE", None)
        return env

    async def start(self) -> None:
        cmd = self.build_command()
        logger.info(
            "Session %s launching %s cwd=%s resume=%s mode=%s",
            self.options.process_id[:8],
            cmd[0],
            self.options.cwd,
            (self.options.resume_session_id or "-")[:8],
            self.options.permission_mode or "default",
        )
        kwargs: dict[str, Any] = {}
        if not is_windows():
            # Own process group so kill reaches the CLI's children.
            kwargs["start_new_session"] = True
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.options.cwd,
                env=self.build_env(),
                **kwargs,
            )
        except OSError as exc:
            raise BackendStartError(
                self.options.process_id, f"{cmd[0]}: {exc}"
            ) from exc

        logger.info(
            "Session %s agent CLI started pid=%s",
            self.options.process_id[:8], self._proc.pid,
        )
        self._io_tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
            asyncio.create_task(self._pump_prompts()),
        ]
        self._spawn_control(self._send_initialize())

    async def records(self) -> AsyncIterator[dict[str, Any]]:
        if self._proc is None:
            raise RuntimeError("PipeBackend.records() called before start()")
        open_streams = 2
        while open_streams:
            item = await self._queue.get()
            if item is _EOF:
                open_streams -= 1
                continue
            yield item
        returncode = await self._proc.wait()
        logger.info(
            "Session %s agent CLI exited returncode=%s",
            self.options.process_id[:8], returncode,
        )
        yield {
            "type": "exit",
            "code": returncode if returncode >= 0 else None,
            "signal": signal_name(returncode),
        }

    # ── Output readers ───────────────────────────────────────

    async def _read_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        try:
            while True:
                chunk = await stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for record in self._framer.feed(chunk):
                    self._dispatch(record)
            for record in self._framer.flush():
                self._dispatch(record)
        finally:
            self._queue.put_nowait(_EOF)

    async def _read_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        stderr = self._proc.stderr
        try:
            while True:
                line = await read_line_unbounded(stderr)
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if not text:
                    continue
                logger.debug(
                    "Session %s stderr: %s", self.options.process_id[:8], text[:300],
                )
                self._queue.put_nowait(
                    {"type": "raw", "text": text, "stream": "stderr"}
                )
        finally:
            self._queue.put_nowait(_EOF)

    def _dispatch(self, record: dict[str, Any]) -> None:
        rtype = record.get("type")
        if rtype == "control_request":
            self._spawn_control(self._handle_control_request(record))
        elif rtype == "control_response":
            self._handle_control_response(record)
        elif rtype in ("control_cancel_request", "keep_alive"):
            logger.debug(
                "Session %s ignoring %s", self.options.process_id[:8], rtype,
            )
        else:
            self._queue.put_nowait(record)

    # ── Input ────────────────────────────────────────────────

    async def _pump_prompts(self) -> None:
        async for record in self._prompts:
            if not await self._write(record):
                logger.warning(
                    "Session %s stdin closed, dropping queued turn",
                    self.options.process_id[:8],
                )
                break
        self._close_stdin()

    async def _write(self, record: dict[str, Any]) -> bool:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            return False
        data = (json.dumps(record) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.debug(
                    "Session %s write failed: %s", self.options.process_id[:8], exc,
                )
                return False
        return True

    def _close_stdin(self) -> None:
        proc = self._proc
        if proc is not None and proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

    # ── Control protocol ─────────────────────────────────────

    def _spawn_control(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._control_tasks.add(task)
        task.add_done_callback(self._control_task_done)

    def _control_task_done(self, task: asyncio.Task) -> None:
        self._control_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session %s control task failed: %s",
                self.options.process_id[:8], exc, exc_info=exc,
            )

    async def _handle_control_request(self, record: dict[str, Any]) -> None:
        request_id = record.get("request_id")
        request = record.get("request") or {}
        subtype = request.get("subtype")
        if subtype != "can_use_tool":
            logger.warning(
                "Session %s unsupported control request %r",
                self.options.process_id[:8], subtype,
            )
            await self._write({
                "type": "control_response",
                "response": {
                    "subtype": "error",
                    "request_id": request_id,
                    "error": f"Unsupported control request: {subtype}",
                },
            })
            return

        tool_name = str(request.get("tool_name") or "")
        tool_input = request.get("input") or {}
        if self._terminating:
            decision = PermissionResponse.deny(SESSION_TERMINATED_MESSAGE)
        else:
            decision = await self._permission_handler(tool_name, tool_input)
        await self._write({
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": request_id,
                "response": decision.to_wire(tool_input),
            },
        })

    def _handle_control_response(self, record: dict[str, Any]) -> None:
        response = record.get("response") or {}
        request_id = response.get("request_id")
        future = self._control_futures.pop(request_id, None)
        if future is None or future.done():
            logger.debug(
                "Session %s control response for unknown request %s",
                self.options.process_id[:8], request_id,
            )
            return
        if response.get("subtype") == "error":
            future.set_exception(ControlRequestError(
                str(request_id), str(response.get("error") or "error"),
            ))
        else:
            future.set_result(response.get("response") or {})

    async def _control_request(self, request: dict[str, Any]) -> dict[str, Any]:
        request_id = f"req_{next(self._request_counter)}_{uuid.uuid4().hex[:8]}"
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._control_futures[request_id] = future
        try:
            sent = await self._write({
                "type": "control_request",
                "request_id": request_id,
                "request": request,
            })
            if not sent:
                raise ControlRequestError(request_id, "stdin is closed")
            return await asyncio.wait_for(
                future, timeout=self.options.control_timeout_seconds
            )
        finally:
            self._control_futures.pop(request_id, None)

    async def _send_initialize(self) -> None:
        try:
            await self._control_request({"subtype": "initialize", "hooks": None})
        except (asyncio.TimeoutError, ControlRequestError) as exc:
            logger.debug(
                "Session %s initialize not acknowledged: %s",
                self.options.process_id[:8], exc,
            )

    async def set_permission_mode(self, mode: str) -> bool:
        try:
            await self._control_request(
                {"subtype": "set_permission_mode", "mode": mode}
            )
        except (asyncio.TimeoutError, ControlRequestError) as exc:
            logger.warning(
                "Session %s set_permission_mode(%s) failed: %s",
                self.options.process_id[:8], mode, exc or "timeout",
            )
            return False
        self.options.permission_mode = mode
        return True

    # ── Teardown ─────────────────────────────────────────────

    async def terminate(self) -> None:
        """SIGTERM the process group, SIGKILL after the grace window.

        On Windows the whole tree is reclaimed with taskkill.
        """
        if self._terminating:
            return
        self._terminating = True
        for task in list(self._control_tasks):
            task.cancel()
        for future in self._control_futures.values():
            if not future.done():
                future.cancel()
        self._control_futures.clear()
        self._close_stdin()

        proc = self._proc
        if proc is not None and proc.returncode is None:
            grace = self.options.kill_grace_seconds
            if is_windows():
                await tree_kill(proc)
            elif send_terminate(proc):
                try:
                    await asyncio.wait_for(proc.wait(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Session %s pid=%s ignored SIGTERM for %.1fs, sending SIGKILL",
                        self.options.process_id[:8], proc.pid, grace,
                    )
                    send_kill(proc)
            await proc.wait()
            logger.info(
                "Session %s agent CLI reaped pid=%s returncode=%s",
                self.options.process_id[:8], proc.pid, proc.returncode,
            )

        for task in self._io_tasks:
            if not task.done():
                task.cancel()
