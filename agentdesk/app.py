"""agentdesk: main application entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import threading
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.text import Text

from agentdesk.adapters.event_bus import EventBus
from agentdesk.adapters.events import (
    AgentEvent,
    Exited,
    Failed,
    Init,
    PermissionRequested,
    PermissionResolved,
    RawOutput,
    TextDelta,
    ThinkingDelta,
    ToolResult,
    ToolStarted,
    TurnComplete,
)
from agentdesk.engine.config import EngineConfig, default_app_dir
from agentdesk.engine.errors import ConfigError, OrchestrationError
from agentdesk.engine.models import PermissionResponse
from agentdesk.engine.yaml_config import discover_config_path, load_yaml_config

logger = logging.getLogger(__name__)

LOG_FILENAME = "agentdesk.log"
TOOL_OUTPUT_PREVIEW = 400


def _setup_logging(stderr_level: str | None = None) -> Path:
    """Root logger: rotating file under the app dir plus stderr."""
    log_level = os.getenv("AGENTDESK_LOG_LEVEL", "INFO").upper()
    app_dir = os.getenv("AGENTDESK_APP_DIR", "").strip()
    log_dir = (Path(app_dir).expanduser() if app_dir else default_app_dir()) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    if stderr_level:
        stream_handler.setLevel(getattr(logging, stderr_level, logging.WARNING))
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(config_arg: str | None) -> tuple[EngineConfig, str | None]:
    """Env config overlaid with the explicit or auto-discovered YAML file.

    Returns the engine config and the YAML ``defaults.cwd`` (if any).
    """
    config = EngineConfig.from_env()
    config_path = Path(config_arg) if config_arg else discover_config_path()
    if config_path is None:
        logger.info("No config file found; using env and defaults")
        return config, None
    loaded = load_yaml_config(config_path, base=config)
    logging.getLogger().setLevel(
        getattr(logging, loaded.engine.log_level, logging.INFO)
    )
    return loaded.engine, loaded.defaults.cwd


# ── Store commands ──


def _print_projects(console: Console, config: EngineConfig) -> None:
    from agentdesk.shared.services.session_store import SessionStore

    store = SessionStore(config.store_root, config.first_prompt_scan_bytes)
    projects = store.list_projects()
    if not projects:
        console.print("No projects found.")
        return
    table = Table("Name", "Path", "Directory")
    for project in projects:
        table.add_row(project.name, project.path, project.encoded_path)
    console.print(table)


def _print_sessions(console: Console, config: EngineConfig, project: str) -> None:
    from agentdesk.shared.services.session_store import SessionStore

    store = SessionStore(config.store_root, config.first_prompt_scan_bytes)
    entries = store.list_sessions(project)
    if not entries:
        console.print(f"No sessions for {project}.")
        return
    table = Table("Session", "Modified", "Branch", "First prompt")
    for entry in entries:
        title = entry.summary or entry.first_prompt or ""
        if entry.is_sidechain:
            title = f"(sidechain) {title}"
        table.add_row(
            entry.session_id,
            entry.modified or "",
            entry.git_branch or "",
            Text(title[:80]),
        )
    console.print(table)


def _print_history(console: Console, config: EngineConfig) -> None:
    from agentdesk.shared.services.session_store import SessionStore

    store = SessionStore(config.store_root, config.first_prompt_scan_bytes)
    sessions = store.list_all_sessions()
    if not sessions:
        console.print("No sessions found.")
        return
    table = Table("Updated", "Project", "Session", "Title")
    for info in sessions:
        table.add_row(info.updated_at, info.project_name, info.id, Text(info.title))
    console.print(table)


def _print_messages(config: EngineConfig, project: str, session_id: str) -> int:
    from agentdesk.shared.services.session_store import SessionStore

    store = SessionStore(config.store_root, config.first_prompt_scan_bytes)
    messages = store.load_messages(project, session_id)
    for record in messages:
        print(json.dumps(record, ensure_ascii=False))
    return 0 if messages else 1


# ── Interactive chat ──


def render_event(console: Console, event: AgentEvent) -> None:
    """Print one session event to the console."""
    if isinstance(event, Init):
        console.print(
            f"[dim]session {event.session_id} model={event.model or '?'} cwd={event.cwd or '?'}[/dim]"
        )
    elif isinstance(event, TextDelta):
        console.print(Text(event.text), end="")
    elif isinstance(event, ThinkingDelta):
        console.print(Text(event.text, style="dim italic"), end="")
    elif isinstance(event, ToolStarted):
        console.print(Text(f"\n> {event.name}", style="cyan"))
    elif isinstance(event, ToolResult):
        output = event.output
        if len(output) > TOOL_OUTPUT_PREVIEW:
            output = output[:TOOL_OUTPUT_PREVIEW] + "..."
        console.print(Text(output, style="red" if event.is_error else "dim"))
    elif isinstance(event, TurnComplete):
        parts = []
        if event.cost is not None:
            parts.append(f"${event.cost:.4f}")
        if event.duration_ms is not None:
            parts.append(f"{event.duration_ms / 1000:.1f}s")
        suffix = f" ({', '.join(parts)})" if parts else ""
        console.print(Text(f"\n-- turn complete{suffix}", style="green"))
    elif isinstance(event, PermissionRequested):
        console.print(Text(
            f"\n[permission] {event.tool_name} {json.dumps(event.input)[:200]}"
            "\n  allow? [y]es / [a]lways / [n]o",
            style="yellow",
        ))
    elif isinstance(event, PermissionResolved):
        console.print(Text(f"[permission] {event.behavior}", style="dim"))
    elif isinstance(event, Failed):
        console.print(Text(f"\nerror: {event.message}", style="bold red"))
    elif isinstance(event, Exited):
        if event.cancelled:
            reason = "cancelled"
        elif event.signal:
            reason = f"signal {event.signal}"
        else:
            reason = f"code {event.code}"
        console.print(Text(f"\n-- session exited ({reason})", style="dim"))
    elif isinstance(event, RawOutput):
        console.print(Text(event.text, style="dim"))


def permission_answer(line: str) -> PermissionResponse | None:
    """Map a chat reply to a permission decision; None if it is not one."""
    answer = line.strip().lower()
    if answer in ("y", "yes"):
        return PermissionResponse.allow()
    if answer in ("a", "always"):
        return PermissionResponse.allow(remember=True)
    if answer in ("n", "no"):
        return PermissionResponse.deny()
    return None


def _start_stdin_reader(loop: asyncio.AbstractEventLoop) -> asyncio.Queue[str | None]:
    """Feed stdin lines into a queue from a daemon thread; None marks EOF."""
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    def _read() -> None:
        for raw in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, raw.rstrip("\n"))
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=_read, name="stdin-reader", daemon=True).start()
    return queue


async def _run_chat(
    console: Console,
    config: EngineConfig,
    cwd: str,
    resume: str | None,
    backend: str | None,
    permission_mode: str | None,
) -> int:
    from agentdesk.engine.supervisor import SessionSupervisor

    bus = EventBus(maxsize=config.event_queue_size)
    supervisor = SessionSupervisor(config, event_callback=bus.make_callback())
    try:
        process_id = await supervisor.spawn(
            cwd,
            session_id=resume,
            permission_mode=permission_mode,
            backend=backend,
        )
    except (OrchestrationError, ValueError) as exc:
        console.print(Text(f"error: {exc}", style="bold red"))
        return 1

    pending: deque[str] = deque()
    exited = asyncio.Event()

    async def _render() -> None:
        async for event in bus.consume():
            if event.process_id != process_id:
                continue
            if isinstance(event, PermissionRequested):
                pending.append(event.request_id)
            elif isinstance(event, PermissionResolved) and event.request_id in pending:
                pending.remove(event.request_id)
            render_event(console, event)
            if isinstance(event, Exited):
                exited.set()
                return

    render_task = asyncio.create_task(_render(), name="chat-render")
    lines = _start_stdin_reader(asyncio.get_running_loop())
    exit_wait = asyncio.create_task(exited.wait())
    console.print(Text(
        "Type a message. /mode MODE changes the permission mode, /quit exits.",
        style="dim",
    ))
    try:
        while True:
            next_line = asyncio.create_task(lines.get())
            await asyncio.wait({next_line, exit_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not next_line.done():
                next_line.cancel()
                break
            line = next_line.result()
            if line is None:
                break
            if not line.strip():
                continue
            if pending:
                answer = permission_answer(line)
                if answer is not None:
                    supervisor.respond_to_permission(process_id, pending.popleft(), answer)
                    continue
            if line.strip() == "/quit":
                break
            if line.startswith("/mode "):
                mode = line[len("/mode "):].strip()
                ok = await supervisor.set_permission_mode(process_id, mode)
                console.print(Text(
                    f"permission mode -> {mode}" if ok else f"could not set mode {mode}",
                    style="dim",
                ))
                continue
            if not supervisor.send_message(process_id, line):
                break
    finally:
        exit_wait.cancel()
        await supervisor.kill_all()
        try:
            await asyncio.wait_for(exited.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.debug("Chat session %s exit event not seen", process_id[:8])
        bus.close()
        render_task.cancel()
        try:
            await render_task
        except asyncio.CancelledError:
            pass
    return 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdesk",
        description="agentdesk: supervise Claude agent sessions and browse their transcripts",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .agentdesk/agentdesk.yaml, then ~/.agentdesk/agentdesk.yaml)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("projects", help="List projects in the transcript store")
    sessions_p = sub.add_parser("sessions", help="List sessions of one project")
    sessions_p.add_argument(
        "project", nargs="?",
        help="Project path or directory slug (default: current directory)",
    )
    sub.add_parser("history", help="List every session across projects, newest first")
    messages_p = sub.add_parser("messages", help="Print a transcript as JSON lines")
    messages_p.add_argument("project", help="Project path or directory slug")
    messages_p.add_argument("session_id")
    chat_p = sub.add_parser("chat", help="Start an interactive agent session")
    chat_p.add_argument("--cwd", help="Working directory for the agent")
    chat_p.add_argument("--resume", metavar="SESSION_ID", help="Resume an existing session")
    chat_p.add_argument("--backend", choices=["pipe", "sdk"], help="Backend kind")
    chat_p.add_argument(
        "--permission-mode",
        choices=["default", "acceptEdits", "bypassPermissions", "plan"],
    )
    args = parser.parse_args()

    interactive = args.command == "chat"
    log_file = _setup_logging("WARNING" if interactive or not args.server else None)
    try:
        config, default_cwd = _load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"agentdesk: {exc}", file=sys.stderr)
        sys.exit(2)

    console = Console()

    if args.server:
        from agentdesk.server.server import AgentdeskServer

        logger.info(
            "Starting agentdesk server mode cwd=%s port=%s config=%s log=%s",
            Path.cwd(),
            args.port,
            args.config or "<auto>",
            log_file,
        )
        server = AgentdeskServer(
            port=args.port,
            cwd=default_cwd or str(Path.cwd()),
            config=config,
        )
        asyncio.run(server.start())
        sys.exit(0)

    if args.command == "projects":
        _print_projects(console, config)
    elif args.command == "sessions":
        _print_sessions(console, config, args.project or str(Path.cwd()))
    elif args.command == "history":
        _print_history(console, config)
    elif args.command == "messages":
        sys.exit(_print_messages(config, args.project, args.session_id))
    elif args.command == "chat":
        cwd = args.cwd or default_cwd or str(Path.cwd())
        try:
            code = asyncio.run(_run_chat(
                console, config, cwd, args.resume, args.backend, args.permission_mode,
            ))
        except KeyboardInterrupt:
            code = 130
        sys.exit(code)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
