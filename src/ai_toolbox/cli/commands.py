# src/ai_toolbox/cli/commands.py

from __future__ import annotations

import base64
import inspect
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, cast

from ..core.state import AppState
from ..jobs.extractors import DECODERS, template_payload
from ..jobs.job_models import IterationResult
from ..jobs.job_poller import ChainSpec
from ..screens.session import ScreenSession, TabView
from ..tasks.task_models import Task, TaskStatus, format_duration

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], str]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)

JOB_TASK_TYPE = "runpod-job"
CHAIN_TASK_TYPE = "runpod-chain"
SYNC_TASK_TYPE = "runpod-sync"
MAX_CHAIN_ITERATIONS = 10


class CommandRegistry:
    """Simple slash-command registry used by the console connector (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except Exception:
            nparams = 3

        if nparams >= 3:
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, emit)

        h2 = cast(CommandHandler2, handler)
        return h2(state, args)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _ts(value: float | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _task_line(task: Task) -> str:
    line = f"{task.id} [{task.status.value}] {task.title or task.type or 'Task'}"
    if task.status == TaskStatus.RUNNING:
        line += f" {task.progress}%"
    line += f" ({format_duration(task)})"
    return line


def _split_decoder_flag(args: list[str]) -> tuple[str, list[str]]:
    if args and args[0] == "--image":
        return "image", args[1:]
    return "passthrough", args


def _parse_json(parts: list[str]) -> dict[str, Any]:
    data = json.loads(" ".join(parts))
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def _read_input(arg: str) -> str:
    """Literal input, or @path to send a file as base64."""
    if arg.startswith("@"):
        return base64.b64encode(Path(arg[1:]).expanduser().read_bytes()).decode("ascii")
    return arg


def _open_session(state: AppState, tab_id: str, emit: CommandEmitter | None) -> ScreenSession:
    session = state.sessions.get(tab_id)
    if session is None:

        def on_change(view: TabView) -> None:
            if emit is None:
                return
            if view.error:
                emit(f"[{tab_id}] failed: {view.error}")
            elif view.result_url and not view.is_processing:
                emit(f"[{tab_id}] done: {view.result_url[:120]}")

        session = ScreenSession(tab_id, state.tasks, state.tabs, on_change=on_change)
        state.sessions[tab_id] = session
    session.attach()
    return session


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str]) -> str:
    settings = state.settings
    endpoint = getattr(settings, "runpod_endpoint", "") or "(not set)"
    active = len(state.supervisor.active_task_ids()) if state.supervisor else 0
    return (
        "Status:\n"
        f"  Job service: {endpoint if state.job_service else 'disabled'}\n"
        f"  Poll interval / timeout: {getattr(settings, 'poll_interval_seconds', '?')}s"
        f" / {getattr(settings, 'job_timeout_seconds', '?')}s\n"
        f"  Tasks: {state.tasks.count_tasks()} (active jobs: {active})\n"
        f"  Open tabs: {len(state.tabs.tab_ids())}"
    )


def cmd_tasks(state: AppState, args: list[str]) -> str:
    tasks = state.tasks.list_tasks()
    if not tasks:
        return "No tasks."
    lines = [f"Tasks ({len(tasks)}):"]
    for task in tasks:
        lines.append("  " + _task_line(task))
        if task.error:
            lines.append(f"    error: {task.error}")
    return "\n".join(lines)


def cmd_task(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /task <task_id>"
    task = state.tasks.get_task(args[0])
    if task is None:
        return f"No task with id={args[0]}."
    lines = [
        _task_line(task),
        f"  type: {task.type}",
        f"  description: {task.description or '-'}",
        f"  tab: {task.tab_id or '-'}",
        f"  created: {_ts(task.created_at)}",
        f"  updated: {_ts(task.updated_at)}",
    ]
    if task.result_url:
        lines.append(f"  result: {task.result_url[:120]}")
    if task.error:
        lines.append(f"  error: {task.error}")
    return "\n".join(lines)


def cmd_remove(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /remove <task_id>"
    if state.tasks.get_task(args[0]) is None:
        return f"No task with id={args[0]}."
    state.tasks.remove_task(args[0])
    return f"Task {args[0]} removed."


def cmd_cancel(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /cancel <task_id>"
    if state.supervisor is None or not state.supervisor.cancel(args[0]):
        return f"No running job for task {args[0]}."
    return f"Stopped tracking task {args[0]} (the remote job is not cancelled)."


def cmd_run(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /run <tab_id> [--image] <json payload>
    """
    if state.supervisor is None:
        return "Job service is not configured. Set TOOLBOX_RUNPOD_ENDPOINT and TOOLBOX_RUNPOD_API_KEY."
    if len(args) < 2:
        return "Usage: /run <tab_id> [--image] <json payload>"

    tab_id = args[0]
    decoder_name, rest = _split_decoder_flag(args[1:])
    try:
        payload = _parse_json(rest)
    except ValueError as e:
        return f"Invalid payload: {e}"

    session = _open_session(state, tab_id, emit)
    session.save(payload=payload, decoder=decoder_name)
    task_id = session.start_task(JOB_TASK_TYPE, f"RunPod job: {tab_id}", f"Job for tab {tab_id}")
    state.supervisor.start_job(task_id, payload, decoder=DECODERS[decoder_name])
    logger.info("Job started task=%s tab=%s", task_id, tab_id)
    return f"Started task {task_id}."


def cmd_runsync(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /runsync <tab_id> [--image] <json payload>

    One blocking /runsync request instead of submit + poll.
    """
    run_sync = getattr(state.job_service, "run_sync", None)
    if state.supervisor is None or run_sync is None:
        return "Job service does not support /runsync (or is not configured)."
    if len(args) < 2:
        return "Usage: /runsync <tab_id> [--image] <json payload>"

    tab_id = args[0]
    decoder_name, rest = _split_decoder_flag(args[1:])
    try:
        payload = _parse_json(rest)
    except ValueError as e:
        return f"Invalid payload: {e}"

    session = _open_session(state, tab_id, emit)
    session.save(payload=payload, decoder=decoder_name)
    task_id = session.start_task(SYNC_TASK_TYPE, f"RunPod runsync: {tab_id}", f"Sync job for tab {tab_id}")
    state.supervisor.start_request(task_id, lambda: run_sync(payload), decoder=DECODERS[decoder_name])
    logger.info("Sync request started task=%s tab=%s", task_id, tab_id)
    return f"Started task {task_id}."


def cmd_chain(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /chain <tab_id> <iterations> <input|@file> [--image] <json template with "{{input}}">
    """
    if state.supervisor is None:
        return "Job service is not configured. Set TOOLBOX_RUNPOD_ENDPOINT and TOOLBOX_RUNPOD_API_KEY."
    if len(args) < 4:
        return "Usage: /chain <tab_id> <iterations> <input|@file> [--image] <json template>"

    tab_id = args[0]
    try:
        iterations = int(args[1])
    except ValueError:
        return "Iterations must be a number."
    if not 1 <= iterations <= MAX_CHAIN_ITERATIONS:
        return f"Iterations must be between 1 and {MAX_CHAIN_ITERATIONS}."

    decoder_name, rest = _split_decoder_flag(args[3:])
    try:
        template = _parse_json(rest)
        initial = _read_input(args[2])
    except (ValueError, OSError) as e:
        return f"Invalid chain input: {e}"

    session = _open_session(state, tab_id, emit)
    session.save(iterations=iterations, template=template, results=[])
    task_id = session.start_task(
        CHAIN_TASK_TYPE, f"RunPod chain: {tab_id}", f"Chained job for tab {tab_id}"
    )

    def on_iteration(item: IterationResult, results: list[IterationResult]) -> None:
        state.tabs.update_tab_state(tab_id, {"results": [r.to_dict() for r in results]})
        if emit is not None:
            emit(f"[{tab_id}] iteration {item.number}/{iterations} done")

    spec = ChainSpec(
        initial_input=initial,
        build_payload=template_payload(template),
        iterations=iterations,
        decoder=DECODERS[decoder_name],
    )
    state.supervisor.start_chain(task_id, spec, on_iteration=on_iteration)
    return f"Started chained task {task_id} ({iterations} iterations)."


def cmd_tab(state: AppState, args: list[str]) -> str:
    """
    /tab                 -> list tabs
    /tab <tab_id>        -> show tab state
    /tab clear <tab_id>  -> close the tab (drop its state)
    """
    if not args:
        ids = state.tabs.tab_ids()
        return "Tabs: " + (", ".join(ids) if ids else "(none)")

    if args[0] == "clear":
        if len(args) < 2:
            return "Usage: /tab clear <tab_id>"
        session = state.sessions.pop(args[1], None)
        if session is not None:
            session.close()
        else:
            state.tabs.clear_tab_state(args[1])
        return f"Tab {args[1]} closed."

    blob = state.tabs.get_tab_state(args[0])
    if blob is None:
        return f"No state for tab {args[0]}."
    shown = {k: (v[:80] + "..." if isinstance(v, str) and len(v) > 80 else v) for k, v in blob.items()}
    if isinstance(shown.get("results"), list):
        shown["results"] = f"{len(shown['results'])} result(s)"
    return json.dumps(shown, ensure_ascii=False, indent=2, default=str)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show job service and task counters.")
registry.register("tasks", cmd_tasks, help_text="List tasks, newest first.", aliases=["ls"])
registry.register("task", cmd_task, help_text="Show one task: /task <id>.")
registry.register("remove", cmd_remove, help_text="Remove a task (stops local polling): /remove <id>.", aliases=["rm"])
registry.register("cancel", cmd_cancel, help_text="Stop tracking a running job: /cancel <id>.")
registry.register("run", cmd_run, help_text="Submit a job: /run <tab> [--image] <json>.")
registry.register(
    "runsync", cmd_runsync, help_text="Single blocking request: /runsync <tab> [--image] <json>."
)
registry.register(
    "chain",
    cmd_chain,
    help_text="Chained job: /chain <tab> <n> <input|@file> [--image] <json template>.",
)
registry.register("tab", cmd_tab, help_text="Tab state: /tab | /tab <id> | /tab clear <id>.")
