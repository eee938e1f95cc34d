# src/wallet_orchestrator/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from typing import cast

from ..core.errors import ValidationError
from ..core.state import AppState
from ..tasks import task_api
from ..tasks.task_models import TaskSnapshot
from ..worker.script_loader import list_scripts

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], str]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /run, ...)."""

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

        try:
            if nparams >= 3:
                h3 = cast(CommandHandler3, handler)
                return h3(state, args, emit)

            h2 = cast(CommandHandler2, handler)
            return h2(state, args)
        except ValidationError as e:
            return f"Invalid {e.field}: {e.message}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _ts_local(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def format_snapshot(snap: TaskSnapshot) -> str:
    return (
        f"{snap.id}: {snap.status.value} {snap.progress}% "
        f"wallets={snap.wallet_count} results={snap.result_count} errors={snap.error_count} "
        f"duration={snap.duration_ms / 1000:.1f}s script={snap.script_ref}"
    )


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_scripts(state: AppState, args: list[str]) -> str:
    scripts_dir = state.settings.scripts_dir
    scripts = list_scripts(scripts_dir)
    if not scripts:
        return f"No scripts found in {scripts_dir}."
    lines = [f"Scripts in {scripts_dir}:"]
    for s in scripts:
        desc = f" - {s.description}" if s.description else ""
        lines.append(f"  {s.id} ({s.name} v{s.version}){desc}")
    return "\n".join(lines)


def cmd_run(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /run <script> <wallets.json> [key=value ...]
    """
    if len(args) < 2:
        return "Usage: /run <script> <wallets.json> [key=value ...]"

    script, wallets_path, *rest = args
    params = task_api.parse_params(rest)

    if emit:
        emit(f"[RUN] Submitting {script} with wallets from {wallets_path}...")

    task_id = task_api.submit_script(state, script=script, wallets_path=wallets_path, params=params)
    logger.debug("Submitted task %s via console", task_id)
    return f"Task {task_id} submitted."


def cmd_stop(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /stop <task_id>"
    task_id = args[0]
    if task_api.stop_task(state, task_id):
        return f"Stop requested for {task_id}."
    return f"Task {task_id} is unknown or already finished."


def cmd_status(state: AppState, args: list[str]) -> str:
    """
    /status        -> scheduler summary
    /status <id>   -> one task
    """
    if args:
        snap = task_api.get_task(state, args[0])
        if snap is None:
            return f"Unknown task: {args[0]}"
        lines = [
            format_snapshot(snap),
            f"  created: {_ts_local(snap.created_at)}",
            f"  started: {_ts_local(snap.started_at)}",
            f"  ended:   {_ts_local(snap.ended_at)}",
        ]
        for err in snap.errors[-5:]:
            lines.append(f"  error [{err.kind}] {err.message}")
        return "\n".join(lines)

    snaps = task_api.list_tasks(state)
    counts = Counter(s.status.value for s in snaps)
    by_status = ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "no tasks"
    running, limit = task_api.get_load(state)
    return (
        "Status:\n"
        f"  Running: {running}/{limit}\n"
        f"  Tasks: {by_status}\n"
        f"  Scripts dir: {state.settings.scripts_dir}"
    )


def cmd_tasks(state: AppState, args: list[str]) -> str:
    snaps = task_api.list_tasks(state)
    if not snaps:
        return "No tasks."
    return "\n".join(format_snapshot(s) for s in snaps)


def cmd_limit(state: AppState, args: list[str]) -> str:
    if not args:
        _, current = task_api.get_load(state)
        return f"Concurrency limit is {current}. Use /limit <1-10>."
    try:
        limit = int(args[0])
    except ValueError:
        return "Usage: /limit <1-10>"
    new_limit = task_api.set_concurrency_limit(state, limit)
    return f"Concurrency limit set to {new_limit}."


def cmd_cleanup(state: AppState, args: list[str]) -> str:
    """
    /cleanup            -> remove tasks finished longer ago than the configured age
    /cleanup <minutes>  -> custom age (0 removes every finished task)
    """
    if args:
        try:
            minutes = float(args[0])
        except ValueError:
            return "Usage: /cleanup [minutes]"
        older_than_ms = int(minutes * 60_000)
    else:
        older_than_ms = int(state.settings.cleanup_age_seconds * 1000)

    removed = task_api.cleanup_tasks(state, older_than_ms)
    return f"Removed {removed} finished task(s)."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("scripts", cmd_scripts, help_text="List scripts in the scripts directory.")
registry.register(
    "run", cmd_run, help_text="Run a script: /run <script> <wallets.json> [key=value ...]."
)
registry.register("stop", cmd_stop, help_text="Stop a task: /stop <task_id>.")
registry.register("status", cmd_status, help_text="Scheduler summary, or one task: /status [id].")
registry.register("tasks", cmd_tasks, help_text="List all tasks.", aliases=["ls"])
registry.register("limit", cmd_limit, help_text="Show or set the concurrency limit: /limit <1-10>.")
registry.register(
    "cleanup", cmd_cleanup, help_text="Drop finished tasks older than N minutes: /cleanup [minutes]."
)
