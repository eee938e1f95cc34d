# src/wallet_orchestrator/connectors/console_connector.py

from __future__ import annotations

import logging
import sys
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.state import AppState
from ..events.relay import TaskEvent, TaskEventName

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _rewrite_prev_line(line: str) -> None:
    """
    Replace the last terminal line with `line`.
    Best-effort: if not a TTY, just print a new line.
    """
    try:
        if sys.stdout.isatty():
            sys.stdout.write("\033[1A\033[2K\r")
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
        else:
            print(line)
    except Exception:
        print(line)


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


def format_event(event: TaskEvent) -> str | None:
    """One console line per event; None for events not worth printing."""
    p = event.payload
    tag = f"[{event.task_id}]"
    match event.name:
        case TaskEventName.TASK_CREATED:
            return f"{tag} created ({p.get('wallet_count', 0)} wallets, {p.get('script_ref')})"
        case TaskEventName.TASK_STARTED:
            return f"{tag} started"
        case TaskEventName.TASK_PROGRESS:
            msg = f" {p['message']}" if p.get("message") else ""
            return f"{tag} {p.get('progress', 0)}% ({p.get('current', 0)}/{p.get('total', 0)}){msg}"
        case TaskEventName.TASK_RESULT:
            return None
        case TaskEventName.TASK_ERROR:
            err = p.get("error") or {}
            return f"{tag} error [{err.get('kind')}] {err.get('message')}"
        case TaskEventName.TASK_LOG:
            return f"{tag} {str(p.get('level', 'info')).upper()}: {p.get('message', '')}"
        case TaskEventName.TASK_FINISHED:
            return (
                f"{tag} {p.get('status')} in {p.get('duration_ms', 0) / 1000:.1f}s "
                f"(results={p.get('result_count', 0)} errors={p.get('error_count', 0)})"
            )
        case TaskEventName.TASK_STOPPED:
            return f"{tag} stopped"
    return None


def _print_event(event: TaskEvent) -> None:
    line = format_event(event)
    if line is not None:
        _print_ts(line)


def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Use /help for commands. Use /exit to quit.\n")

    def emit(text: str) -> None:
        # Immediate user-visible feedback before a command returns.
        _print_ts(text)

    with state.events.subscribe(_print_event):
        while True:
            try:
                user_input = input(">>> ").strip()
                _rewrite_prev_line(f"[{_ts_local()}] >>> {user_input}")
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if not user_input:
                continue

            if user_input.lower() in ("/exit", "/quit"):
                logger.info("Console exit command received.")
                break

            try:
                cmd_response = command_registry.handle(state, user_input, emit=emit)
            except Exception:
                logger.exception("Command handler crashed.")
                cmd_response = "Internal error while handling a command."

            if cmd_response is None:
                cmd_response = "Not a command. Use /help to list available commands."
            _print_ts(cmd_response)

    logger.info("Console connector finished.")
