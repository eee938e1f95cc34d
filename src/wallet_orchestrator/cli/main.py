# src/wallet_orchestrator/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then:
- starts the task scheduler on its own event loop in a background thread,
- runs the console REPL in the main thread (optional).
"""

from __future__ import annotations

import logging
import signal
import threading

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.background import start_scheduler_in_background
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    setup_logging(log_dir=settings.data_dir, console_level=console_level)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.info("Starting %s...", settings.app_name)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    runner = start_scheduler_in_background(state)
    if runner is None:
        logger.error("Task scheduler failed to start; exiting.")
        raise SystemExit(1)
    state.runner = runner

    # Use an Event so main can wait without a busy while-loop.
    stop_main = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    try:
        signal.signal(signal.SIGTERM, _handle_signal)
        if not settings.console_enabled:
            signal.signal(signal.SIGINT, _handle_signal)
    except (ValueError, OSError):
        logger.debug("Signal handlers not installed.", exc_info=True)

    try:
        if settings.console_enabled:
            run_console_loop(state)
            stop_main.set()
        else:
            logger.info("Console disabled. Scheduler is running. Press Ctrl+C to stop.")
            stop_main.wait()
    finally:
        runner.stop()
        # Running workers get the stop grace period, then are killed.
        runner.join(timeout=settings.stop_grace_seconds + 5.0)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
