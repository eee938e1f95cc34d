# src/wallet_orchestrator/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the event relay and the task scheduler into AppState.
"""

from __future__ import annotations

import logging

from ..config import Settings, get_settings
from ..core.state import AppState
from ..events.relay import EventRelay
from ..tasks.task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings: Settings | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    events = EventRelay()
    scheduler = TaskScheduler(events=events, settings=settings)
    logger.debug(
        "State created (scripts_dir=%s concurrency_limit=%d)",
        settings.scripts_dir,
        scheduler.concurrency_limit,
    )
    return AppState(settings=settings, events=events, scheduler=scheduler)
