# src/wallet_orchestrator/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import Settings
from ..events.relay import EventRelay
from ..tasks.task_scheduler import TaskScheduler

if TYPE_CHECKING:
    from ..connectors.background import SchedulerBackgroundRunner


@dataclass
class AppState:
    """
    Process-wide application state shared by connectors and commands.

    The scheduler itself lives on the background runner's event loop; front-ends
    reach it through `runner.call(...)` (see tasks/task_api.py).
    """

    settings: Settings
    events: EventRelay
    scheduler: TaskScheduler
    runner: SchedulerBackgroundRunner | None = None
