# src/wallet_orchestrator/tasks/task_registry.py

from __future__ import annotations

import logging
import time
from collections.abc import Iterator

from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    In-memory task registry owned by one scheduler.

    - iteration order is insertion order (admission fairness relies on it)
    - entries are removed only by `prune_terminal`, never implicitly
    - not thread-safe: all mutations happen on the scheduler's event loop
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self._tasks.values()))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def add(self, task: Task) -> None:
        if task.id in self._tasks:
            raise KeyError(f"duplicate task id: {task.id}")
        self._tasks[task.id] = task

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def first_pending(self) -> Task | None:
        for task in self._tasks.values():
            if task.status == TaskStatus.PENDING:
                return task
        return None

    def count_by_status(self, status: TaskStatus) -> int:
        return sum(1 for t in self._tasks.values() if t.status == status)

    def prune_terminal(self, *, older_than_s: float, now: float | None = None) -> int:
        """Delete terminal tasks that ended at least `older_than_s` ago."""
        now_ts = time.time() if now is None else now
        stale = [
            task_id
            for task_id, task in self._tasks.items()
            if task.is_terminal and task.ended_at is not None and now_ts - task.ended_at >= older_than_s
        ]
        for task_id in stale:
            del self._tasks[task_id]
        if stale:
            logger.debug("Pruned %d terminal tasks (older_than_s=%s)", len(stale), older_than_s)
        return len(stale)
