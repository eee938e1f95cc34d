# src/wallet_orchestrator/events/relay.py

"""
Event relay.

Fans scheduler events out to any number of observers without coupling the scheduler
to a transport. Delivery is synchronous and in emission order, so events of one task
are always seen in the order the scheduler produced them. A failing observer is
logged and skipped; it never affects the scheduler.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class TaskEventName(StrEnum):
    TASK_CREATED = "taskCreated"
    TASK_STARTED = "taskStarted"
    TASK_PROGRESS = "taskProgress"
    TASK_RESULT = "taskResult"
    TASK_ERROR = "taskError"
    TASK_LOG = "taskLog"
    TASK_FINISHED = "taskFinished"
    TASK_STOPPED = "taskStopped"


@dataclass(slots=True, frozen=True)
class TaskEvent:
    name: TaskEventName
    task_id: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


Observer = Callable[[TaskEvent], None]


class Subscription:
    """De-registration handle returned by `EventRelay.subscribe`."""

    def __init__(self, relay: EventRelay, key: int) -> None:
        self._relay = relay
        self._key = key

    @property
    def active(self) -> bool:
        return self._relay._has(self._key)

    def unsubscribe(self) -> None:
        self._relay._remove(self._key)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unsubscribe()


class EventRelay:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._observers: dict[int, tuple[Observer, frozenset[TaskEventName] | None]] = {}

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(
        self,
        observer: Observer,
        events: Iterable[TaskEventName | str] | None = None,
    ) -> Subscription:
        names = frozenset(TaskEventName(e) for e in events) if events is not None else None
        key = next(self._ids)
        self._observers[key] = (observer, names)
        return Subscription(self, key)

    def emit(self, name: str, task_id: str, payload: dict[str, Any]) -> None:
        event = TaskEvent(name=TaskEventName(name), task_id=task_id, payload=payload)
        # Snapshot: observers may unsubscribe while we deliver.
        for key, (observer, names) in list(self._observers.items()):
            if names is not None and event.name not in names:
                continue
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "Observer %s failed on %s task_id=%s", key, event.name.value, task_id
                )

    async def stream(
        self,
        events: Iterable[TaskEventName | str] | None = None,
    ) -> AsyncIterator[TaskEvent]:
        """
        Async view of the event stream.

        Must be consumed on the loop the scheduler emits on. The subscription lives
        as long as the iterator; closing it (or breaking out of `async for`) unsubscribes.
        """
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue()
        sub = self.subscribe(queue.put_nowait, events)
        try:
            while True:
                yield await queue.get()
        finally:
            sub.unsubscribe()

    def _has(self, key: int) -> bool:
        return key in self._observers

    def _remove(self, key: int) -> None:
        self._observers.pop(key, None)
