# src/wallet_orchestrator/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The scheduler depends on Protocols instead of concrete implementations.
This keeps the event transport and the worker process swappable and makes testing easier.
"""

from collections.abc import AsyncIterator
from typing import Any, Protocol

from ..worker.protocol import ExecuteMessage, OutboundMessage


class TaskEventSink(Protocol):
    """Scheduler-side port: where lifecycle/message events go (EventRelay in production)."""

    def emit(self, name: str, task_id: str, payload: dict[str, Any]) -> None: ...


class WorkerHandle(Protocol):
    """
    What the scheduler needs from a worker process.

    `request_stop()` and `kill()` must never block; they may be called before
    `start()` has finished spawning.
    """

    task_id: str

    @property
    def alive(self) -> bool: ...

    async def start(self, execute: ExecuteMessage) -> None: ...

    def messages(self) -> AsyncIterator[OutboundMessage]: ...

    def request_stop(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...

    async def close(self, *, timeout: float) -> int | None: ...
