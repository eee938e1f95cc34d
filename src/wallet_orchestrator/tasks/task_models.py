# src/wallet_orchestrator/tasks/task_models.py

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from ..core.ports import WorkerHandle


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    pending -> running -> completed | failed
    pending -> stopped (no process ever spawned)
    running -> stopped (after the worker exits or is killed)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.STOPPED})


class WalletRef(BaseModel):
    """
    Wallet descriptor handed to a script.

    `secret` is already-decrypted key material supplied by the caller; the scheduler
    never persists or decrypts anything itself. Extra keys are passed through.
    """

    model_config = ConfigDict(extra="allow")

    address: str
    id: str | None = None
    label: str | None = None
    secret: str | None = Field(default=None, repr=False)

    @field_validator("address")
    @classmethod
    def _address_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("address must not be empty")
        return v


@dataclass(slots=True, frozen=True)
class TaskError:
    kind: str
    message: str
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "timestamp": self.timestamp}


_task_counter = itertools.count(1)


def new_task_id() -> str:
    # Counter + wall clock in ms: unique under rapid submission.
    return f"task_{next(_task_counter)}_{int(time.time() * 1000)}"


@dataclass(slots=True, frozen=True)
class TaskSnapshot:
    id: str
    script_ref: str
    status: TaskStatus
    progress: int
    result_count: int
    error_count: int
    wallet_count: int
    duration_ms: int
    created_at: float
    started_at: float | None
    ended_at: float | None
    results: tuple[Any, ...] = ()
    errors: tuple[TaskError, ...] = ()

    def as_dict(self, *, include_details: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "script_ref": self.script_ref,
            "status": self.status.value,
            "progress": self.progress,
            "result_count": self.result_count,
            "error_count": self.error_count,
            "wallet_count": self.wallet_count,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }
        if include_details:
            out["results"] = list(self.results)
            out["errors"] = [e.as_dict() for e in self.errors]
        return out


@dataclass(slots=True, eq=False)
class Task:
    id: str
    script_ref: str
    params: dict[str, Any]
    wallets: list[WalletRef]

    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    results: list[Any] = field(default_factory=list)
    errors: list[TaskError] = field(default_factory=list)

    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    ended_at: float | None = None

    # Exclusively owned while RUNNING; cleared on every terminal transition.
    process: WorkerHandle | None = None

    stop_requested: bool = False
    kill_timer: asyncio.TimerHandle | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def duration_ms(self, now: float | None = None) -> int:
        if self.started_at is None:
            return 0
        end = self.ended_at if self.ended_at is not None else (now or time.time())
        return max(0, int((end - self.started_at) * 1000))

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            script_ref=self.script_ref,
            status=self.status,
            progress=self.progress,
            result_count=len(self.results),
            error_count=len(self.errors),
            wallet_count=len(self.wallets),
            duration_ms=self.duration_ms(),
            created_at=self.created_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            results=tuple(self.results),
            errors=tuple(self.errors),
        )
