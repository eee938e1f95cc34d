# src/wallet_orchestrator/tasks/task_scheduler.py

from __future__ import annotations

"""
Task scheduler.

Admission control and lifecycle authority for script tasks:
- registers submitted tasks (pending) in insertion order,
- admits at most one pending task per submission / terminal event while under the ceiling,
- owns one worker process per running task and relays its messages as events,
- stops tasks gracefully, then forcefully after a grace period.

Everything runs on one asyncio loop; the registry is only touched from that loop,
so no locking is needed. Worker processes supply the real parallelism.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, assert_never

from pydantic import ValidationError as PydanticValidationError

from ..config import MAX_CONCURRENCY_LIMIT, MIN_CONCURRENCY_LIMIT, Settings, get_settings
from ..core.errors import ExitError, ProcessError, TaskNotFoundError, ValidationError
from ..core.ports import TaskEventSink, WorkerHandle
from ..events.relay import EventRelay, TaskEventName
from ..worker.process import WorkerProcess
from ..worker.protocol import (
    CompletedMessage,
    ErrorMessage,
    ExecuteMessage,
    FailedMessage,
    LogMessage,
    OutboundMessage,
    ProgressMessage,
    ResultMessage,
)
from .task_models import Task, TaskError, TaskSnapshot, TaskStatus, WalletRef, new_task_id
from .task_registry import TaskRegistry

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[str], WorkerHandle]

# While running, progress tops out here; 100 is reserved for COMPLETED.
_MAX_RUNNING_PROGRESS = 99


def _default_worker_factory(settings: Settings) -> WorkerFactory:
    def factory(task_id: str) -> WorkerHandle:
        return WorkerProcess(task_id, python=settings.worker_python)

    return factory


def _check_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("limit", f"concurrency limit must be an integer, got {limit!r}")
    if not MIN_CONCURRENCY_LIMIT <= limit <= MAX_CONCURRENCY_LIMIT:
        raise ValidationError(
            "limit",
            f"concurrency limit must be between {MIN_CONCURRENCY_LIMIT} and {MAX_CONCURRENCY_LIMIT}",
        )
    return limit


def _coerce_wallets(wallets: Iterable[Any] | None) -> list[WalletRef]:
    if wallets is None or isinstance(wallets, (str, bytes, Mapping)):
        raise ValidationError("wallets", "wallets must be a list of wallet descriptors")
    out: list[WalletRef] = []
    for i, w in enumerate(wallets):
        try:
            if isinstance(w, WalletRef):
                out.append(w)
            elif isinstance(w, Mapping):
                out.append(WalletRef.model_validate(dict(w)))
            elif isinstance(w, str):
                out.append(WalletRef(address=w))
            else:
                raise ValidationError("wallets", f"wallet #{i} has unsupported type {type(w).__name__}")
        except PydanticValidationError as e:
            raise ValidationError("wallets", f"wallet #{i} is invalid: {e.errors()[0]['msg']}") from e
    return out


class TaskScheduler:
    """
    Explicitly constructed scheduler instance (no module-level singleton).

    Lifecycle: `start()` inside a running loop, `await shutdown()` when done, or use
    `async with TaskScheduler(...) as scheduler:`.
    """

    def __init__(
        self,
        *,
        events: TaskEventSink | None = None,
        worker_factory: WorkerFactory | None = None,
        concurrency_limit: int | None = None,
        stop_grace_seconds: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.events: TaskEventSink = events if events is not None else EventRelay()
        self._worker_factory = worker_factory or _default_worker_factory(settings)
        self._limit = _check_limit(
            settings.concurrency_limit if concurrency_limit is None else concurrency_limit
        )
        self._grace = float(settings.stop_grace_seconds if stop_grace_seconds is None else stop_grace_seconds)
        self._default_cleanup_ms = int(settings.cleanup_age_seconds * 1000)

        self._registry = TaskRegistry()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False
        self._drivers: set[asyncio.Task[None]] = set()

    # ---- lifecycle ----

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("scheduler has been shut down")
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        logger.info("Task scheduler started (concurrency_limit=%d grace=%.1fs)", self._limit, self._grace)
        # Tasks submitted before start() are admitted now.
        while self._process_queue():
            pass

    async def shutdown(self, *, timeout: float | None = None) -> None:
        """
        Stop every pending/running task and wait for the workers to exit.

        Without a timeout this relies on the per-task kill timer. With a timeout, workers
        still alive afterwards are killed immediately.
        """
        if self._closed:
            return
        self._closed = True

        for task in self._registry:
            if not task.is_terminal:
                self.stop(task.id)

        drivers = set(self._drivers)
        if drivers:
            _, pending = await asyncio.wait(drivers, timeout=timeout)
            if pending:
                logger.warning("Shutdown timeout: killing %d worker(s)", len(pending))
                for task in self._registry:
                    if task.process is not None:
                        task.process.kill()
                await asyncio.wait(pending)
        logger.info("Task scheduler shut down.")

    async def __aenter__(self) -> TaskScheduler:
        self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    # ---- public API ----

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def running_count(self) -> int:
        return self._registry.count_by_status(TaskStatus.RUNNING)

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(
        self,
        script_ref: str,
        params: Mapping[str, Any] | None = None,
        wallets: Iterable[Any] | None = (),
    ) -> str:
        """
        Register a task and try to admit it. Returns the task id immediately.

        Raises ValidationError (no task created, no event emitted) on bad input.
        """
        if self._closed:
            raise RuntimeError("scheduler has been shut down")

        ref = script_ref.strip() if isinstance(script_ref, str) else ""
        if not ref:
            raise ValidationError("script_ref", "script_ref must be set")
        if params is not None and not isinstance(params, Mapping):
            raise ValidationError("params", "params must be a mapping")
        wallet_list = _coerce_wallets(wallets)
        if not wallet_list:
            raise ValidationError("wallets", "at least one wallet is required")

        task = Task(id=new_task_id(), script_ref=ref, params=dict(params or {}), wallets=wallet_list)
        self._registry.add(task)
        logger.info("Task %s created script=%s wallets=%d", task.id, ref, len(wallet_list))
        self._emit(TaskEventName.TASK_CREATED, task, task.snapshot().as_dict())

        self._process_queue()
        return task.id

    def stop(self, task_id: str) -> bool:
        """
        Pending: stopped immediately, no process is ever spawned.
        Running: `stop` is sent and a kill timer armed; the task becomes STOPPED when
        the worker exits. Returns False for unknown or already-terminal tasks.
        """
        task = self._registry.get(task_id)
        if task is None:
            logger.warning("stop: unknown task_id=%s", task_id)
            return False
        if task.is_terminal:
            return False

        if task.status == TaskStatus.PENDING:
            task.stop_requested = True
            self._finish(task, TaskStatus.STOPPED)
            return True

        if task.stop_requested:
            return True
        task.stop_requested = True

        worker = task.process
        assert worker is not None
        logger.info("Task %s stop requested; grace %.1fs", task.id, self._grace)
        try:
            worker.request_stop()
        except ProcessError as e:
            self._record_error(task, "process_error", str(e))
            worker.kill()

        if self._loop is not None:
            task.kill_timer = self._loop.call_later(self._grace, self._force_kill, task.id)
        return True

    def get_status(self, task_id: str) -> TaskSnapshot | None:
        task = self._registry.get(task_id)
        return task.snapshot() if task is not None else None

    def list_tasks(self) -> list[TaskSnapshot]:
        return [t.snapshot() for t in self._registry]

    def set_concurrency_limit(self, limit: int) -> int:
        """Apply a new ceiling and admit what it allows. Returns the applied limit."""
        self._limit = _check_limit(limit)
        logger.info("Concurrency limit set to %d", self._limit)
        # Raising the ceiling may open several slots at once.
        while self._process_queue():
            pass
        return self._limit

    def cleanup(self, older_than_ms: int | None = None) -> int:
        """Remove terminal tasks that ended at least `older_than_ms` ago. Returns the count."""
        if older_than_ms is None:
            older_than_ms = self._default_cleanup_ms
        if older_than_ms < 0:
            raise ValidationError("older_than_ms", "older_than_ms must be >= 0")
        removed = self._registry.prune_terminal(older_than_s=older_than_ms / 1000.0)
        if removed:
            logger.info("Cleaned up %d finished task(s)", removed)
        return removed

    async def wait_for(self, task_id: str, timeout: float | None = None) -> TaskSnapshot:
        task = self._registry.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not task.is_terminal:
            async with asyncio.timeout(timeout):
                await task.done.wait()
        return task.snapshot()

    # ---- admission ----

    def _process_queue(self) -> bool:
        """Admit at most one pending task. Returns True if one was admitted."""
        if self._loop is None or self._closed:
            return False
        if self.running_count >= self._limit:
            return False
        task = self._registry.first_pending()
        if task is None:
            return False
        self._admit(task)
        return True

    def _admit(self, task: Task) -> None:
        assert self._loop is not None
        try:
            worker = self._worker_factory(task.id)
        except Exception as e:
            logger.exception("Worker factory failed task_id=%s", task.id)
            task.status = TaskStatus.RUNNING
            task.started_at = time.time()
            self._record_error(task, "start_error", str(e))
            self._finish(task, TaskStatus.FAILED)
            return

        task.status = TaskStatus.RUNNING
        task.started_at = time.time()
        task.process = worker
        logger.info("Task %s -> running (%d/%d)", task.id, self.running_count, self._limit)
        self._emit(TaskEventName.TASK_STARTED, task, task.snapshot().as_dict())

        driver = self._loop.create_task(self._drive(task, worker), name=f"task-driver-{task.id}")
        self._drivers.add(driver)
        driver.add_done_callback(self._drivers.discard)

    # ---- worker relay ----

    async def _drive(self, task: Task, worker: WorkerHandle) -> None:
        execute = ExecuteMessage(script_ref=task.script_ref, params=task.params, wallets=task.wallets)
        try:
            await worker.start(execute)
        except Exception as e:
            logger.exception("Failed to start worker task_id=%s", task.id)
            self._record_error(task, "start_error", str(e))
            self._finish(task, self._resolve(TaskStatus.FAILED, task))
            return

        try:
            async with contextlib.aclosing(worker.messages()) as messages:
                async for message in messages:
                    self._handle_message(task, message)
                    if task.is_terminal:
                        break

            if not task.is_terminal:
                code = await worker.wait()
                self._on_exit(task, code)
        except asyncio.CancelledError:
            worker.kill()
            self._finish(task, TaskStatus.STOPPED)
            raise
        except Exception as e:
            logger.exception("Worker relay failed task_id=%s", task.id)
            self._record_error(task, "process_error", str(e))
            worker.kill()
            self._finish(task, self._resolve(TaskStatus.FAILED, task))
        finally:
            with contextlib.suppress(Exception):
                await worker.close(timeout=self._grace)

    def _handle_message(self, task: Task, message: OutboundMessage) -> None:
        if task.is_terminal:
            return

        match message:
            case ProgressMessage(percent=percent, current=current, total=total, message=text):
                value = max(0, min(_MAX_RUNNING_PROGRESS, int(percent)))
                task.progress = max(task.progress, value)
                self._emit(
                    TaskEventName.TASK_PROGRESS,
                    task,
                    {"progress": task.progress, "current": current, "total": total, "message": text},
                )
            case ResultMessage(data=data):
                task.results.append(data)
                self._emit(TaskEventName.TASK_RESULT, task, {"result": data})
            case ErrorMessage(kind=kind, message=text):
                self._record_error(task, kind, text)
            case LogMessage(level=level, message=text, timestamp=ts):
                logger.debug("[Task %s][%s] %s", task.id, level, text)
                self._emit(
                    TaskEventName.TASK_LOG,
                    task,
                    {"level": level, "message": text, "timestamp": ts},
                )
            case CompletedMessage():
                self._finish(task, self._resolve(TaskStatus.COMPLETED, task))
            case FailedMessage(error=error):
                if error and not task.errors:
                    self._record_error(task, "script_failed", error)
                self._finish(task, self._resolve(TaskStatus.FAILED, task))
            case _:
                assert_never(message)

    def _on_exit(self, task: Task, code: int) -> None:
        """The worker exited without a terminal message."""
        if task.is_terminal:
            return
        if task.stop_requested:
            self._finish(task, TaskStatus.STOPPED)
        elif code != 0:
            self._record_error(task, "exit_error", str(ExitError(code)))
            self._finish(task, TaskStatus.FAILED)
        else:
            # Clean exit without `completed` is treated optimistically.
            self._finish(task, TaskStatus.COMPLETED)

    @staticmethod
    def _resolve(status: TaskStatus, task: Task) -> TaskStatus:
        # Once a stop was requested every outcome ends as STOPPED.
        return TaskStatus.STOPPED if task.stop_requested else status

    def _force_kill(self, task_id: str) -> None:
        task = self._registry.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING or task.process is None:
            return
        task.kill_timer = None
        logger.warning("Task %s did not exit within %.1fs; killing worker", task_id, self._grace)
        task.process.kill()

    # ---- state transitions ----

    def _record_error(self, task: Task, kind: str, message: str) -> None:
        if task.is_terminal:
            return
        err = TaskError(kind=kind, message=message)
        task.errors.append(err)
        self._emit(TaskEventName.TASK_ERROR, task, {"error": err.as_dict()})

    def _finish(self, task: Task, status: TaskStatus) -> None:
        if task.is_terminal:
            return

        if task.kill_timer is not None:
            task.kill_timer.cancel()
            task.kill_timer = None

        task.status = status
        task.ended_at = time.time()
        if status == TaskStatus.COMPLETED:
            task.progress = 100
        task.process = None
        task.done.set()

        snap = task.snapshot()
        logger.info(
            "Task %s -> %s (results=%d errors=%d duration_ms=%d)",
            task.id,
            status.value,
            snap.result_count,
            snap.error_count,
            snap.duration_ms,
        )
        if status == TaskStatus.STOPPED:
            self._emit(TaskEventName.TASK_STOPPED, task, snap.as_dict())
        else:
            self._emit(TaskEventName.TASK_FINISHED, task, snap.as_dict(include_details=True))

        self._process_queue()

    def _emit(self, name: TaskEventName, task: Task, payload: dict[str, Any]) -> None:
        try:
            self.events.emit(name.value, task.id, payload)
        except Exception:
            logger.exception("Event sink failed on %s task_id=%s", name.value, task.id)
