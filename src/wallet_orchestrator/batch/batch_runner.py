# src/wallet_orchestrator/batch/batch_runner.py

"""
Concurrent batch runner for per-wallet work.

Generic asyncio work-queue executor: no knowledge of scripts or processes.
Concurrency comes from interleaving I/O-bound coroutines on one loop; CPU-bound
task functions will not parallelize.

Guarantees of `start()`:
- every item runs at most `max_retries + 1` times
- never more than `concurrency` task-function invocations in flight
- returns only after the queue drains, or after in-flight work settles on stop
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from ..core.cancel import CancellationToken
from ..core.errors import CancellationError, ItemError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ItemContext:
    attempt: int  # 1-based
    max_retries: int
    signal: CancellationToken


# Sync or async; async results are awaited.
TaskFn = Callable[[Any, ItemContext], Any]


@dataclass(slots=True)
class WalletSubJob:
    id: str
    item: Any
    task_fn: TaskFn
    attempt: int = 0


@dataclass(slots=True, frozen=True)
class ItemResult:
    item: Any
    result: Any
    attempts: int
    timestamp: float


@dataclass(slots=True, frozen=True)
class ItemFailure:
    item_id: str
    item: Any
    error: str
    retries: int
    timestamp: float


@dataclass(slots=True, frozen=True)
class BatchProgress:
    current: int
    total: int
    item: Any
    status: str  # "success" | "error"
    result: Any = None

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.current / self.total * 100)


@dataclass(slots=True, frozen=True)
class BatchOptions:
    concurrency: int = 3
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds; attempt i waits retry_delay * (i + 1)
    stop_on_error: bool = False
    on_progress: Callable[[BatchProgress], None] | None = None
    on_error: Callable[[ItemFailure], None] | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")


@dataclass(slots=True)
class BatchSummary:
    success: bool
    total_tasks: int
    success_count: int
    error_count: int
    duration_ms: int
    results: dict[str, ItemResult] = field(default_factory=dict)
    errors: dict[str, ItemFailure] = field(default_factory=dict)
    error: str | None = None
    # Set when stop_on_error aborted the run.
    failed_item: str | None = None


@dataclass(slots=True, frozen=True)
class BatchStatus:
    running: bool
    paused: bool
    queue_length: int
    active_count: int
    success_count: int
    error_count: int
    progress: int


def default_item_id(item: Any) -> str:
    """Item identity: `id`, else `address`, else str(item)."""
    for attr in ("id", "address"):
        if isinstance(item, dict):
            value = item.get(attr)
        else:
            value = getattr(item, attr, None)
        if value not in (None, ""):
            return str(value)
    return str(item)


class BatchRunner:
    def __init__(self, options: BatchOptions | None = None) -> None:
        self._options = options or BatchOptions()
        self._queue: deque[WalletSubJob] = deque()
        self._active = 0
        self._results: dict[str, ItemResult] = {}
        self._errors: dict[str, ItemFailure] = {}
        self._running = False
        self._paused = False
        # Set while admission may proceed; cleared by pause().
        self._resume = asyncio.Event()
        self._resume.set()
        self._signal: CancellationToken | None = None

    # ---- public API ----

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def signal(self) -> CancellationToken | None:
        return self._signal

    def add_items(self, items: Any, task_fn: TaskFn) -> None:
        """
        Queue one item or an iterable of items.

        Items sharing an id share one result/error slot: the last outcome wins.
        """
        if isinstance(items, (str, bytes, Mapping, BaseModel)) or not isinstance(items, Iterable):
            items = [items]
        for item in items:
            self._queue.append(WalletSubJob(id=default_item_id(item), item=item, task_fn=task_fn))

    async def start(self, options: BatchOptions | None = None) -> BatchSummary:
        if self._running:
            raise RuntimeError("batch runner is already running")

        opts = options or self._options
        self._running = True
        self._paused = False
        self._resume.set()
        self._signal = CancellationToken()

        started = time.monotonic()
        total_tasks = len(self._queue)
        error: str | None = None
        failed_item: str | None = None

        try:
            await self._drain(opts)
        except (CancellationError, ItemError) as e:
            error = str(e)
            if isinstance(e, ItemError):
                failed_item = e.item_id
            logger.info("Batch run aborted: %s", error)
        finally:
            self._running = False
            self._paused = False
            self._signal = None

        return BatchSummary(
            success=error is None,
            total_tasks=total_tasks,
            success_count=len(self._results),
            error_count=len(self._errors),
            duration_ms=int((time.monotonic() - started) * 1000),
            results=dict(self._results),
            errors=dict(self._errors),
            error=error,
            failed_item=failed_item,
        )

    def pause(self) -> None:
        self._paused = True
        self._resume.clear()

    def resume(self) -> None:
        self._paused = False
        self._resume.set()

    def stop(self) -> None:
        if self._signal is not None:
            self._signal.request_cancel()
        self._paused = False
        # Wake a paused drain loop so it observes the signal.
        self._resume.set()

    def status(self) -> BatchStatus:
        return BatchStatus(
            running=self._running,
            paused=self._paused,
            queue_length=len(self._queue),
            active_count=self._active,
            success_count=len(self._results),
            error_count=len(self._errors),
            progress=self.progress_percent(),
        )

    def progress_percent(self) -> int:
        completed = len(self._results) + len(self._errors)
        total = len(self._queue) + self._active + completed
        if total == 0:
            return 100
        return round(completed / total * 100)

    # ---- internals ----

    async def _drain(self, opts: BatchOptions) -> None:
        in_flight: set[asyncio.Task[None]] = set()
        try:
            while self._queue or in_flight:
                await self._resume.wait()

                assert self._signal is not None
                self._signal.raise_if_cancelled("batch run stopped")

                while len(in_flight) < opts.concurrency and self._queue:
                    job = self._queue.popleft()
                    in_flight.add(asyncio.create_task(self._process(job, opts)))

                # Wait for at least one in-flight item to settle before re-admitting.
                done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                failures = [t.exception() for t in done]
                first = next((e for e in failures if e is not None), None)
                if first is not None:
                    raise first
        finally:
            if in_flight:
                # In-flight work observes the signal and exits; nothing is force-cancelled.
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _process(self, job: WalletSubJob, opts: BatchOptions) -> None:
        self._active += 1
        try:
            try:
                result = await self._execute_with_retry(job, opts)
            except Exception as e:
                failure = ItemFailure(
                    item_id=job.id,
                    item=job.item,
                    error=str(e) or e.__class__.__name__,
                    retries=max(0, job.attempt - 1),
                    timestamp=time.time(),
                )
                self._errors[job.id] = failure
                self._notify_progress(opts, job, "error", None)
                self._notify_error(opts, failure)

                if opts.stop_on_error and not isinstance(e, CancellationError):
                    self.stop()
                    raise ItemError(job.id, failure.error, failure.retries) from e
                return

            self._results[job.id] = ItemResult(
                item=job.item, result=result, attempts=job.attempt, timestamp=time.time()
            )
            self._notify_progress(opts, job, "success", result)
        finally:
            # Callbacks still see the finishing item as active.
            self._active -= 1

    async def _execute_with_retry(self, job: WalletSubJob, opts: BatchOptions) -> Any:
        signal = self._signal
        assert signal is not None

        for i in range(opts.max_retries + 1):
            signal.raise_if_cancelled("task cancelled")
            job.attempt = i + 1
            try:
                result = job.task_fn(
                    job.item,
                    ItemContext(attempt=i + 1, max_retries=opts.max_retries, signal=signal),
                )
                if inspect.isawaitable(result):
                    result = await result
                return result
            except CancellationError:
                raise
            except Exception as e:
                if i == opts.max_retries:
                    raise
                logger.debug(
                    "Item %s attempt %d/%d failed: %s",
                    job.id,
                    i + 1,
                    opts.max_retries + 1,
                    e,
                )
                # Linear backoff; returns early on stop.
                await signal.sleep(opts.retry_delay * (i + 1))

        raise RuntimeError("unreachable")

    def _notify_progress(self, opts: BatchOptions, job: WalletSubJob, status: str, result: Any) -> None:
        if opts.on_progress is None:
            return
        completed = len(self._results) + len(self._errors)
        progress = BatchProgress(
            current=completed,
            # Dynamic: grows if items are added while the run is live.
            total=len(self._queue) + self._active + completed,
            item=job.item,
            status=status,
            result=result,
        )
        try:
            opts.on_progress(progress)
        except Exception:
            logger.exception("on_progress callback failed item=%s", job.id)

    def _notify_error(self, opts: BatchOptions, failure: ItemFailure) -> None:
        if opts.on_error is None:
            return
        try:
            opts.on_error(failure)
        except Exception:
            logger.exception("on_error callback failed item=%s", failure.item_id)


async def process_batch(
    items: Iterable[Any],
    task_fn: TaskFn,
    options: BatchOptions | None = None,
) -> BatchSummary:
    """Convenience wrapper: queue `items` and run them once."""
    runner = BatchRunner(options)
    runner.add_items(list(items), task_fn)
    return await runner.start()
