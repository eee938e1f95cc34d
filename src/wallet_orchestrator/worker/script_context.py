# src/wallet_orchestrator/worker/script_context.py

"""
The object a script's `main(ctx)` receives inside the worker process.

Every method turns into one outbound protocol message. `send` is thread-safe, so
synchronous scripts (run in a worker thread) may call any method except the
coroutines `sleep()` and `batch()`; they use `wait()` instead of `sleep()`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from ..batch.batch_runner import (
    BatchOptions,
    BatchProgress,
    BatchRunner,
    BatchSummary,
    ItemFailure,
    TaskFn,
    default_item_id,
)
from ..config import Settings, get_settings
from ..core.errors import CancellationError, ItemError
from ..tasks.task_models import WalletRef
from .protocol import ErrorMessage, LogMessage, ProgressMessage, ResultMessage, _Message, to_jsonable

logger = logging.getLogger(__name__)

Send = Callable[[_Message], None]


class ScriptLog:
    """`ctx.log.info("...")` style logging into the task's event stream."""

    def __init__(self, send: Send) -> None:
        self._send = send

    def _emit(self, level: str, message: Any, args: tuple[Any, ...]) -> None:
        text = str(message) % args if args else str(message)
        self._send(LogMessage(level=level, message=text))

    def debug(self, message: Any, *args: Any) -> None:
        self._emit("debug", message, args)

    def info(self, message: Any, *args: Any) -> None:
        self._emit("info", message, args)

    def warning(self, message: Any, *args: Any) -> None:
        self._emit("warning", message, args)

    def error(self, message: Any, *args: Any) -> None:
        self._emit("error", message, args)


class ScriptContext:
    def __init__(
        self,
        *,
        params: dict[str, Any],
        wallets: list[WalletRef],
        send: Send,
        settings: Settings | None = None,
    ) -> None:
        self.params = params
        self.wallets = wallets
        self.log = ScriptLog(send)

        self._send = send
        self._settings = settings or get_settings()
        # threading.Event for sync scripts; asyncio.Event to wake `sleep()`.
        self._stop = threading.Event()
        self._stop_async = asyncio.Event()
        self._batch: BatchRunner | None = None

    # ---- reporting ----

    def progress(self, current: int, total: int, message: str = "") -> None:
        percent = round(current / total * 100) if total > 0 else 0
        self._send(ProgressMessage(percent=percent, current=current, total=total, message=message))

    def complete(self) -> None:
        self._send(ProgressMessage(percent=100, current=1, total=1, message="complete"))

    def result(self, data: Any) -> None:
        self._send(ResultMessage(data=to_jsonable(data)))

    def error(self, message: str, kind: str = "script_error") -> None:
        """Non-fatal error record; the script keeps running."""
        self._send(ErrorMessage(kind=kind, message=str(message)))

    # ---- stop handling ----

    def should_stop(self) -> bool:
        return self._stop.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if interrupted by a stop request."""
        if self._stop_async.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop_async.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return False
        return True

    def wait(self, seconds: float) -> bool:
        """Blocking variant of `sleep()` for synchronous scripts."""
        return self._stop.wait(max(0.0, seconds))

    def request_stop(self) -> None:
        """Called by the runtime on the event loop thread."""
        self._stop.set()
        self._stop_async.set()
        if self._batch is not None:
            self._batch.stop()

    # ---- batch helper ----

    async def batch(
        self,
        task_fn: TaskFn,
        items: Iterable[Any] | None = None,
        *,
        concurrency: int | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        stop_on_error: bool = False,
    ) -> BatchSummary:
        """
        Run `task_fn(item, item_ctx)` over `items` (default: all wallets) with retries.

        Each success is reported as a `result` message, each exhausted item as an
        `error{kind=item_error}`; progress follows the batch. With `stop_on_error` the
        first exhausted item aborts the run and ItemError is raised.
        """
        if self._stop.is_set():
            raise CancellationError("stop requested before batch start")

        s = self._settings
        options = BatchOptions(
            concurrency=concurrency or s.batch_concurrency,
            max_retries=s.batch_max_retries if max_retries is None else max_retries,
            retry_delay=s.batch_retry_delay_seconds if retry_delay is None else retry_delay,
            stop_on_error=stop_on_error,
            on_progress=self._on_batch_progress,
            on_error=self._on_batch_error,
        )

        runner = BatchRunner(options)
        runner.add_items(list(self.wallets if items is None else items), task_fn)
        self._batch = runner
        try:
            summary = await runner.start()
        finally:
            self._batch = None

        if summary.failed_item is not None:
            failure = summary.errors.get(summary.failed_item)
            retries = failure.retries if failure is not None else 0
            raise ItemError(summary.failed_item, summary.error or "batch aborted", retries)
        return summary

    def _on_batch_progress(self, p: BatchProgress) -> None:
        item_id = default_item_id(p.item)
        self._send(
            ProgressMessage(
                percent=p.percent,
                current=p.current,
                total=p.total,
                message=f"{p.status}: {item_id}",
            )
        )
        if p.status == "success":
            self._send(ResultMessage(data={"item": item_id, "result": to_jsonable(p.result)}))

    def _on_batch_error(self, failure: ItemFailure) -> None:
        logger.debug("Batch item %s failed after %d retries", failure.item_id, failure.retries)
        self._send(
            ErrorMessage(
                kind="item_error",
                message=f"{failure.item_id}: {failure.error} (retries={failure.retries})",
            )
        )

