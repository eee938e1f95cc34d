# src/wallet_orchestrator/worker/process.py

"""
Parent-side handle for one worker OS process.

The scheduler owns exactly one WorkerProcess per running task. All interaction is
message-driven: `start()` spawns the child and sends `execute`, `messages()` yields
decoded outbound messages until EOF, `request_stop()` / `kill()` never block.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import AsyncIterator, Mapping
from pathlib import Path

from ..core.errors import ProcessError, ProtocolError
from .protocol import (
    ErrorMessage,
    ExecuteMessage,
    OutboundMessage,
    StopMessage,
    decode_outbound,
    encode,
)

logger = logging.getLogger(__name__)

WORKER_MODULE = "wallet_orchestrator.worker.runner"

# Result payloads can be large; asyncio's default 64 KiB line limit is too small.
STREAM_LIMIT = 16 * 1024 * 1024

# How long the stderr relay may lag behind process exit.
STDERR_DRAIN_SECONDS = 1.0

# Directory that contains the `wallet_orchestrator` package (src/ in a checkout).
_PACKAGE_PARENT = Path(__file__).resolve().parents[2]


def _child_env(extra: Mapping[str, str] | None) -> dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    paths = [str(_PACKAGE_PARENT)]
    if env.get("PYTHONPATH"):
        paths.append(env["PYTHONPATH"])
    env["PYTHONPATH"] = os.pathsep.join(paths)
    env["PYTHONUNBUFFERED"] = "1"
    return env


class WorkerProcess:
    def __init__(
        self,
        task_id: str,
        *,
        python: str | None = None,
        module: str = WORKER_MODULE,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.task_id = task_id
        self._python = python or sys.executable
        self._module = module
        self._env = env
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_pump: asyncio.Task[None] | None = None

        # stop/kill can be requested before the spawn finished.
        self._stop_pending = False
        self._kill_pending = False

    def __repr__(self) -> str:
        return f"WorkerProcess(task_id={self.task_id!r}, pid={self.pid})"

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def started(self) -> bool:
        return self._proc is not None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self, execute: ExecuteMessage) -> None:
        if self._proc is not None:
            raise ProcessError(f"worker for {self.task_id} already started")
        if self._kill_pending:
            raise ProcessError(f"worker for {self.task_id} was killed before it started")

        try:
            self._proc = await asyncio.create_subprocess_exec(
                self._python,
                "-m",
                self._module,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_child_env(self._env),
                limit=STREAM_LIMIT,
                # Own process group, so kill() also reaches processes the script spawned.
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessError(f"failed to spawn worker: {e}") from e

        logger.debug("Worker spawned task_id=%s pid=%s", self.task_id, self._proc.pid)
        self._stderr_pump = asyncio.create_task(
            self._pump_stderr(), name=f"worker-stderr-{self.task_id}"
        )

        self._write(encode(execute))
        await self._drain()

        if self._kill_pending:
            self.kill()
        elif self._stop_pending:
            self.request_stop()

    def _write(self, line: str) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise ProcessError("worker stdin is not available")
        if proc.stdin.is_closing():
            raise ProcessError("worker stdin is closed")
        try:
            proc.stdin.write((line + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise ProcessError(f"failed to write to worker: {e}") from e

    async def _drain(self) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            return
        try:
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessError(f"failed to write to worker: {e}") from e

    def request_stop(self) -> None:
        """Send the `stop` message. Raises ProcessError if the channel is gone."""
        if self._proc is None:
            self._stop_pending = True
            return
        if self._proc.returncode is not None:
            return
        self._write(encode(StopMessage()))

    def kill(self) -> None:
        if self._proc is None:
            self._kill_pending = True
            return
        if self._proc.returncode is not None:
            return
        self._kill_group()
        logger.debug("Worker killed task_id=%s pid=%s", self.task_id, self._proc.pid)

    async def messages(self) -> AsyncIterator[OutboundMessage]:
        """
        Yield decoded outbound messages until the worker closes its channel.

        Undecodable lines are surfaced as `error{kind=protocol_error}` instead of
        raising, so one bad line never tears down the relay.
        """
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        while True:
            try:
                line = await proc.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                yield ErrorMessage(kind="protocol_error", message=f"oversized worker message: {e}")
                continue
            if not line:
                return
            if not line.strip():
                continue
            try:
                message = decode_outbound(line)
            except ProtocolError as e:
                logger.warning("Worker protocol error task_id=%s: %s", self.task_id, e)
                message = ErrorMessage(kind="protocol_error", message=str(e))
            yield message

    async def wait(self) -> int:
        proc = self._proc
        if proc is None:
            raise ProcessError(f"worker for {self.task_id} was never started")
        code = await proc.wait()
        await self._settle_stderr()
        return code

    async def _settle_stderr(self) -> None:
        pump = self._stderr_pump
        if pump is None or pump.done():
            return
        # Let the relay flush the last stderr lines.
        done, _ = await asyncio.wait({pump}, timeout=STDERR_DRAIN_SECONDS)
        if done:
            return
        # Processes the script left behind still hold the stderr pipe.
        logger.warning(
            "Worker task_id=%s exited but its children kept running; killing them", self.task_id
        )
        self._kill_group()
        pump.cancel()
        await asyncio.wait({pump})

    def _kill_group(self) -> None:
        proc = self._proc
        if proc is None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            elif proc.returncode is None:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            logger.debug("Nothing left to kill task_id=%s", self.task_id)

    async def close(self, *, timeout: float) -> int | None:
        """Wait up to `timeout` for a natural exit, then kill. Returns the exit code."""
        if self._proc is None:
            return None
        with contextlib.suppress(Exception):
            if self._proc.stdin is not None and not self._proc.stdin.is_closing():
                self._proc.stdin.close()
        try:
            return await asyncio.wait_for(self.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Worker did not exit within %.1fs, killing task_id=%s pid=%s",
                timeout,
                self.task_id,
                self._proc.pid,
            )
            self.kill()
            return await self.wait()

    async def _pump_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("[Script %s] %s", self.task_id, text)
