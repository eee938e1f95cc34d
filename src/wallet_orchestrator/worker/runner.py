# src/wallet_orchestrator/worker/runner.py

"""
Worker child entrypoint: `python -m wallet_orchestrator.worker.runner`.

Reads one `execute` message from stdin, runs the script, reports through the
message channel (a private copy of the original stdout) and exits.
A `stop` message, stdin EOF, SIGTERM or SIGINT all request a cooperative stop;
the script then gets `worker_stop_exit_seconds` to return before the process exits 0.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
import signal
import sys
import threading
import traceback
from collections.abc import Callable
from typing import Any, TextIO

from ..config import Settings, get_settings
from ..core.errors import ProtocolError, ScriptLoadError
from ..logging_setup import setup_worker_logging
from .protocol import (
    CompletedMessage,
    ErrorMessage,
    ExecuteMessage,
    FailedMessage,
    LogMessage,
    StopMessage,
    _Message,
    decode_inbound,
    encode,
    to_jsonable,
)
from .script_context import ScriptContext
from .script_loader import load_entrypoint

logger = logging.getLogger(__name__)


class Channel:
    """Line-oriented, thread-safe writer for outbound messages."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._broken = False

    def send(self, message: _Message) -> None:
        line = encode(message) + "\n"
        with self._lock:
            if self._broken:
                return
            try:
                self._stream.write(line)
                self._stream.flush()
            except (BrokenPipeError, OSError, ValueError):
                # Parent is gone; nobody is left to report to.
                self._broken = True
                logger.debug("Message channel closed", exc_info=True)

    def close(self) -> None:
        with self._lock, contextlib.suppress(OSError, ValueError):
            self._stream.flush()
            self._stream.close()


def _open_channel() -> TextIO:
    """Keep the original stdout for messages and point fd 1 at stderr."""
    sys.stdout.flush()
    fd = os.dup(1)
    os.dup2(2, 1)
    return os.fdopen(fd, "w", encoding="utf-8", buffering=1)


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, inbox: asyncio.Queue[bytes | None]) -> None:
    def reader() -> None:
        try:
            for line in sys.stdin.buffer:
                if line.strip():
                    loop.call_soon_threadsafe(inbox.put_nowait, line)
        except (OSError, ValueError, RuntimeError):
            logger.debug("stdin reader failed", exc_info=True)
        finally:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(inbox.put_nowait, None)

    threading.Thread(target=reader, name="worker-stdin", daemon=True).start()


async def _invoke(entry: Callable[..., Any], ctx: ScriptContext) -> Any:
    if inspect.iscoroutinefunction(entry):
        result = await entry(ctx)
    else:
        result = await asyncio.to_thread(entry, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _watch_inbox(inbox: asyncio.Queue[bytes | None], stop_requested: asyncio.Event) -> None:
    while True:
        line = await inbox.get()
        if line is None:
            logger.info("stdin closed; treating as stop")
            stop_requested.set()
            return
        try:
            message = decode_inbound(line)
        except ProtocolError as e:
            logger.warning("Ignoring bad inbound message: %s", e)
            continue
        if isinstance(message, StopMessage):
            logger.info("Stop message received")
            stop_requested.set()
            return
        logger.warning("Ignoring unexpected inbound message type=%s", message.type)


def _report_outcome(script: asyncio.Task[Any], channel: Channel) -> None:
    exc = script.exception()
    if exc is None:
        channel.send(CompletedMessage(result=to_jsonable(script.result())))
        return

    text = str(exc) or exc.__class__.__name__
    channel.send(LogMessage(level="error", message=f"Script execution failed: {text}"))
    channel.send(
        ErrorMessage(
            kind="execution_error",
            message=text,
            stack="".join(traceback.format_exception(exc)),
        )
    )
    channel.send(FailedMessage(error=text))


def _fail(channel: Channel, kind: str, text: str, stack: str | None = None) -> None:
    channel.send(ErrorMessage(kind=kind, message=text, stack=stack))
    channel.send(FailedMessage(error=text))


def _hard_exit(channel: Channel, code: int) -> None:
    # A sync script thread cannot be interrupted; leave without joining it.
    channel.close()
    with contextlib.suppress(Exception):
        sys.stderr.flush()
    os._exit(code)


async def run_worker(channel: Channel, settings: Settings) -> int:
    loop = asyncio.get_running_loop()
    inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
    _start_stdin_reader(loop, inbox)

    first = await inbox.get()
    if first is None:
        logger.warning("stdin closed before an execute message arrived")
        return 1
    try:
        message = decode_inbound(first)
    except ProtocolError as e:
        _fail(channel, "protocol_error", str(e))
        return 1
    if not isinstance(message, ExecuteMessage):
        _fail(channel, "protocol_error", f"expected execute, got {message.type}")
        return 1

    try:
        entry = load_entrypoint(message.script_ref, base_dir=settings.scripts_dir)
    except ScriptLoadError as e:
        logger.error("%s", e)
        _fail(channel, "load_error", str(e))
        return 1

    ctx = ScriptContext(
        params=dict(message.params),
        wallets=list(message.wallets),
        send=channel.send,
        settings=settings,
    )

    stop_requested = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, stop_requested.set)

    logger.info("Executing %s (wallets=%d)", message.script_ref, len(message.wallets))
    script = asyncio.create_task(_invoke(entry, ctx), name="script")
    watcher = asyncio.create_task(_watch_inbox(inbox, stop_requested), name="inbox")
    stop_wait = asyncio.create_task(stop_requested.wait(), name="stop-wait")

    try:
        await asyncio.wait({script, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        if script.done():
            _report_outcome(script, channel)
            return 0

        ctx.request_stop()
        logger.info("Waiting up to %.1fs for the script to stop", settings.worker_stop_exit_seconds)
        done, _ = await asyncio.wait({script}, timeout=settings.worker_stop_exit_seconds)
        if done:
            _report_outcome(script, channel)
            return 0

        logger.warning("Script did not stop in time; exiting")
        _hard_exit(channel, 0)
        return 0
    finally:
        watcher.cancel()
        stop_wait.cancel()


def main() -> None:
    settings = get_settings()
    setup_worker_logging(getattr(logging, str(settings.log_level).upper(), logging.INFO))

    channel = Channel(_open_channel())
    try:
        code = asyncio.run(run_worker(channel, settings))
    except Exception as e:
        logger.exception("Worker crashed")
        _fail(
            channel,
            "uncaught_exception",
            str(e) or e.__class__.__name__,
            "".join(traceback.format_exception(e)),
        )
        code = 1
    _hard_exit(channel, code)


if __name__ == "__main__":
    main()
