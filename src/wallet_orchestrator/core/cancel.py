# src/wallet_orchestrator/core/cancel.py

from __future__ import annotations

import asyncio

from .errors import CancellationError


class CancellationToken:
    """
    Shared stop signal handed to batch task functions.

    Task functions either poll `cancelled` / call `raise_if_cancelled()`, or await
    `wait()` alongside their own I/O.
    """

    def __init__(self) -> None:
        self._cancel_requested = False
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        self._cancel_requested = True
        self._event.set()

    def raise_if_cancelled(self, message: str = "operation cancelled") -> None:
        if self._cancel_requested:
            raise CancellationError(message)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True if woken early by cancellation."""
        if self._cancel_requested:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return False
        return True
