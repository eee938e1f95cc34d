# tests/test_script_context.py

from __future__ import annotations

import asyncio

import pytest

from wallet_orchestrator.batch.batch_runner import ItemContext
from wallet_orchestrator.core.errors import CancellationError, ItemError
from wallet_orchestrator.tasks.task_models import WalletRef
from wallet_orchestrator.worker.protocol import ErrorMessage, LogMessage, ProgressMessage, ResultMessage
from wallet_orchestrator.worker.script_context import ScriptContext


def _ctx(settings, sent: list, wallets: list[str] | None = None) -> ScriptContext:
    refs = [WalletRef(address=a) for a in (wallets or ["0x1", "0x2", "0x3"])]
    return ScriptContext(params={"k": "v"}, wallets=refs, send=sent.append, settings=settings)


@pytest.mark.asyncio
async def test_reporting_methods_emit_protocol_messages(settings) -> None:
    sent: list = []
    ctx = _ctx(settings, sent)

    ctx.log.info("checking %s", "0x1")
    ctx.progress(1, 3, "one down")
    ctx.progress(0, 0)
    ctx.result({"balance": 1})
    ctx.error("rate limited")

    assert sent[0] == LogMessage(level="info", message="checking 0x1", timestamp=sent[0].timestamp)
    assert isinstance(sent[1], ProgressMessage) and sent[1].percent == 33
    assert sent[2].percent == 0
    assert sent[3] == ResultMessage(data={"balance": 1})
    assert sent[4] == ErrorMessage(kind="script_error", message="rate limited")
    assert ctx.params == {"k": "v"}


@pytest.mark.asyncio
async def test_sleep_returns_early_on_stop(settings) -> None:
    ctx = _ctx(settings, [])

    assert await ctx.sleep(0.01) is False

    waiter = asyncio.create_task(ctx.sleep(5.0))
    await asyncio.sleep(0)
    ctx.request_stop()

    assert await asyncio.wait_for(waiter, timeout=1.0) is True
    assert ctx.should_stop() is True
    assert ctx.wait(5.0) is True


@pytest.mark.asyncio
async def test_batch_reports_results_and_item_errors(settings) -> None:
    sent: list = []
    ctx = _ctx(settings, sent)

    async def check(wallet: WalletRef, item_ctx: ItemContext) -> str:
        if wallet.address == "0x2":
            raise RuntimeError("rpc down")
        return f"{wallet.address}:ok"

    summary = await ctx.batch(check, max_retries=1, retry_delay=0.0, concurrency=1)

    assert summary.success_count == 2
    assert summary.error_count == 1

    results = [m.data for m in sent if isinstance(m, ResultMessage)]
    assert results == [{"item": "0x1", "result": "0x1:ok"}, {"item": "0x3", "result": "0x3:ok"}]

    errors = [m for m in sent if isinstance(m, ErrorMessage)]
    assert len(errors) == 1
    assert errors[0].kind == "item_error"
    assert "0x2" in errors[0].message and "retries=1" in errors[0].message

    progress = [m.percent for m in sent if isinstance(m, ProgressMessage)]
    # Batch totals include the finishing item; the task reaches 100 only on completion.
    assert progress == [25, 50, 75]


@pytest.mark.asyncio
async def test_stop_reaches_an_active_batch(settings) -> None:
    ctx = _ctx(settings, [], wallets=[f"0x{i}" for i in range(10)])
    started = asyncio.Event()

    async def slow(wallet: WalletRef, item_ctx: ItemContext) -> None:
        started.set()
        if await item_ctx.signal.sleep(5.0):
            raise CancellationError("stopped")

    run = asyncio.create_task(ctx.batch(slow, concurrency=2))
    await started.wait()
    ctx.request_stop()

    summary = await asyncio.wait_for(run, timeout=1.0)
    assert summary.success is False
    assert summary.success_count == 0

    with pytest.raises(CancellationError):
        await ctx.batch(slow)


@pytest.mark.asyncio
async def test_stop_on_error_raises_item_error(settings) -> None:
    ctx = _ctx(settings, [])

    def always_fails(wallet: WalletRef, item_ctx: ItemContext) -> None:
        raise RuntimeError(f"cannot sign for {wallet.address}")

    with pytest.raises(ItemError) as exc:
        await ctx.batch(always_fails, concurrency=1, max_retries=0, stop_on_error=True)

    assert exc.value.item_id == "0x1"
    assert exc.value.retries == 0
    assert "cannot sign" in str(exc.value)
