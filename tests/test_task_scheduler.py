# tests/test_task_scheduler.py

from __future__ import annotations

import asyncio

import pytest

from wallet_orchestrator.core.errors import TaskNotFoundError, ValidationError
from wallet_orchestrator.tasks.task_models import TaskStatus
from wallet_orchestrator.tasks.task_scheduler import TaskScheduler
from wallet_orchestrator.worker.protocol import (
    CompletedMessage,
    ErrorMessage,
    FailedMessage,
    LogMessage,
    ProgressMessage,
    ResultMessage,
)

from .fakes import spin

WALLETS = [{"address": "0xaaa"}, {"address": "0xbbb", "id": "w2"}]


def _status(scheduler: TaskScheduler, task_id: str) -> TaskStatus:
    snap = scheduler.get_status(task_id)
    assert snap is not None
    return snap.status


@pytest.mark.asyncio
async def test_submit_rejects_empty_wallets_without_side_effects(scheduler, recorder) -> None:
    async with scheduler:
        with pytest.raises(ValidationError) as exc:
            scheduler.submit("script.py", {}, [])

    assert exc.value.field == "wallets"
    assert scheduler.list_tasks() == []
    assert recorder.events == []


@pytest.mark.asyncio
async def test_submit_rejects_blank_script_ref_and_bad_wallets(scheduler, recorder) -> None:
    async with scheduler:
        with pytest.raises(ValidationError) as exc:
            scheduler.submit("   ", {}, WALLETS)
        assert exc.value.field == "script_ref"

        with pytest.raises(ValidationError) as exc:
            scheduler.submit("script.py", {}, [{"address": ""}])
        assert exc.value.field == "wallets"

        with pytest.raises(ValidationError) as exc:
            scheduler.submit("script.py", {}, [{"label": "no address"}])
        assert exc.value.field == "wallets"

    assert scheduler.list_tasks() == []
    assert recorder.events == []


@pytest.mark.asyncio
async def test_submit_returns_unique_ids_under_rapid_submission(scheduler) -> None:
    async with scheduler:
        ids = [scheduler.submit("script.py", {}, WALLETS) for _ in range(50)]
    assert len(set(ids)) == 50
    assert all(i.startswith("task_") for i in ids)


@pytest.mark.asyncio
async def test_execute_message_carries_params_and_wallets(scheduler, workers) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {"amount": 1.5}, WALLETS)
        await spin()

        execute = workers[task_id].execute
        assert execute is not None
        assert execute.script_ref == "script.py"
        assert execute.params == {"amount": 1.5}
        assert [w.address for w in execute.wallets] == ["0xaaa", "0xbbb"]
        assert execute.wallets[1].id == "w2"


@pytest.mark.asyncio
async def test_concurrency_ceiling_is_never_exceeded(settings, relay, workers) -> None:
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, concurrency_limit=2)
    seen_running: list[int] = []
    relay.subscribe(lambda e: seen_running.append(scheduler.running_count), events=["taskStarted"])

    async with scheduler:
        ids = [scheduler.submit("script.py", {}, WALLETS) for _ in range(5)]
        await spin()

        assert scheduler.running_count == 2
        assert [_status(scheduler, i) for i in ids] == [
            TaskStatus.RUNNING,
            TaskStatus.RUNNING,
            TaskStatus.PENDING,
            TaskStatus.PENDING,
            TaskStatus.PENDING,
        ]

        for task_id in ids:
            # FIFO: each task is running by the time the previous ones finished.
            await spin()
            assert _status(scheduler, task_id) == TaskStatus.RUNNING
            workers[task_id].send(CompletedMessage())
            await scheduler.wait_for(task_id, timeout=1.0)
            assert scheduler.running_count <= 2

    assert max(seen_running) <= 2
    assert len(seen_running) == 5
    assert all(_status(scheduler, i) == TaskStatus.COMPLETED for i in ids)


@pytest.mark.asyncio
async def test_stop_pending_task_never_spawns_a_process(settings, relay, recorder, workers) -> None:
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, concurrency_limit=1)
    async with scheduler:
        a = scheduler.submit("script.py", {}, WALLETS)
        b = scheduler.submit("script.py", {}, WALLETS)

        assert scheduler.stop(b) is True
        assert _status(scheduler, b) == TaskStatus.STOPPED
        assert b not in workers.workers
        assert recorder.names(b) == ["taskCreated", "taskStopped"]

        workers[a].send(CompletedMessage())
        await scheduler.wait_for(a, timeout=1.0)
        await spin()

    assert b not in workers.workers
    assert scheduler.get_status(b).started_at is None


@pytest.mark.asyncio
async def test_raising_limit_admits_several_pending_tasks(settings, relay, workers) -> None:
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, concurrency_limit=1)
    async with scheduler:
        ids = [scheduler.submit("script.py", {}, WALLETS) for _ in range(3)]
        assert scheduler.running_count == 1

        assert scheduler.set_concurrency_limit(3) == 3

        assert scheduler.concurrency_limit == 3
        assert scheduler.running_count == 3
        assert all(_status(scheduler, i) == TaskStatus.RUNNING for i in ids)


@pytest.mark.asyncio
async def test_set_concurrency_limit_rejects_out_of_range(scheduler) -> None:
    async with scheduler:
        for bad in (0, 11, -1):
            with pytest.raises(ValidationError) as exc:
                scheduler.set_concurrency_limit(bad)
            assert exc.value.field == "limit"
    assert scheduler.concurrency_limit == 3


@pytest.mark.asyncio
async def test_cleanup_removes_only_terminal_tasks_and_is_idempotent(settings, relay, workers) -> None:
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, concurrency_limit=1)
    async with scheduler:
        done_id = scheduler.submit("script.py", {}, WALLETS)
        pending_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()

        workers[done_id].send(CompletedMessage())
        await scheduler.wait_for(done_id, timeout=1.0)

        # Not old enough yet.
        assert scheduler.cleanup(60_000) == 0

        # pending_id got admitted after done_id finished; stop it so it is terminal too.
        scheduler.stop(pending_id)
        await scheduler.wait_for(pending_id, timeout=1.0)

        assert scheduler.cleanup(0) == 2
        assert scheduler.cleanup(0) == 0

    assert scheduler.list_tasks() == []
    assert scheduler.get_status(done_id) is None


@pytest.mark.asyncio
async def test_cleanup_keeps_running_tasks(scheduler) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        assert scheduler.cleanup(0) == 0
        assert _status(scheduler, task_id) == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_graceful_stop_ends_stopped_without_kill(scheduler, workers, recorder) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()

        assert scheduler.stop(task_id) is True
        # A second request is accepted but does not send another stop.
        assert scheduler.stop(task_id) is True
        snap = await scheduler.wait_for(task_id, timeout=1.0)

    worker = workers[task_id]
    assert snap.status == TaskStatus.STOPPED
    assert worker.stop_requests == 1
    assert worker.killed is False
    assert recorder.names(task_id)[-1] == "taskStopped"
    assert "taskFinished" not in recorder.names(task_id)


@pytest.mark.asyncio
async def test_stop_kills_worker_after_grace_period(settings, relay, workers) -> None:
    workers.stop_exit_code = None  # worker ignores the stop message
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, stop_grace_seconds=0.05)
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()

        assert scheduler.stop(task_id) is True
        await asyncio.sleep(0.01)
        assert _status(scheduler, task_id) == TaskStatus.RUNNING

        snap = await scheduler.wait_for(task_id, timeout=2.0)

    assert snap.status == TaskStatus.STOPPED
    assert workers[task_id].killed is True
    # Killed after a stop request: never reported as an exit error.
    assert all(e.kind != "exit_error" for e in snap.errors)


@pytest.mark.asyncio
async def test_terminal_message_after_stop_request_maps_to_stopped(scheduler, workers) -> None:
    workers.stop_exit_code = None
    async with scheduler:
        a = scheduler.submit("script.py", {}, WALLETS)
        b = scheduler.submit("script.py", {}, WALLETS)
        await spin()

        scheduler.stop(a)
        scheduler.stop(b)
        workers[a].send(CompletedMessage())
        workers[b].send(FailedMessage(error="boom"))

        snap_a = await scheduler.wait_for(a, timeout=1.0)
        snap_b = await scheduler.wait_for(b, timeout=1.0)

    assert snap_a.status == TaskStatus.STOPPED
    assert snap_b.status == TaskStatus.STOPPED
    assert snap_a.progress < 100


@pytest.mark.asyncio
async def test_stop_unknown_or_terminal_task_returns_false(scheduler, workers) -> None:
    async with scheduler:
        assert scheduler.stop("task_404_0") is False

        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        workers[task_id].send(CompletedMessage())
        await scheduler.wait_for(task_id, timeout=1.0)

        assert scheduler.stop(task_id) is False
    assert workers[task_id].stop_requests == 0


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_100_only_on_completion(scheduler, workers, recorder) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        worker = workers[task_id]

        worker.send(ProgressMessage(percent=50, current=1, total=2))
        await spin()
        assert scheduler.get_status(task_id).progress == 50

        worker.send(ProgressMessage(percent=30, current=1, total=2))
        await spin()
        assert scheduler.get_status(task_id).progress == 50

        worker.send(ProgressMessage(percent=100, current=2, total=2))
        await spin()
        assert scheduler.get_status(task_id).progress == 99
        assert _status(scheduler, task_id) == TaskStatus.RUNNING

        worker.send(CompletedMessage())
        snap = await scheduler.wait_for(task_id, timeout=1.0)

    assert snap.progress == 100
    reported = [p["progress"] for p in recorder.payloads("taskProgress", task_id)]
    assert reported == [50, 50, 99]


@pytest.mark.asyncio
async def test_non_fatal_errors_do_not_end_the_task(scheduler, workers, recorder) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        worker = workers[task_id]

        worker.send(ErrorMessage(kind="script_error", message="rpc timeout"))
        worker.send(ResultMessage(data={"wallet": "0xaaa", "balance": "1.0"}))
        worker.send(LogMessage(level="info", message="hello"))
        await spin()
        assert _status(scheduler, task_id) == TaskStatus.RUNNING

        worker.send(CompletedMessage(result={"ok": True}))
        snap = await scheduler.wait_for(task_id, timeout=1.0)

    assert snap.status == TaskStatus.COMPLETED
    assert [e.kind for e in snap.errors] == ["script_error"]
    assert snap.results == ({"wallet": "0xaaa", "balance": "1.0"},)
    assert recorder.names(task_id) == [
        "taskCreated",
        "taskStarted",
        "taskError",
        "taskResult",
        "taskLog",
        "taskFinished",
    ]
    finished = recorder.payloads("taskFinished", task_id)[0]
    assert finished["status"] == "completed"
    assert finished["results"] == [{"wallet": "0xaaa", "balance": "1.0"}]
    assert finished["errors"][0]["message"] == "rpc timeout"


@pytest.mark.asyncio
async def test_failed_message_marks_task_failed(scheduler, workers) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        workers[task_id].send(FailedMessage(error="script blew up"))
        snap = await scheduler.wait_for(task_id, timeout=1.0)

    assert snap.status == TaskStatus.FAILED
    assert snap.errors[-1].message == "script blew up"
    assert scheduler.get_status(task_id).progress < 100


@pytest.mark.asyncio
async def test_exit_without_terminal_message_infers_outcome(scheduler, workers) -> None:
    async with scheduler:
        ok = scheduler.submit("script.py", {}, WALLETS)
        bad = scheduler.submit("script.py", {}, WALLETS)
        await spin()

        workers[ok].exit(0)
        workers[bad].exit(3)
        snap_ok = await scheduler.wait_for(ok, timeout=1.0)
        snap_bad = await scheduler.wait_for(bad, timeout=1.0)

    assert snap_ok.status == TaskStatus.COMPLETED
    assert snap_ok.progress == 100
    assert snap_bad.status == TaskStatus.FAILED
    assert snap_bad.errors[-1].kind == "exit_error"
    assert "code 3" in snap_bad.errors[-1].message


@pytest.mark.asyncio
async def test_spawn_failure_fails_task_and_admits_next(settings, relay, workers) -> None:
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, concurrency_limit=1)
    async with scheduler:
        workers.fail_start = True
        first = scheduler.submit("script.py", {}, WALLETS)
        workers.fail_start = False
        second = scheduler.submit("script.py", {}, WALLETS)

        snap = await scheduler.wait_for(first, timeout=1.0)
        await spin()

        assert snap.status == TaskStatus.FAILED
        assert snap.errors[0].kind == "start_error"
        assert _status(scheduler, second) == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_terminal_task_clears_process_handle(scheduler, workers) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        task = scheduler._registry.get(task_id)
        assert task is not None and task.process is workers[task_id]

        workers[task_id].send(CompletedMessage())
        await scheduler.wait_for(task_id, timeout=1.0)

        assert task.process is None
        assert task.kill_timer is None
    assert workers[task_id].closed is True


@pytest.mark.asyncio
async def test_wait_for_unknown_task_raises(scheduler) -> None:
    async with scheduler:
        with pytest.raises(TaskNotFoundError):
            await scheduler.wait_for("task_1_0")


@pytest.mark.asyncio
async def test_wait_for_times_out_on_running_task(scheduler) -> None:
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        with pytest.raises(TimeoutError):
            await scheduler.wait_for(task_id, timeout=0.01)


@pytest.mark.asyncio
async def test_shutdown_stops_pending_and_running_tasks(settings, relay, workers) -> None:
    scheduler = TaskScheduler(events=relay, worker_factory=workers, settings=settings, concurrency_limit=1)
    scheduler.start()
    running = scheduler.submit("script.py", {}, WALLETS)
    pending = scheduler.submit("script.py", {}, WALLETS)
    await spin()

    await scheduler.shutdown(timeout=1.0)

    assert _status(scheduler, running) == TaskStatus.STOPPED
    assert _status(scheduler, pending) == TaskStatus.STOPPED
    assert pending not in workers.workers
    with pytest.raises(RuntimeError):
        scheduler.submit("script.py", {}, WALLETS)


@pytest.mark.asyncio
async def test_failing_observer_does_not_break_scheduling(scheduler, relay, recorder) -> None:
    def broken(_event) -> None:
        raise RuntimeError("observer bug")

    relay.subscribe(broken)
    async with scheduler:
        task_id = scheduler.submit("script.py", {}, WALLETS)
        await spin()
        assert _status(scheduler, task_id) == TaskStatus.RUNNING
    assert recorder.names(task_id)[:2] == ["taskCreated", "taskStarted"]
