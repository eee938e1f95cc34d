# tests/conftest.py

from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from wallet_orchestrator.core.state import AppState
from wallet_orchestrator.events.relay import EventRelay
from wallet_orchestrator.tasks.task_scheduler import TaskScheduler

from .fakes import DirectRunner, FakeWorkerFactory, RecordingObserver


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the scheduler, the worker runtime and AppState.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    scripts_dir = tmp_path / "scripts"
    scripts_dir.mkdir()
    return SimpleNamespace(
        app_name="wallet-orchestrator-test",
        log_level="DEBUG",
        console_enabled=False,
        # Paths (tmp per test run)
        data_dir=tmp_path / "data",
        scripts_dir=scripts_dir,
        # Scheduler
        concurrency_limit=3,
        stop_grace_seconds=0.2,
        cleanup_age_seconds=3600.0,
        # Worker
        worker_python=sys.executable,
        worker_stop_exit_seconds=0.5,
        # Batch defaults
        batch_concurrency=3,
        batch_max_retries=3,
        batch_retry_delay_seconds=0.0,
    )


@pytest.fixture()
def relay() -> EventRelay:
    return EventRelay()


@pytest.fixture()
def recorder(relay: EventRelay) -> RecordingObserver:
    rec = RecordingObserver()
    relay.subscribe(rec)
    return rec


@pytest.fixture()
def workers() -> FakeWorkerFactory:
    return FakeWorkerFactory()


@pytest.fixture()
def scheduler(settings: SimpleNamespace, relay: EventRelay, workers: FakeWorkerFactory) -> TaskScheduler:
    """Scheduler wired to fake workers. Tests start it with `async with scheduler:`."""
    return TaskScheduler(events=relay, worker_factory=workers, settings=settings)


@pytest.fixture()
def state(settings: SimpleNamespace, relay: EventRelay, scheduler: TaskScheduler) -> AppState:
    """
    AppState for command tests.

    The scheduler is never started here: submitted tasks stay pending, which is
    enough to exercise the console commands synchronously.
    """
    st = AppState(settings=settings, events=relay, scheduler=scheduler)
    st.runner = DirectRunner()
    return st
