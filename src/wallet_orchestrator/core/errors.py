# src/wallet_orchestrator/core/errors.py

"""
Error taxonomy.

Only ValidationError is raised across the scheduler's public API. Everything else
is recorded on the task (TaskError.kind) and surfaced through events.
"""

from __future__ import annotations

import signal


class OrchestratorError(Exception):
    """Base class for all wallet_orchestrator errors."""


class ValidationError(OrchestratorError, ValueError):
    """Bad submission input; the task is never created."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ProcessError(OrchestratorError):
    """Worker spawn or IPC failure."""


class ExitError(OrchestratorError):
    """Worker process terminated abnormally."""

    def __init__(self, returncode: int | None, message: str | None = None) -> None:
        super().__init__(message or describe_exit(returncode))
        self.returncode = returncode


class ProtocolError(OrchestratorError):
    """A worker message line could not be decoded."""


class ItemError(OrchestratorError):
    """A single batch item exhausted its retries."""

    def __init__(self, item_id: str, message: str, retries: int) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.retries = retries


class CancellationError(OrchestratorError):
    """Raised when an operation observes an active stop signal."""


class ScriptLoadError(OrchestratorError):
    """A script reference could not be resolved to a callable entrypoint."""


class TaskNotFoundError(OrchestratorError, LookupError):
    pass


def describe_exit(returncode: int | None) -> str:
    if returncode is None:
        return "worker exited with unknown status"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"worker exited with code {returncode}, signal {name}"
    return f"worker exited with code {returncode}"
