# src/wallet_orchestrator/tasks/task_api.py

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from ..core.errors import ValidationError
from ..core.state import AppState
from .task_models import TaskSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _call(state: AppState, fn: Callable[..., T], *args: Any) -> T:
    """Run a scheduler method on the scheduler's loop (thread-safe)."""
    if state.runner is None:
        raise RuntimeError("scheduler is not running")
    return state.runner.call(fn, *args)


def resolve_script_ref(script: str, scripts_dir: Path) -> str:
    """
    Map a short script name to a file in `scripts_dir`.

    "airdrop" -> <scripts_dir>/airdrop.py if it exists; paths and `module:function`
    references are passed through unchanged.
    """
    name = script.strip()
    if not name:
        return name
    for candidate in (scripts_dir / name, scripts_dir / f"{name}.py"):
        if candidate.is_file():
            return str(candidate.resolve())
    return name


def parse_params(tokens: list[str]) -> dict[str, Any]:
    """`key=value` tokens -> params dict. Values are JSON-decoded when possible."""
    out: dict[str, Any] = {}
    for tok in tokens:
        key, sep, raw = tok.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValidationError("params", f"expected key=value, got {tok!r}")
        try:
            out[key] = json.loads(raw)
        except ValueError:
            out[key] = raw
    return out


def load_wallets(path: str | Path) -> list[dict[str, Any]]:
    """
    Read wallets from a JSON file: either a list or {"wallets": [...]}.

    Entries may be address strings or objects; validation happens on submit.
    """
    p = Path(path).expanduser()
    try:
        data = json.loads(p.read_text("utf-8"))
    except FileNotFoundError as e:
        raise ValidationError("wallets", f"wallet file not found: {p}") from e
    except (OSError, ValueError) as e:
        raise ValidationError("wallets", f"cannot read wallet file {p}: {e}") from e

    if isinstance(data, dict):
        data = data.get("wallets")
    if not isinstance(data, list):
        raise ValidationError("wallets", "wallet file must contain a list of wallets")

    out: list[dict[str, Any]] = []
    for w in data:
        if isinstance(w, str):
            out.append({"address": w})
        elif isinstance(w, dict):
            out.append(w)
        else:
            raise ValidationError("wallets", f"unsupported wallet entry: {w!r}")
    logger.debug("Loaded %d wallet(s) from %s", len(out), p)
    return out


def submit_script(
    state: AppState,
    *,
    script: str,
    wallets_path: str | Path,
    params: dict[str, Any] | None = None,
) -> str:
    script_ref = resolve_script_ref(script, Path(state.settings.scripts_dir))
    wallets = load_wallets(wallets_path)
    return _call(state, state.scheduler.submit, script_ref, params or {}, wallets)


def stop_task(state: AppState, task_id: str) -> bool:
    return _call(state, state.scheduler.stop, task_id)


def get_task(state: AppState, task_id: str) -> TaskSnapshot | None:
    return _call(state, state.scheduler.get_status, task_id)


def list_tasks(state: AppState) -> list[TaskSnapshot]:
    return _call(state, state.scheduler.list_tasks)


def get_load(state: AppState) -> tuple[int, int]:
    """Return (running tasks, concurrency limit)."""
    scheduler = state.scheduler
    return _call(state, lambda: (scheduler.running_count, scheduler.concurrency_limit))


def set_concurrency_limit(state: AppState, limit: int) -> int:
    return _call(state, state.scheduler.set_concurrency_limit, limit)


def cleanup_tasks(state: AppState, older_than_ms: int) -> int:
    return _call(state, state.scheduler.cleanup, older_than_ms)
