# src/wallet_orchestrator/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time (wallet secrets are supplied per job by the caller).
- The worker child process reads the same variables, so batch defaults match on both sides.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "WALLET_ORCH"

MIN_CONCURRENCY_LIMIT = 1
MAX_CONCURRENCY_LIMIT = 10


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Real environment variables win over .env entries.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


def clamp_concurrency_limit(value: int) -> int:
    return max(MIN_CONCURRENCY_LIMIT, min(MAX_CONCURRENCY_LIMIT, int(value)))


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Connector flags ----
    console_enabled: bool

    # ---- Local paths (ignored by git) ----
    data_dir: Path
    scripts_dir: Path

    # ---- Scheduler ----
    concurrency_limit: int
    stop_grace_seconds: float
    cleanup_age_seconds: float

    # ---- Worker process ----
    worker_python: str
    worker_stop_exit_seconds: float

    # ---- Batch runner defaults ----
    batch_concurrency: int
    batch_max_retries: int
    batch_retry_delay_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "wallet-orchestrator") or "wallet-orchestrator"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/wallet-orchestrator"))
        scripts_dir = _env_path(_k("SCRIPTS_DIR"), Path("user_scripts"))

        concurrency_limit = clamp_concurrency_limit(_env_int(_k("CONCURRENCY_LIMIT"), 3))
        stop_grace_seconds = max(0.1, _env_float(_k("STOP_GRACE_SECONDS"), 5.0))
        cleanup_age_seconds = max(0.0, _env_float(_k("CLEANUP_AGE_SECONDS"), 3600.0))

        worker_python = _env(_k("WORKER_PYTHON"), sys.executable) or sys.executable
        worker_stop_exit_seconds = max(0.0, _env_float(_k("WORKER_STOP_EXIT_SECONDS"), 3.0))

        batch_concurrency = max(1, _env_int(_k("BATCH_CONCURRENCY"), 3))
        batch_max_retries = max(0, _env_int(_k("BATCH_MAX_RETRIES"), 3))
        batch_retry_delay_seconds = max(0.0, _env_float(_k("BATCH_RETRY_DELAY_SECONDS"), 1.0))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            data_dir=data_dir,
            scripts_dir=scripts_dir,
            concurrency_limit=concurrency_limit,
            stop_grace_seconds=stop_grace_seconds,
            cleanup_age_seconds=cleanup_age_seconds,
            worker_python=worker_python,
            worker_stop_exit_seconds=worker_stop_exit_seconds,
            batch_concurrency=batch_concurrency,
            batch_max_retries=batch_max_retries,
            batch_retry_delay_seconds=batch_retry_delay_seconds,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
