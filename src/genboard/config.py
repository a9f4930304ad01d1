# src/genboard/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Every path lives under one data dir unless overridden explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ENV_PREFIX = "GENBOARD"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Local .env never overrides variables already set in the environment.
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


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    log_dir: Path

    # ---- HTTP server ----
    host: str
    port: int

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_dir: Path
    images_dir: Path
    state_path: Path
    collection_path: Path

    # ---- Scheduling / GC ----
    retry_delay_seconds: float
    orphan_sweep_delay_seconds: float

    # ---- Provider HTTP ----
    request_timeout_seconds: float
    connect_timeout_seconds: float

    # ---- Access ----
    access_tokens: List[str]

    # ---- Diagnostics ----
    log_outbound: bool
    log_responses: bool
    log_requests: bool

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "genboard") or "genboard"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        host = _env(_k("HOST"), "127.0.0.1")
        # PORT is honoured for PaaS-style deployments.
        port = _env_int(_k("PORT"), _env_int("PORT", 5173))

        data_dir = _env_path(_k("DATA_DIR"), Path("server-data"))
        log_dir = _env_path(_k("LOG_DIR"), data_dir / "logs")
        tasks_dir = _env_path(_k("TASKS_DIR"), data_dir / "tasks")
        images_dir = _env_path(_k("IMAGES_DIR"), data_dir / "images")
        state_path = _env_path(_k("STATE_PATH"), data_dir / "state.json")
        collection_path = _env_path(_k("COLLECTION_PATH"), data_dir / "collection.json")

        retry_delay_seconds = max(0.0, _env_float(_k("RETRY_DELAY_SECONDS"), 1.0))
        orphan_sweep_delay_seconds = max(0.0, _env_float(_k("ORPHAN_SWEEP_DELAY_SECONDS"), 1.5))

        request_timeout_seconds = _env_float(_k("REQUEST_TIMEOUT_SECONDS"), 600.0)
        connect_timeout_seconds = _env_float(_k("CONNECT_TIMEOUT_SECONDS"), 15.0)

        access_tokens = _env_list(_k("ACCESS_TOKENS"), [])

        log_outbound = _env_bool(_k("LOG_OUTBOUND"), _env_bool("BACKEND_LOG_OUTBOUND", False))
        log_responses = _env_bool(_k("LOG_RESPONSES"), _env_bool("BACKEND_LOG_RESPONSE", False))
        log_requests = _env_bool(_k("LOG_REQUESTS"), _env_bool("BACKEND_LOG_REQUESTS", False))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            log_dir=log_dir,
            host=host,
            port=port,
            data_dir=data_dir,
            tasks_dir=tasks_dir,
            images_dir=images_dir,
            state_path=state_path,
            collection_path=collection_path,
            retry_delay_seconds=retry_delay_seconds,
            orphan_sweep_delay_seconds=orphan_sweep_delay_seconds,
            request_timeout_seconds=request_timeout_seconds,
            connect_timeout_seconds=connect_timeout_seconds,
            access_tokens=access_tokens,
            log_outbound=log_outbound,
            log_responses=log_responses,
            log_requests=log_requests,
        )

    @staticmethod
    def for_data_dir(data_dir: str | Path, **overrides) -> "Settings":
        """Settings rooted at an explicit data dir (tests, embedding)."""
        base = Path(data_dir)
        values = dict(
            app_name="genboard",
            log_level="INFO",
            log_dir=base / "logs",
            host="127.0.0.1",
            port=5173,
            data_dir=base,
            tasks_dir=base / "tasks",
            images_dir=base / "images",
            state_path=base / "state.json",
            collection_path=base / "collection.json",
            retry_delay_seconds=1.0,
            orphan_sweep_delay_seconds=1.5,
            request_timeout_seconds=600.0,
            connect_timeout_seconds=15.0,
            access_tokens=[],
            log_outbound=False,
            log_responses=False,
            log_requests=False,
        )
        values.update(overrides)
        return Settings(**values)


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
