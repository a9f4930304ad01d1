# src/genboard/logging_setup.py

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

LOG_MAX_CHARS = 800


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the console readable:
    - allow genboard logs
    - allow uvicorn startup/shutdown lines (uvicorn.error) at INFO
    - suppress access logs and third-party noise unless ERROR+
    - suppress Python warnings (captured as 'py.warnings') unless ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name == "genboard" or name.startswith("genboard."):
            return True

        if name == "uvicorn.error":
            return record.levelno >= logging.INFO

        if name == "py.warnings":
            return record.levelno >= logging.ERROR

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = "server-data/logs",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """
    Configure logging with:
    - Console handler: readable + filtered
    - File handler: full logs for debugging

    Call this ONCE, very early (before first logger.info).
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "genboard.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Remove any pre-existing handlers to avoid duplicates.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    logging.captureWarnings(True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _truncate(value: str) -> str:
    if len(value) <= LOG_MAX_CHARS:
        return value
    return f"{value[:LOG_MAX_CHARS]}...<{len(value)}>"


def _shorten(value: Any) -> Any:
    if isinstance(value, str):
        if value.startswith("data:image"):
            return f"{value[:60]}...<data:image>"
        return _truncate(value)
    if isinstance(value, dict):
        return {k: _shorten(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_shorten(v) for v in value]
    return value


def format_log_payload(payload: Any) -> str:
    """Render a provider payload for logs: long strings truncated, inline images elided."""
    if payload is None:
        return "None"
    if isinstance(payload, str):
        return _shorten(payload)
    try:
        return json.dumps(_shorten(payload), ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return _truncate(str(payload))
