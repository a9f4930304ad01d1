# src/genboard/storage/atomic.py

"""
Crash-safe JSON files.

write_json_atomic():
- writes the payload to a uniquely named temp file next to the target
  (exclusive create, 3 attempts on a name collision),
- renames it over the target,
- recovers from a vanished parent dir (recreate, rename once more, then write directly),
- retries lock/permission-class rename failures with 30ms * attempt backoff
  (3 attempts) before falling back to a direct write,
- always removes the temp file afterwards.
"""

from __future__ import annotations

import contextlib
import errno
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any

from ..errors import StorageError

logger = logging.getLogger(__name__)

TEMP_CREATE_ATTEMPTS = 3
LOCK_RETRY_ATTEMPTS = 3
LOCK_RETRY_BASE_SECONDS = 0.03

_LOCK_ERRNOS = {errno.EPERM, errno.EACCES, errno.EBUSY}


def _is_lock_error(exc: OSError) -> bool:
    return exc.errno in _LOCK_ERRNOS


def read_json_file(path: str | Path, fallback: Any) -> Any:
    """Read a JSON document; missing, empty or corrupt files yield `fallback`."""
    path = Path(path)
    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return fallback
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e

    if not raw.strip():
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON file, falling back to defaults: %s", path)
        return fallback


def _create_temp(directory: Path, base_name: str, payload: str) -> Path:
    for attempt in range(TEMP_CREATE_ATTEMPTS):
        temp_path = directory / f".{base_name}.{os.getpid()}.{int(time.time() * 1000)}.{uuid.uuid4()}.tmp"
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            if attempt < TEMP_CREATE_ATTEMPTS - 1:
                continue
            raise
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        return temp_path
    raise FileExistsError(f"Could not create a unique temp file in {directory}")


def _rename_with_recovery(temp_path: Path, path: Path, payload: str) -> None:
    try:
        os.replace(temp_path, path)
        return
    except FileNotFoundError:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(temp_path, path)
            return
        except FileNotFoundError:
            logger.warning("Atomic rename failed twice for %s; writing directly", path)
        path.write_text(payload, "utf-8")
        return
    except OSError as e:
        if not _is_lock_error(e):
            raise

    for attempt in range(LOCK_RETRY_ATTEMPTS):
        time.sleep(LOCK_RETRY_BASE_SECONDS * (attempt + 1))
        try:
            os.replace(temp_path, path)
            return
        except OSError as e:
            if not _is_lock_error(e):
                raise
    logger.warning("Target %s stayed locked; writing directly", path)
    path.write_text(payload, "utf-8")


def write_json_atomic(path: str | Path, data: Any) -> None:
    path = Path(path)
    payload = json.dumps(data, ensure_ascii=False, indent=2)
    temp_path: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = _create_temp(path.parent, path.name, payload)
        _rename_with_recovery(temp_path, path, payload)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}") from e
    finally:
        if temp_path is not None:
            with contextlib.suppress(OSError):
                temp_path.unlink()
