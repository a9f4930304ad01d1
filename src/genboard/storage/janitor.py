# src/genboard/storage/janitor.py

"""
Image garbage collection.

An image key is "referenced" while any task lists it in uploads/results or
any collection item points at it (directly or through a backend image URL).

- cleanup(keys): delete only the given keys that are no longer referenced
- sweep_orphans(): delete every stored file that is not referenced
- schedule_sweep(): debounced sweep; triggers inside the delay coalesce
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from ..core.models import collection_image_keys, key_basename
from ..errors import StorageError
from .image_store import ImageStore
from .task_store import TaskStore

logger = logging.getLogger(__name__)


class ImageJanitor:
    def __init__(
        self,
        images: ImageStore,
        store: TaskStore,
        *,
        sweep_delay_seconds: float = 1.5,
    ) -> None:
        self._images = images
        self._store = store
        self._sweep_delay = max(0.0, float(sweep_delay_seconds))
        self._sweep_handle: asyncio.TimerHandle | None = None

    def referenced_keys(self) -> set[str]:
        keys: set[str] = set()
        for _task_id, task in self._store.iter_tasks():
            keys |= task.image_keys()
        keys |= collection_image_keys(self._store.load_collection())
        return keys

    def _delete(self, key: str) -> bool:
        try:
            return self._images.delete(key)
        except StorageError:
            logger.warning("Failed to delete image key=%s", key, exc_info=True)
            return False

    def cleanup(self, removed_keys: Iterable[str]) -> list[str]:
        """Delete the given keys unless something still references them."""
        candidates = [k for k in (key_basename(key) for key in removed_keys) if k]
        if not candidates:
            return []
        referenced = self.referenced_keys()
        deleted = [key for key in candidates if key not in referenced and self._delete(key)]
        if deleted:
            logger.info("Removed %d unreferenced image(s)", len(deleted))
        return deleted

    def sweep_orphans(self) -> list[str]:
        """Delete every stored image that nothing references."""
        stored = self._images.list_keys()
        if not stored:
            return []
        referenced = self.referenced_keys()
        deleted = [key for key in stored if key not in referenced and self._delete(key)]
        if deleted:
            logger.info("Orphan sweep removed %d image(s)", len(deleted))
        return deleted

    @property
    def sweep_pending(self) -> bool:
        return self._sweep_handle is not None

    def schedule_sweep(self) -> None:
        if self._sweep_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._sweep_handle = loop.call_later(self._sweep_delay, self._run_scheduled_sweep)

    def _run_scheduled_sweep(self) -> None:
        self._sweep_handle = None
        try:
            self.sweep_orphans()
        except Exception:
            logger.exception("Scheduled orphan sweep failed")

    def cancel_pending(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
