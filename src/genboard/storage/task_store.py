# src/genboard/storage/task_store.py

from __future__ import annotations

import contextlib
import logging
import re
from pathlib import Path
from typing import Any

from ..core.models import (
    CollectionItem,
    GlobalState,
    StatsMutator,
    Task,
    normalize_collection,
)
from ..core.ports import EventPublisher
from ..errors import NotFoundError, StorageError
from .atomic import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class _NullPublisher:
    def broadcast(self, event: str, data: Any) -> None:
        return


class TaskStore:
    """
    JSON document store.

    Layout:
    - one document per task (tasks/<id>.json)
    - one global state document (config, per-format config cache, task order, stats)
    - one collection document

    Every task write broadcasts a `task` event and every global state write a
    `state` event carrying the full new document.
    """

    def __init__(
        self,
        tasks_dir: str | Path,
        state_path: str | Path,
        collection_path: str | Path,
        *,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._tasks_dir = Path(tasks_dir)
        self._state_path = Path(state_path)
        self._collection_path = Path(collection_path)
        self._publisher: EventPublisher = publisher or _NullPublisher()
        self._tasks_dir.mkdir(parents=True, exist_ok=True)
        try:
            total = len(self.list_task_ids())
        except Exception:
            total = -1
        logger.info("TaskStore ready dir=%s total=%s", self._tasks_dir, total)

    # ---- low-level helpers ----

    def task_path(self, task_id: str) -> Path:
        if not task_id or not _TASK_ID_RE.match(task_id) or task_id in (".", ".."):
            raise NotFoundError(f"Invalid task id: {task_id!r}")
        return self._tasks_dir / f"{task_id}.json"

    def _publish(self, event: str, data: Any) -> None:
        try:
            self._publisher.broadcast(event, data)
        except Exception:
            logger.exception("broadcast failed event=%s", event)

    # ---- tasks ----

    def list_task_ids(self) -> list[str]:
        try:
            return sorted(p.stem for p in self._tasks_dir.iterdir() if p.is_file() and p.suffix == ".json")
        except FileNotFoundError:
            return []

    def load_task(self, task_id: str) -> Task | None:
        data = read_json_file(self.task_path(task_id), None)
        if not data:
            return None
        return Task.from_dict(data)

    def save_task(self, task_id: str, task: Task) -> Task:
        doc = task.to_dict()
        write_json_atomic(self.task_path(task_id), doc)
        self._publish("task", {"taskId": task_id, "state": doc})
        return task

    def delete_task(self, task_id: str) -> None:
        path = self.task_path(task_id)
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
        logger.debug("Task document removed id=%s", task_id)

    def iter_tasks(self):
        for task_id in self.list_task_ids():
            try:
                task = self.load_task(task_id)
            except StorageError:
                logger.exception("Failed to read task id=%s", task_id)
                continue
            if task is not None:
                yield task_id, task

    # ---- global state ----

    def load_state(self) -> GlobalState:
        return GlobalState.from_dict(read_json_file(self._state_path, None))

    def save_state(self, state: GlobalState) -> GlobalState:
        doc = state.to_dict()
        write_json_atomic(self._state_path, doc)
        self._publish("state", doc)
        return state

    def update_global_stats(self, mutate: StatsMutator) -> GlobalState:
        state = self.load_state()
        mutate(state.global_stats)
        return self.save_state(state)

    def remove_from_order(self, task_id: str) -> GlobalState:
        state = self.load_state()
        state.tasks_order = [t for t in state.tasks_order if t != task_id]
        return self.save_state(state)

    # ---- collection ----

    def load_collection(self) -> list[CollectionItem]:
        return normalize_collection(read_json_file(self._collection_path, []))

    def save_collection(self, items: list[CollectionItem]) -> list[CollectionItem]:
        write_json_atomic(self._collection_path, [item.to_dict() for item in items])
        return items
