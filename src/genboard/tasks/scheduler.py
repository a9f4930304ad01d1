# src/genboard/tasks/scheduler.py

from __future__ import annotations

"""
Sub-task scheduler.

Per sub-task state machine:
- loading -> success   (terminal)
- loading -> loading   (retry: error annotated, retryCount + 1, one timer)
- loading -> error     (terminal: retries disabled, paused or stopped)

Attempts run as spawned asyncio tasks; callers of generate/retry only get the
persisted document back and observe progress through stored state and the
`task` events the store broadcasts.

Cancellation has two axes:
- abort: the attempt's task is cancelled, nothing is recorded by the attempt;
- pause: autoRetry is switched off, an in-flight call keeps running.
"""

import asyncio
import logging

from ..core.models import (
    ResultStatus,
    SubtaskResult,
    Task,
    image_url_for_key,
    now_ms,
    removed_image_keys,
)
from ..core.ports import ImageProvider
from ..errors import ExtractionError, NotFoundError
from ..providers.messages import build_chat_messages
from ..storage.image_store import ImageStore
from ..storage.janitor import ImageJanitor
from ..storage.task_store import TaskStore
from .registry import CancelToken, SubtaskRegistry

logger = logging.getLogger(__name__)

STOP_ABORT = "abort"
STOP_PAUSE = "pause"

STOPPED_MESSAGE = "stopped"
PAUSED_MESSAGE = "paused"


def normalize_stop_mode(mode: str | None) -> str:
    return STOP_ABORT if mode == STOP_ABORT else STOP_PAUSE


def retry_annotation(message: str, delay_seconds: float) -> str:
    return f"{message} (retrying in {delay_seconds:g}s...)"


class SubtaskScheduler:
    def __init__(
        self,
        store: TaskStore,
        images: ImageStore,
        janitor: ImageJanitor,
        provider: ImageProvider,
        registry: SubtaskRegistry | None = None,
        *,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._images = images
        self._janitor = janitor
        self._provider = provider
        self._registry = registry or SubtaskRegistry()
        self._retry_delay = max(0.0, float(retry_delay_seconds))

    @property
    def registry(self) -> SubtaskRegistry:
        return self._registry

    def _require_task(self, task_id: str) -> Task:
        task = self._store.load_task(task_id)
        if task is None:
            raise NotFoundError(f"Unknown task: {task_id}")
        return task

    # ---- entry points ----

    def generate(self, task_id: str) -> Task:
        """
        Replace the task's results with `concurrency` fresh loading slots and
        start one attempt per slot. Returns the persisted document right away.
        """
        previous = self._store.load_task(task_id) or Task()
        for result in previous.results:
            self._registry.abort(result.id)
            self._registry.clear_timer(result.id)

        task = Task.from_dict(previous.to_dict())
        start_time = now_ms()
        task.results = [SubtaskResult.fresh(start_time) for _ in range(task.concurrency)]
        count = len(task.results)
        task.stats.record_requests(count)
        self._store.save_task(task_id, task)
        self._store.update_global_stats(lambda stats: stats.record_requests(count))

        self._janitor.cleanup(removed_image_keys(previous, task))
        self._janitor.schedule_sweep()

        logger.info("Generating task=%s slots=%d", task_id, count)
        for result in task.results:
            self.start_subtask(task_id, result.id, count_request=False)
        return task

    def start_subtask(self, task_id: str, subtask_id: str, *, count_request: bool = True) -> asyncio.Task | None:
        """
        Register the attempt's cancel token and spawn it. Returns None when an
        attempt for the slot is already in flight.
        """
        token = self._registry.acquire(subtask_id)
        if token is None:
            logger.debug("Sub-task already running subtask=%s", subtask_id)
            return None
        running = self._registry.spawn(
            self.run_subtask(task_id, subtask_id, token, count_request=count_request),
            name=f"subtask-{subtask_id}",
        )
        token.bind(running)
        return running

    def retry_subtask(self, task_id: str, subtask_id: str) -> Task:
        """Reset one slot to a fresh loading state and start it again."""
        task = self._require_task(task_id)
        slot = task.find_result(subtask_id)
        if slot is None:
            raise NotFoundError(f"Unknown sub-task: {subtask_id}")

        removed_key = slot.local_key
        self._registry.clear_timer(subtask_id)
        slot.status = ResultStatus.LOADING
        slot.error = None
        slot.start_time = now_ms()
        slot.end_time = None
        slot.duration = None
        slot.local_key = None
        slot.source_url = None
        slot.auto_retry = True
        slot.saved_local = False
        self._store.save_task(task_id, task)

        if removed_key:
            self._janitor.cleanup([removed_key])
        self._janitor.schedule_sweep()

        self.start_subtask(task_id, subtask_id)
        return task

    def stop_subtask(self, task_id: str, subtask_id: str | None = None, mode: str | None = STOP_PAUSE) -> Task:
        """
        abort: cancel the in-flight attempt, mark loading slots "stopped".
        pause: switch retries off, mark loading slots "paused".
        Without a sub-task id every slot of the task is targeted.
        """
        task = self._require_task(task_id)
        if subtask_id and task.find_result(subtask_id) is None:
            raise NotFoundError(f"Unknown sub-task: {subtask_id}")

        abort = normalize_stop_mode(mode) == STOP_ABORT
        targets = [r for r in task.results if not subtask_id or r.id == subtask_id]
        for result in targets:
            if abort:
                self._registry.abort(result.id)
            self._registry.clear_timer(result.id)

        stopped_at = now_ms()
        for result in targets:
            if result.status is not ResultStatus.LOADING:
                continue
            result.status = ResultStatus.ERROR
            result.error = STOPPED_MESSAGE if abort else PAUSED_MESSAGE
            result.auto_retry = False
            if abort:
                result.end_time = stopped_at

        self._store.save_task(task_id, task)
        logger.info("Stopped task=%s subtask=%s mode=%s", task_id, subtask_id or "*", "abort" if abort else "pause")
        return task

    def delete_task(self, task_id: str) -> list[str]:
        """
        Abort and forget everything running for the task, remove its document
        and its place in the task order, then collect its images.
        """
        existing = self._store.load_task(task_id)
        removed = sorted(existing.image_keys()) if existing else []
        if existing is not None:
            for result in existing.results:
                self._registry.abort(result.id)
                self._registry.clear_timer(result.id)

        self._store.delete_task(task_id)
        self._store.remove_from_order(task_id)
        deleted = self._janitor.cleanup(removed)
        deleted += self._janitor.sweep_orphans()
        logger.info("Deleted task=%s images_removed=%d", task_id, len(deleted))
        return deleted

    async def shutdown(self) -> None:
        await self._registry.shutdown()

    # ---- attempts ----

    async def run_subtask(
        self,
        task_id: str,
        subtask_id: str,
        token: CancelToken,
        *,
        count_request: bool = True,
    ) -> None:
        try:
            if token.aborted:
                return
            self._registry.clear_timer(subtask_id)
            task = self._store.load_task(task_id)
            slot = task.find_result(subtask_id) if task else None
            if task is None or slot is None:
                return

            start_time = slot.start_time if slot.start_time is not None else now_ms()
            slot.status = ResultStatus.LOADING
            slot.start_time = start_time
            slot.end_time = None
            slot.duration = None
            slot.auto_retry = slot.retries_enabled
            slot.saved_local = False
            if count_request:
                task.stats.record_requests()
            self._store.save_task(task_id, task)
            if count_request:
                self._store.update_global_stats(lambda stats: stats.record_requests())

            try:
                await self._attempt(task_id, subtask_id, task, start_time, token)
            except asyncio.CancelledError:
                if token.aborted:
                    logger.info("Sub-task aborted task=%s subtask=%s", task_id, subtask_id)
                    return
                raise
            except Exception as e:
                if token.aborted:
                    return
                self._record_failure(task_id, subtask_id, e)
        finally:
            self._registry.release(subtask_id, token)

    async def _attempt(
        self,
        task_id: str,
        subtask_id: str,
        task: Task,
        start_time: int,
        token: CancelToken,
    ) -> None:
        state = self._store.load_state()
        messages = build_chat_messages(task, self._images)

        ref = await self._provider.request_image(state.config, messages, token)
        token.raise_if_cancelled()
        if not ref:
            raise ExtractionError("No image data found in the provider response")

        downloaded = await self._provider.fetch_image(ref)
        token.raise_if_cancelled()
        if downloaded is None:
            raise ExtractionError("Image download failed")
        data, content_type = downloaded
        saved = self._images.save(data, content_type)

        end_time = now_ms()
        duration = end_time - start_time

        fresh = self._store.load_task(task_id)
        slot = fresh.find_result(subtask_id) if fresh else None
        if fresh is None or slot is None:
            return
        slot.status = ResultStatus.SUCCESS
        slot.error = None
        slot.local_key = saved.key
        slot.source_url = image_url_for_key(saved.key)
        slot.saved_local = False
        slot.auto_retry = False
        slot.end_time = end_time
        slot.duration = duration
        fresh.stats.record_success(duration)
        self._store.save_task(task_id, fresh)
        self._store.update_global_stats(lambda stats: stats.record_success(duration))
        logger.info("Sub-task succeeded task=%s subtask=%s key=%s ms=%s", task_id, subtask_id, saved.key, duration)

    def _record_failure(self, task_id: str, subtask_id: str, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__ or "Unknown error"
        fresh = self._store.load_task(task_id)
        slot = fresh.find_result(subtask_id) if fresh else None
        if fresh is None or slot is None:
            return

        if slot.retries_enabled:
            slot.status = ResultStatus.LOADING
            slot.error = retry_annotation(message, self._retry_delay)
            slot.retry_count += 1
            slot.auto_retry = True
            self._store.save_task(task_id, fresh)
            logger.warning(
                "Sub-task failed, retrying task=%s subtask=%s attempt=%d: %s",
                task_id,
                subtask_id,
                slot.retry_count,
                message,
            )
            self.schedule_retry(task_id, subtask_id)
        else:
            slot.status = ResultStatus.ERROR
            slot.error = message
            slot.end_time = now_ms()
            slot.auto_retry = False
            self._store.save_task(task_id, fresh)
            logger.warning("Sub-task failed task=%s subtask=%s: %s", task_id, subtask_id, message)

    # ---- retry timers ----

    def schedule_retry(self, task_id: str, subtask_id: str) -> None:
        if self._registry.has_timer(subtask_id):
            return
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self._retry_delay, self._fire_retry, task_id, subtask_id)
        self._registry.set_timer(subtask_id, handle)

    def _fire_retry(self, task_id: str, subtask_id: str) -> None:
        self._registry.pop_timer(subtask_id)
        try:
            task = self._store.load_task(task_id)
        except Exception:
            logger.exception("Retry check failed task=%s subtask=%s", task_id, subtask_id)
            return
        slot = task.find_result(subtask_id) if task else None
        if slot is None:
            return
        # An explicit stop may have happened while the timer was pending.
        if not slot.retries_enabled or slot.status is not ResultStatus.LOADING:
            return
        self.start_subtask(task_id, subtask_id)
