# tests/test_scheduler.py

from __future__ import annotations

import asyncio

import httpx
import pytest

from genboard.core.models import GlobalConfig, GlobalState, ResultStatus, SubtaskResult, Task, UploadedImage
from genboard.errors import NotFoundError, ProtocolError
from genboard.providers.adapter import ProviderAdapter
from genboard.storage.image_store import ImageStore
from genboard.storage.janitor import ImageJanitor
from genboard.storage.task_store import TaskStore
from genboard.tasks.registry import SubtaskRegistry
from genboard.tasks.scheduler import SubtaskScheduler

from .fakes import PNG_BYTES, PNG_DATA_URL, FakeProvider, RecordingPublisher, wait_until


def _slot(store: TaskStore, task_id: str, subtask_id: str) -> SubtaskResult:
    task = store.load_task(task_id)
    assert task is not None
    slot = task.find_result(subtask_id)
    assert slot is not None
    return slot


def _statuses(store: TaskStore, task_id: str) -> list[ResultStatus]:
    return [r.status for r in store.load_task(task_id).results]


@pytest.mark.asyncio
async def test_generate_creates_fresh_loading_slots(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    store.save_task("t1", Task(prompt="cat", concurrency=3, results=[SubtaskResult(id="old")]))

    task = scheduler.generate("t1")

    ids = [r.id for r in task.results]
    assert len(ids) == 3
    assert len(set(ids)) == 3
    assert "old" not in ids
    assert all(r.status is ResultStatus.LOADING for r in task.results)
    assert all(r.retry_count == 0 and r.auto_retry is True for r in task.results)
    assert _statuses(store, "t1") == [ResultStatus.LOADING] * 3
    assert store.load_task("t1").stats.total_requests == 3
    assert store.load_state().global_stats.total_requests == 3

    await wait_until(lambda: len(provider.calls) == 3)
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_identical_images_share_one_key(
    scheduler: SubtaskScheduler, store: TaskStore, images: ImageStore
) -> None:
    store.save_task("t1", Task(prompt="cat", concurrency=2))

    scheduler.generate("t1")
    await wait_until(lambda: _statuses(store, "t1") == [ResultStatus.SUCCESS] * 2)

    task = store.load_task("t1")
    keys = {r.local_key for r in task.results}
    assert len(keys) == 1
    [key] = keys
    assert images.list_keys() == [key]
    assert images.read(key) == PNG_BYTES
    assert all(r.source_url == f"/api/backend/image/{key}" for r in task.results)
    assert all(r.duration is not None and r.end_time is not None for r in task.results)
    assert task.stats.success_count == 2
    assert store.load_state().global_stats.success_count == 2

    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_rate_limited_attempt_is_retried(
    store: TaskStore,
    images: ImageStore,
    janitor: ImageJanitor,
    publisher: RecordingPublisher,
) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, json={"error": {"message": "rate limited"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": f"![x]({PNG_DATA_URL})"}}]})

    adapter = ProviderAdapter(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    scheduler = SubtaskScheduler(store, images, janitor, adapter, SubtaskRegistry(), retry_delay_seconds=0.05)
    store.save_state(GlobalState(config=GlobalConfig(api_key="k", model="m")))
    store.save_task("t1", Task(prompt="fox", concurrency=1))

    task = scheduler.generate("t1")
    subtask_id = task.results[0].id
    await wait_until(lambda: _slot(store, "t1", subtask_id).status is ResultStatus.SUCCESS)

    retrying = [
        r
        for payload in publisher.of("task")
        for r in payload["state"]["results"]
        if r["id"] == subtask_id and r.get("retryCount") == 1 and r["status"] == "loading" and r.get("error")
    ]
    assert retrying
    assert "rate limited" in retrying[0]["error"]
    assert retrying[0]["error"].endswith("(retrying in 0.05s...)")
    assert len(calls) == 2
    assert _slot(store, "t1", subtask_id).retry_count == 1
    assert not scheduler.registry.has_timer(subtask_id)

    await scheduler.shutdown()
    await adapter.aclose()


@pytest.mark.asyncio
async def test_auto_retry_disabled_ends_in_terminal_error(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.outcomes = [ProtocolError("boom", status_code=500)]
    store.save_task("t1", Task(results=[SubtaskResult(id="s1", auto_retry=False)]))

    await scheduler.start_subtask("t1", "s1")

    slot = _slot(store, "t1", "s1")
    assert slot.status is ResultStatus.ERROR
    assert slot.error == "boom"
    assert slot.end_time is not None
    assert not scheduler.registry.has_timer("s1")
    assert not scheduler.registry.has_handle("s1")


@pytest.mark.asyncio
async def test_missing_image_is_an_extraction_failure(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.outcomes = [None]
    store.save_task("t1", Task(results=[SubtaskResult(id="s1", auto_retry=False)]))

    await scheduler.start_subtask("t1", "s1")

    assert _slot(store, "t1", "s1").error == "No image data found in the provider response"


@pytest.mark.asyncio
async def test_abort_mid_flight_records_nothing(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    store.save_task("t1", Task(results=[SubtaskResult(id="s1")]))

    running = scheduler.start_subtask("t1", "s1")
    await wait_until(lambda: len(provider.calls) == 1)
    assert scheduler.registry.has_handle("s1")

    assert scheduler.registry.abort("s1") is True
    await running

    slot = _slot(store, "t1", "s1")
    assert slot.error is None
    assert slot.status is ResultStatus.LOADING
    assert slot.retry_count == 0
    assert not scheduler.registry.has_handle("s1")
    assert not scheduler.registry.has_timer("s1")


@pytest.mark.asyncio
async def test_duplicate_trigger_is_ignored(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    store.save_task("t1", Task(results=[SubtaskResult(id="s1")]))

    scheduler.start_subtask("t1", "s1")
    await wait_until(lambda: len(provider.calls) == 1)
    assert scheduler.start_subtask("t1", "s1") is None
    await asyncio.sleep(0.05)

    assert len(provider.calls) == 1

    provider.gate.set()
    await wait_until(lambda: _slot(store, "t1", "s1").status is ResultStatus.SUCCESS)
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_stop_abort_marks_stopped(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    store.save_task("t1", Task(results=[SubtaskResult(id="s1"), SubtaskResult(id="s2", status=ResultStatus.SUCCESS)]))
    running = scheduler.start_subtask("t1", "s1")
    await wait_until(lambda: len(provider.calls) == 1)

    task = scheduler.stop_subtask("t1", mode="abort")
    await running

    s1 = task.find_result("s1")
    assert s1.status is ResultStatus.ERROR
    assert s1.error == "stopped"
    assert s1.auto_retry is False
    assert s1.end_time is not None
    assert task.find_result("s2").status is ResultStatus.SUCCESS
    assert _slot(store, "t1", "s1").error == "stopped"
    assert not scheduler.registry.has_handle("s1")


@pytest.mark.asyncio
async def test_abort_right_after_generate_prevents_the_call(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    store.save_task("t1", Task(prompt="cat", concurrency=1))

    sid = scheduler.generate("t1").results[0].id
    task = scheduler.stop_subtask("t1", sid, "abort")
    await asyncio.sleep(0.05)

    assert task.find_result(sid).status is ResultStatus.ERROR
    slot = _slot(store, "t1", sid)
    assert slot.status is ResultStatus.ERROR
    assert slot.error == "stopped"
    assert provider.calls == []
    assert not scheduler.registry.has_handle(sid)


@pytest.mark.asyncio
async def test_retry_then_immediate_abort_keeps_stopped(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    store.save_task("t1", Task(results=[SubtaskResult(id="s1", status=ResultStatus.ERROR, error="boom")]))

    scheduler.retry_subtask("t1", "s1")
    scheduler.stop_subtask("t1", "s1", "abort")
    await asyncio.sleep(0.05)

    assert _slot(store, "t1", "s1").error == "stopped"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_stop_pause_leaves_in_flight_call(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    store.save_task("t1", Task(results=[SubtaskResult(id="s1")]))
    scheduler.start_subtask("t1", "s1")
    await wait_until(lambda: len(provider.calls) == 1)

    task = scheduler.stop_subtask("t1", "s1", "pause")

    s1 = task.find_result("s1")
    assert s1.status is ResultStatus.ERROR
    assert s1.error == "paused"
    assert s1.auto_retry is False
    assert s1.end_time is None
    assert scheduler.registry.has_handle("s1")

    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_pause_cancels_pending_retry(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    provider.outcomes = [ProtocolError("busy")]
    store.save_task("t1", Task(results=[SubtaskResult(id="s1")]))

    await scheduler.start_subtask("t1", "s1")
    assert scheduler.registry.has_timer("s1")
    assert _slot(store, "t1", "s1").error == "busy (retrying in 0.05s...)"

    scheduler.stop_subtask("t1", "s1")
    await asyncio.sleep(0.15)

    assert not scheduler.registry.has_timer("s1")
    assert len(provider.calls) == 1
    assert _slot(store, "t1", "s1").error == "paused"


@pytest.mark.asyncio
async def test_retry_timer_is_not_duplicated_and_revalidates(
    scheduler: SubtaskScheduler, store: TaskStore, provider: FakeProvider
) -> None:
    store.save_task("t1", Task(results=[SubtaskResult(id="s1", status=ResultStatus.ERROR, auto_retry=False)]))

    scheduler.schedule_retry("t1", "s1")
    scheduler.schedule_retry("t1", "s1")
    assert scheduler.registry.has_timer("s1")
    await asyncio.sleep(0.15)

    # Slot was no longer loading + auto-retry when the timer fired.
    assert not scheduler.registry.has_timer("s1")
    assert provider.calls == []


@pytest.mark.asyncio
async def test_retry_subtask_resets_slot_and_releases_old_image(
    scheduler: SubtaskScheduler, store: TaskStore, images: ImageStore
) -> None:
    old_key = images.save(b"old image bytes", "image/png").key
    store.save_task(
        "t1",
        Task(
            results=[
                SubtaskResult(
                    id="s1",
                    status=ResultStatus.ERROR,
                    error="bad",
                    retry_count=2,
                    auto_retry=False,
                    local_key=old_key,
                    end_time=1,
                    duration=1,
                )
            ]
        ),
    )

    task = scheduler.retry_subtask("t1", "s1")

    s1 = task.find_result("s1")
    assert s1.status is ResultStatus.LOADING
    assert s1.error is None
    assert s1.local_key is None
    assert s1.auto_retry is True
    assert s1.retry_count == 2
    assert not images.exists(old_key)

    await wait_until(lambda: _slot(store, "t1", "s1").status is ResultStatus.SUCCESS)
    assert store.load_task("t1").stats.total_requests == 1
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_unknown_ids_raise_not_found(scheduler: SubtaskScheduler, store: TaskStore) -> None:
    with pytest.raises(NotFoundError):
        scheduler.retry_subtask("missing", "s1")
    store.save_task("t1", Task(results=[SubtaskResult(id="s1")]))
    with pytest.raises(NotFoundError):
        scheduler.retry_subtask("t1", "nope")
    with pytest.raises(NotFoundError):
        scheduler.stop_subtask("t1", "nope", "abort")


@pytest.mark.asyncio
async def test_delete_task_aborts_and_collects_images(
    scheduler: SubtaskScheduler, store: TaskStore, images: ImageStore, provider: FakeProvider
) -> None:
    provider.gate = asyncio.Event()
    key = images.save(PNG_BYTES, "image/png").key
    upload_key = images.save(b"upload", "image/jpeg").key
    store.save_task(
        "t1",
        Task(
            results=[SubtaskResult(id="done", status=ResultStatus.SUCCESS, local_key=key), SubtaskResult(id="s1")],
            uploads=[UploadedImage(uid="u1", local_key=upload_key)],
        ),
    )
    state = store.load_state()
    state.tasks_order = ["t1", "t2"]
    store.save_state(state)
    running = scheduler.start_subtask("t1", "s1")
    await wait_until(lambda: len(provider.calls) == 1)

    deleted = scheduler.delete_task("t1")
    await running

    assert sorted(deleted) == sorted([key, upload_key])
    assert images.list_keys() == []
    assert store.load_task("t1") is None
    assert store.load_state().tasks_order == ["t2"]
    assert not scheduler.registry.has_handle("s1")


@pytest.mark.asyncio
async def test_uploads_are_embedded_in_messages(
    scheduler: SubtaskScheduler, store: TaskStore, images: ImageStore, provider: FakeProvider
) -> None:
    key = images.save(PNG_BYTES, "image/png").key
    store.save_task(
        "t1",
        Task(
            prompt="make it blue",
            results=[SubtaskResult(id="s1")],
            uploads=[UploadedImage(uid="u1", type="image/png", local_key=key), UploadedImage(uid="gone", local_key="missing.png")],
        ),
    )

    await scheduler.start_subtask("t1", "s1")

    [(_config, messages)] = provider.calls
    parts = messages[0]["content"]
    assert parts[0] == {"type": "text", "text": "make it blue"}
    assert parts[1] == {"type": "image_url", "image_url": {"url": PNG_DATA_URL}}
    assert len(parts) == 2
