# tests/test_task_store.py

from __future__ import annotations

import errno
import json
import os
from pathlib import Path

import pytest

from genboard.config import Settings
from genboard.core.models import CollectionItem, GlobalConfig, GlobalState, SubtaskResult, Task
from genboard.errors import NotFoundError, StorageError
from genboard.storage import atomic
from genboard.storage.atomic import read_json_file, write_json_atomic
from genboard.storage.task_store import TaskStore

from .fakes import RecordingPublisher


def test_load_missing_task_returns_none(store: TaskStore) -> None:
    assert store.load_task("nope") is None


def test_load_merges_over_defaults(store: TaskStore) -> None:
    store.task_path("t1").write_text(json.dumps({"prompt": "cat", "concurrency": 0}), "utf-8")
    task = store.load_task("t1")

    assert task is not None
    assert task.prompt == "cat"
    assert task.concurrency == 1
    assert task.results == []
    assert task.uploads == []
    assert task.enable_sound is True
    assert task.stats.total_requests == 0


def test_non_numeric_concurrency_falls_back_to_default(store: TaskStore) -> None:
    store.task_path("t1").write_text(json.dumps({"concurrency": "lots"}), "utf-8")
    assert store.load_task("t1").concurrency == 2


def test_non_finite_numbers_fall_back_to_defaults(store: TaskStore) -> None:
    store.task_path("t1").write_text(
        '{"version": 1e999, "concurrency": -1e999, "stats": {"totalRequests": 1e999, "fastestTime": -1e999},'
        ' "results": [{"id": "s1", "retryCount": 1e999, "startTime": 1e999}]}',
        "utf-8",
    )
    task = store.load_task("t1")

    assert task.version == 1
    assert task.concurrency == 2
    assert task.stats.total_requests == 0
    assert task.stats.fastest_time == 0
    assert task.results[0].retry_count == 0
    assert task.results[0].start_time is None


def test_invalid_json_is_treated_as_missing(store: TaskStore) -> None:
    store.task_path("t1").write_text("{not json", "utf-8")
    assert store.load_task("t1") is None


def test_unknown_fields_survive_a_round_trip(store: TaskStore) -> None:
    raw = {
        "prompt": "p",
        "customFlag": {"a": 1},
        "results": [{"id": "r1", "status": "success", "clientNote": "kept"}],
    }
    store.task_path("t1").write_text(json.dumps(raw), "utf-8")

    task = store.load_task("t1")
    store.save_task("t1", task)
    stored = json.loads(store.task_path("t1").read_text("utf-8"))

    assert stored["customFlag"] == {"a": 1}
    assert stored["results"][0]["clientNote"] == "kept"
    assert stored["results"][0]["status"] == "success"


def test_save_task_broadcasts_full_document(store: TaskStore, publisher: RecordingPublisher) -> None:
    task = Task(prompt="dog", results=[SubtaskResult(id="r1")])
    store.save_task("t1", task)

    [payload] = publisher.of("task")
    assert payload["taskId"] == "t1"
    assert payload["state"]["prompt"] == "dog"
    assert payload["state"]["results"][0]["id"] == "r1"


def test_save_state_broadcasts_and_round_trips(store: TaskStore, publisher: RecordingPublisher) -> None:
    state = GlobalState(config=GlobalConfig(api_key="k", model="m", api_format="gemini"))
    state.tasks_order = ["a", "b"]
    store.save_state(state)

    [payload] = publisher.of("state")
    assert payload["config"]["apiFormat"] == "gemini"
    loaded = store.load_state()
    assert loaded.tasks_order == ["a", "b"]
    assert loaded.config.api_key == "k"


def test_missing_state_gets_defaults_and_format_cache(store: TaskStore) -> None:
    state = store.load_state()

    assert state.config.api_format == "openai"
    assert state.config.vertex_location == "us-central1"
    assert "openai" in state.config_by_format


def test_unknown_api_format_coerces_to_openai() -> None:
    assert GlobalConfig.from_dict({"apiFormat": "bogus"}).api_format == "openai"


def test_patch_state_semantics(store: TaskStore) -> None:
    base = store.load_state()
    nxt = base.apply_patch(
        {
            "config": {"apiFormat": "vertex", "apiKey": "vk", "model": "gemini-2"},
            "configByFormat": {"openai": {"apiKey": "ok"}},
            "tasksOrder": ["x", "y", "x", 3],
            "globalStats": {"successCount": 4},
        }
    )

    assert nxt.config.api_format == "vertex"
    assert nxt.config_by_format["vertex"]["apiKey"] == "vk"
    assert nxt.config_by_format["openai"] == {"apiKey": "ok"}
    assert nxt.tasks_order == ["x", "y"]
    assert nxt.global_stats.success_count == 4
    assert nxt.global_stats.total_requests == 0


def test_update_global_stats(store: TaskStore) -> None:
    store.update_global_stats(lambda s: s.record_requests(3))
    store.update_global_stats(lambda s: s.record_success(500))
    store.update_global_stats(lambda s: s.record_success(200))

    stats = store.load_state().global_stats
    assert stats.total_requests == 3
    assert stats.success_count == 2
    assert stats.fastest_time == 200
    assert stats.slowest_time == 500
    assert stats.total_time == 700


def test_collection_is_normalised(store: TaskStore, settings: Settings) -> None:
    store.save_collection(
        [
            CollectionItem(id="a", image="/api/backend/image/k.png?token=secret"),
        ]
    )
    raw = json.loads(settings.collection_path.read_text("utf-8"))
    raw.append({"id": "a", "prompt": "dup"})
    raw.append({"prompt": "no id"})
    settings.collection_path.write_text(json.dumps(raw), "utf-8")

    items = store.load_collection()

    assert [i.id for i in items] == ["a"]
    assert items[0].image == "/api/backend/image/k.png"
    assert items[0].image_key() == "k.png"


def test_delete_and_order(store: TaskStore) -> None:
    store.save_task("t1", Task())
    state = store.load_state()
    state.tasks_order = ["t1", "t2"]
    store.save_state(state)

    store.delete_task("t1")
    store.delete_task("t1")
    store.remove_from_order("t1")

    assert store.list_task_ids() == []
    assert store.load_state().tasks_order == ["t2"]


def test_invalid_task_id_is_rejected(store: TaskStore) -> None:
    with pytest.raises(NotFoundError):
        store.task_path("../escape")


# ---- atomic writes ----


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "doc.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"a": 2})

    assert read_json_file(target, None) == {"a": 2}
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_atomic_write_retries_locked_rename_then_writes_directly(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []

    def locked_replace(src, dst) -> None:
        calls.append(str(dst))
        raise PermissionError(errno.EACCES, "locked")

    monkeypatch.setattr(atomic.os, "replace", locked_replace)
    monkeypatch.setattr(atomic.time, "sleep", lambda _s: None)

    target = tmp_path / "doc.json"
    write_json_atomic(target, {"ok": True})

    assert len(calls) == 1 + atomic.LOCK_RETRY_ATTEMPTS
    assert json.loads(target.read_text("utf-8")) == {"ok": True}
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_atomic_write_recovers_a_transient_lock(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    real_replace = os.replace
    failures = [PermissionError(errno.EBUSY, "busy")]

    def flaky_replace(src, dst) -> None:
        if failures:
            raise failures.pop()
        real_replace(src, dst)

    monkeypatch.setattr(atomic.os, "replace", flaky_replace)
    monkeypatch.setattr(atomic.time, "sleep", lambda _s: None)

    target = tmp_path / "doc.json"
    write_json_atomic(target, [1, 2, 3])

    assert read_json_file(target, None) == [1, 2, 3]


def test_atomic_write_surfaces_other_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_replace(src, dst) -> None:
        raise OSError(errno.EIO, "disk on fire")

    monkeypatch.setattr(atomic.os, "replace", broken_replace)

    with pytest.raises(StorageError):
        write_json_atomic(tmp_path / "doc.json", {})
    assert list(tmp_path.iterdir()) == []


def test_atomic_write_recreates_a_vanished_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    real_replace = os.replace
    calls: list[str] = []

    def vanished_once(src, dst) -> None:
        calls.append(str(dst))
        if len(calls) == 1:
            raise FileNotFoundError(errno.ENOENT, "gone")
        real_replace(src, dst)

    monkeypatch.setattr(atomic.os, "replace", vanished_once)

    target = tmp_path / "doc.json"
    write_json_atomic(target, {"n": 1})

    assert len(calls) == 2
    assert read_json_file(target, None) == {"n": 1}
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_atomic_write_falls_back_to_direct_write_when_rename_keeps_failing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []

    def always_gone(src, dst) -> None:
        calls.append(str(dst))
        raise FileNotFoundError(errno.ENOENT, "gone")

    monkeypatch.setattr(atomic.os, "replace", always_gone)

    target = tmp_path / "doc.json"
    write_json_atomic(target, {"n": 2})

    assert len(calls) == 2
    assert read_json_file(target, None) == {"n": 2}
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_read_json_fallbacks(tmp_path: Path) -> None:
    empty = tmp_path / "empty.json"
    empty.write_text("   ", "utf-8")

    assert read_json_file(tmp_path / "missing.json", []) == []
    assert read_json_file(empty, {"d": 1}) == {"d": 1}
