# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from genboard.config import Settings
from genboard.storage.image_store import ImageStore
from genboard.storage.janitor import ImageJanitor
from genboard.storage.task_store import TaskStore
from genboard.tasks.registry import SubtaskRegistry
from genboard.tasks.scheduler import SubtaskScheduler

from .fakes import TEST_TOKEN, FakeProvider, RecordingPublisher


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings rooted at a per-test data dir, with short timers so retry and
    sweep behaviour can be observed without real-time waits.
    """
    return Settings.for_data_dir(
        tmp_path / "data",
        retry_delay_seconds=0.05,
        orphan_sweep_delay_seconds=0.05,
        access_tokens=[TEST_TOKEN],
    )


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def store(settings: Settings, publisher: RecordingPublisher) -> TaskStore:
    return TaskStore(
        settings.tasks_dir,
        settings.state_path,
        settings.collection_path,
        publisher=publisher,
    )


@pytest.fixture()
def images(settings: Settings) -> ImageStore:
    return ImageStore(settings.images_dir)


@pytest.fixture()
def janitor(images: ImageStore, store: TaskStore, settings: Settings) -> ImageJanitor:
    return ImageJanitor(images, store, sweep_delay_seconds=settings.orphan_sweep_delay_seconds)


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def scheduler(
    store: TaskStore,
    images: ImageStore,
    janitor: ImageJanitor,
    provider: FakeProvider,
    settings: Settings,
) -> SubtaskScheduler:
    """
    Scheduler wired with the real stores and a scripted provider.

    NOTE: async tests should `await scheduler.shutdown()` so no attempt or
    timer outlives the test's event loop.
    """
    return SubtaskScheduler(
        store,
        images,
        janitor,
        provider,
        SubtaskRegistry(),
        retry_delay_seconds=settings.retry_delay_seconds,
    )
