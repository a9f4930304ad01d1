# src/genboard/cli/bootstrap.py

"""
Composition root.

- loads settings once (or takes them injected),
- ensures the local data directories exist,
- wires the event bus, stores, janitor, provider adapter and scheduler into AppState.
"""

from __future__ import annotations

import logging

from ..api.auth import TokenRegistry
from ..config import Settings, get_settings
from ..core.ports import ImageProvider
from ..core.state import AppState
from ..events import EventBus
from ..providers.adapter import ProviderAdapter
from ..storage.image_store import ImageStore
from ..storage.janitor import ImageJanitor
from ..storage.task_store import TaskStore
from ..tasks.registry import SubtaskRegistry
from ..tasks.scheduler import SubtaskScheduler

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_dir.mkdir(parents=True, exist_ok=True)
    settings.images_dir.mkdir(parents=True, exist_ok=True)
    settings.state_path.parent.mkdir(parents=True, exist_ok=True)
    settings.collection_path.parent.mkdir(parents=True, exist_ok=True)


def create_app_state(
    *,
    settings: Settings | None = None,
    provider: ImageProvider | None = None,
) -> AppState:
    """
    Build AppState from the provided settings.

    `provider` can be injected (tests); otherwise an httpx-backed
    ProviderAdapter is created with the configured timeouts.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    bus = EventBus()
    store = TaskStore(
        settings.tasks_dir,
        settings.state_path,
        settings.collection_path,
        publisher=bus,
    )
    images = ImageStore(settings.images_dir)
    janitor = ImageJanitor(images, store, sweep_delay_seconds=settings.orphan_sweep_delay_seconds)

    if provider is None:
        provider = ProviderAdapter(
            timeout_seconds=settings.request_timeout_seconds,
            connect_timeout_seconds=settings.connect_timeout_seconds,
            log_outbound=settings.log_outbound,
            log_responses=settings.log_responses,
        )

    scheduler = SubtaskScheduler(
        store,
        images,
        janitor,
        provider,
        SubtaskRegistry(),
        retry_delay_seconds=settings.retry_delay_seconds,
    )

    logger.debug("AppState wired data_dir=%s", settings.data_dir)
    return AppState(
        settings=settings,
        bus=bus,
        store=store,
        images=images,
        janitor=janitor,
        provider=provider,
        scheduler=scheduler,
        tokens=TokenRegistry(settings.access_tokens),
    )
