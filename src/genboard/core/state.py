# src/genboard/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import Settings
from ..events import EventBus
from ..storage.image_store import ImageStore
from ..storage.janitor import ImageJanitor
from ..storage.task_store import TaskStore
from ..tasks.scheduler import SubtaskScheduler
from .ports import ImageProvider

if TYPE_CHECKING:
    from ..api.auth import TokenRegistry


@dataclass
class AppState:
    # Built once by the composition root and shared by the HTTP layer.
    settings: Settings

    bus: EventBus
    store: TaskStore
    images: ImageStore
    janitor: ImageJanitor
    provider: ImageProvider
    scheduler: SubtaskScheduler
    tokens: TokenRegistry
