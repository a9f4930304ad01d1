# src/genboard/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The scheduler and stores depend on Protocols instead of concrete implementations.
This keeps providers/broadcast transports swappable and makes testing easier.
"""

from typing import Any, Protocol

ChatMessage = dict[str, Any]
# OpenAI-style chat messages: {"role": "user", "content": [{"type": "text", ...}, ...]}.


class EventPublisher(Protocol):
    """Fan-out of live updates; delivery is best-effort."""

    def broadcast(self, event: str, data: Any) -> None: ...


class ImageProvider(Protocol):
    """External image-generation API."""

    async def request_image(
            self,
            config: Any,
            messages: list[ChatMessage],
            cancel_token: Any | None = None,
    ) -> str | None: ...

    async def fetch_image(self, ref: str) -> tuple[bytes, str] | None: ...

    async def aclose(self) -> None: ...
