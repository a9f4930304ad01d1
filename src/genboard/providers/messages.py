# src/genboard/providers/messages.py

from __future__ import annotations

import base64
import logging
from typing import Any

from ..core.models import Task
from ..core.ports import ChatMessage
from ..errors import GenboardError
from ..storage.image_store import ImageStore, mime_for
from .extractor import parse_data_url

logger = logging.getLogger(__name__)


def build_chat_messages(task: Task, images: ImageStore) -> list[ChatMessage]:
    """
    One user message: the prompt as a text part, then every uploaded image
    embedded as a base64 data URL. Unreadable uploads are skipped.
    """
    content: list[dict[str, Any]] = []
    if task.prompt:
        content.append({"type": "text", "text": task.prompt})

    for upload in task.uploads:
        if not upload.local_key:
            continue
        try:
            data = images.read(upload.local_key)
        except GenboardError:
            logger.warning("Skipping unreadable upload key=%s", upload.local_key)
            continue
        mime = upload.type or mime_for(upload.local_key)
        encoded = base64.b64encode(data).decode("ascii")
        content.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}})

    return [{"role": "user", "content": content}]


def to_gemini_contents(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Flatten chat messages into a single generateContent `contents` entry."""
    parts: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                parts.append({"text": part["text"]})
            elif part.get("type") == "image_url":
                image_url = part.get("image_url")
                url = image_url.get("url") if isinstance(image_url, dict) else image_url
                if not url:
                    continue
                parsed = parse_data_url(url) if isinstance(url, str) else None
                if parsed:
                    mime, data = parsed
                    parts.append(
                        {
                            "inline_data": {
                                "mime_type": mime or "image/png",
                                "data": base64.b64encode(data).decode("ascii"),
                            }
                        }
                    )
                elif isinstance(url, str):
                    parts.append({"file_data": {"file_uri": url}})
    return [{"role": "user", "parts": parts}]
