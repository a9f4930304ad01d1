# src/genboard/providers/extractor.py

"""
Locate an image inside whatever a provider returned.

A response is either a parsed JSON body or the text accumulated from an
OpenAI-style stream. Extractors are pure functions tried in order; the first
one returning a normalised image reference (http(s) URL or data URL) wins.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from ..errors import ExtractionError

MIN_BASE64_LENGTH = 256

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_WHITESPACE_RE = re.compile(r"\s+")
_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)
_IMAGE_PREFIX_RE = re.compile(r"^(?:[a-z0-9.+-]+:)?(image/[a-z0-9.+-]+;base64,)(.+)$", re.IGNORECASE | re.DOTALL)
_INLINE_IMAGE_RE = re.compile(
    r"(?:data:|[a-z0-9.+-]+:)?image/[a-z0-9.+-]+;base64,[A-Za-z0-9+/=\s]+",
    re.IGNORECASE,
)
_MARKDOWN_IMAGE_RE = re.compile(r"!\[.*?\]\((.*?)\)", re.DOTALL)
_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.*)$", re.DOTALL)


@dataclass(slots=True, frozen=True)
class JsonBody:
    data: Any


@dataclass(slots=True, frozen=True)
class StreamText:
    text: str


ProviderResponse = Union[JsonBody, StreamText]
Extractor = Callable[[ProviderResponse], Union[str, None]]


# ---- normalisation ----


def normalize_base64(value: str) -> str | None:
    compact = _WHITESPACE_RE.sub("", value)
    if len(compact) < MIN_BASE64_LENGTH:
        return None
    if not _BASE64_RE.match(compact):
        return None
    return compact


def normalize_image_url(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if _HTTP_RE.match(trimmed):
        return trimmed
    m = _IMAGE_PREFIX_RE.match(trimmed)
    if m:
        payload = normalize_base64(m.group(2))
        return f"data:{m.group(1)}{payload}" if payload else None
    payload = normalize_base64(trimmed)
    if payload:
        return f"data:image/png;base64,{payload}"
    return None


def extract_image_from_text(text: Any) -> str | None:
    """Markdown image, then an inline image/...;base64 token, then a bare base64 blob."""
    if not isinstance(text, str) or not text:
        return None
    m = _MARKDOWN_IMAGE_RE.search(text)
    if m and m.group(1):
        found = normalize_image_url(m.group(1))
        if found:
            return found
    m = _INLINE_IMAGE_RE.search(text)
    if m:
        found = normalize_image_url(m.group(0))
        if found:
            return found
    return normalize_image_url(text)


def parse_data_url(value: str) -> tuple[str, bytes] | None:
    m = _DATA_URL_RE.match(value or "")
    if not m:
        return None
    try:
        return m.group(1), base64.b64decode(m.group(2), validate=False)
    except (binascii.Error, ValueError):
        return None


# ---- extractors ----


def _body(response: ProviderResponse) -> dict[str, Any] | None:
    if isinstance(response, JsonBody) and isinstance(response.data, dict):
        return response.data
    return None


def _first_message(body: dict[str, Any]) -> dict[str, Any] | None:
    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            return message
    return None


def from_result_url(response: ProviderResponse) -> str | None:
    body = _body(response)
    if body is None:
        return None
    value = body.get("resultUrl", body.get("result_url"))
    return normalize_image_url(value) if isinstance(value, str) else None


def _from_candidate_part(part: Any) -> str | None:
    if not isinstance(part, dict):
        return None
    inline = part.get("inline_data") or part.get("inlineData")
    if isinstance(inline, dict) and inline.get("data"):
        mime = inline.get("mime_type") or inline.get("mimeType") or "image/png"
        payload = normalize_base64(str(inline["data"]))
        if payload:
            return f"data:{mime};base64,{payload}"
    file_data = part.get("file_data") or part.get("fileData")
    if isinstance(file_data, dict):
        uri = file_data.get("file_uri") or file_data.get("fileUri")
        found = normalize_image_url(uri)
        if found:
            return found
    if isinstance(part.get("text"), str):
        return extract_image_from_text(part["text"])
    return None


def from_candidates(response: ProviderResponse) -> str | None:
    body = _body(response)
    candidates = body.get("candidates") if body else None
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            found = _from_candidate_part(part)
            if found:
                return found
    return None


def from_data_array(response: ProviderResponse) -> str | None:
    body = _body(response)
    data = body.get("data") if body else None
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if isinstance(first, str):
        return normalize_image_url(first)
    if isinstance(first, dict):
        for key in ("url", "b64_json"):
            if first.get(key):
                found = normalize_image_url(first[key])
                if found:
                    return found
    return None


def from_message_content(response: ProviderResponse) -> str | None:
    body = _body(response)
    message = _first_message(body) if body else None
    if message is None:
        return None
    content = message.get("content")
    if isinstance(content, list):
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "image_url":
                image_url = part.get("image_url")
                url = image_url.get("url") if isinstance(image_url, dict) else image_url
                found = normalize_image_url(url)
                if found:
                    return found
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                found = extract_image_from_text(part["text"])
                if found:
                    return found
        return None
    return extract_image_from_text(content)


def from_reasoning(response: ProviderResponse) -> str | None:
    body = _body(response)
    message = _first_message(body) if body else None
    if message is None:
        return None
    return extract_image_from_text(message.get("reasoning_content"))


def from_stream_text(response: ProviderResponse) -> str | None:
    if isinstance(response, StreamText):
        return extract_image_from_text(response.text)
    return None


EXTRACTORS: tuple[Extractor, ...] = (
    from_result_url,
    from_candidates,
    from_data_array,
    from_message_content,
    from_reasoning,
    from_stream_text,
)


def extract_image(response: ProviderResponse) -> str | None:
    for extractor in EXTRACTORS:
        found = extractor(response)
        if found:
            return found
    return None


def require_image(response: ProviderResponse) -> str:
    found = extract_image(response)
    if not found:
        raise ExtractionError("No image data found in the provider response")
    return found
