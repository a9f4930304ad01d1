# src/genboard/providers/adapter.py

"""
Provider HTTP adapter.

Builds the request for the configured wire format, sends it with httpx and
reads either a JSON body or a `data: <json>` line stream:

- openai streams carry deltas; `content` and `reasoning_content` are
  concatenated over the whole stream into one text;
- gemini/vertex streams carry cumulative objects; the last parsable one wins.

Lines that are empty, `[DONE]` or not JSON are skipped.

Failure contract:
- non-success status -> ProtocolError with the provider's error message,
  else the raw body, else the status text;
- transport failures -> TransportError carrying the original message and a
  coarse classification, logged when outbound logging is enabled.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ..core.models import GlobalConfig
from ..core.ports import ChatMessage
from ..errors import ConfigError, ProtocolError, TransportError
from ..logging_setup import format_log_payload
from .extractor import JsonBody, ProviderResponse, StreamText, extract_image, parse_data_url
from .messages import to_gemini_contents
from .urls import ProviderRequest, build_gemini_request, build_openai_request

logger = logging.getLogger(__name__)

_SKIP = object()


def describe_transport_error(exc: BaseException) -> dict[str, Any]:
    cause = exc.__cause__ or exc.__context__
    return {
        "name": type(exc).__name__,
        "message": str(exc),
        "cause": type(cause).__name__ if cause is not None else None,
        "errno": getattr(cause, "errno", None),
    }


def _parse_data_line(line: str) -> Any:
    cleaned = line.strip()
    if cleaned[:5].lower() == "data:":
        cleaned = cleaned[5:].strip()
    if not cleaned or cleaned == "[DONE]":
        return _SKIP
    try:
        return json.loads(cleaned)
    except ValueError:
        return _SKIP


class DataLineReader:
    """Incremental splitter for newline-delimited `data: <json>` streams."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[Any]:
        self._pending += text
        out: list[Any] = []
        while True:
            idx = self._pending.find("\n")
            if idx < 0:
                break
            line, self._pending = self._pending[:idx], self._pending[idx + 1:]
            parsed = _parse_data_line(line)
            if parsed is not _SKIP:
                out.append(parsed)
        return out

    def finish(self) -> list[Any]:
        remainder, self._pending = self._pending, ""
        parsed = _parse_data_line(remainder)
        return [] if parsed is _SKIP else [parsed]


def openai_delta_text(chunk: Any) -> str:
    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    text = ""
    for key in ("content", "reasoning_content"):
        if isinstance(delta.get(key), str):
            text += delta[key]
    return text


def error_message_from_body(raw: str, fallback: str) -> str:
    if not raw:
        return fallback
    try:
        data = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
            return error["message"]
        if isinstance(data.get("message"), str) and data["message"]:
            return data["message"]
    return raw


def _check_cancelled(cancel_token: Any | None) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()


class ProviderAdapter:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: float = 600.0,
        connect_timeout_seconds: float = 15.0,
        log_outbound: bool = False,
        log_responses: bool = False,
    ) -> None:
        if client is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
                follow_redirects=True,
            )
        self._client = client
        self._log_outbound = log_outbound
        self._log_responses = log_responses

    async def aclose(self) -> None:
        await self._client.aclose()

    def _outbound(self, label: str, payload: Any) -> None:
        if self._log_outbound:
            logger.info("%s: %s", label, format_log_payload(payload))

    def _response(self, label: str, payload: Any) -> None:
        if self._log_responses:
            logger.info("%s: %s", label, format_log_payload(payload))

    # ---- public API ----

    async def request_image(
        self,
        config: GlobalConfig,
        messages: list[ChatMessage],
        cancel_token: Any | None = None,
    ) -> str | None:
        """Call the provider and return the first image reference found, or None."""
        if not config.api_key:
            raise ConfigError("API key is not configured")
        if not (config.model or "").strip():
            raise ConfigError("Model name is not configured")

        response = await self.send(config, messages, cancel_token)
        found = extract_image(response)
        if not found:
            payload = response.text if isinstance(response, StreamText) else response.data
            self._response("response-without-image", payload)
        return found

    async def send(
        self,
        config: GlobalConfig,
        messages: list[ChatMessage],
        cancel_token: Any | None = None,
    ) -> ProviderResponse:
        stream = bool(config.stream)
        if config.api_format == "openai":
            request = build_openai_request(config)
            body: dict[str, Any] = {"model": config.model, "messages": messages, "stream": stream}
        else:
            request = build_gemini_request(config)
            body = {"contents": to_gemini_contents(messages)}

        info = {"url": request.url, "model": config.model, "stream": stream, "format": config.api_format}
        self._outbound("api-request", info)
        return await self._post(request, body, info, stream=stream, deltas=config.api_format == "openai",
                                cancel_token=cancel_token)

    async def fetch_image(self, ref: str) -> tuple[bytes, str] | None:
        """Bytes + content type for a data URL or an http(s) URL; None for anything else."""
        if not ref:
            return None
        if ref.startswith("data:image"):
            parsed = parse_data_url(ref)
            if parsed is None:
                return None
            content_type, data = parsed
            return data, content_type
        if not ref.lower().startswith(("http://", "https://")):
            return None
        try:
            resp = await self._client.get(ref, headers={"Connection": "close"})
        except httpx.TransportError as e:
            self._outbound("image-download-error", {"url": ref, "error": describe_transport_error(e)})
            raise TransportError(str(e) or type(e).__name__, kind=type(e).__name__) from e
        if not resp.is_success:
            self._outbound("image-download-response", {"url": ref, "status": resp.status_code})
            raise ProtocolError(resp.reason_phrase or f"HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.content, resp.headers.get("content-type") or "application/octet-stream"

    # ---- transport ----

    async def _post(
        self,
        request: ProviderRequest,
        body: dict[str, Any],
        info: dict[str, Any],
        *,
        stream: bool,
        deltas: bool,
        cancel_token: Any | None,
    ) -> ProviderResponse:
        try:
            async with self._client.stream(
                "POST",
                request.url,
                headers=request.headers,
                content=json.dumps(body, ensure_ascii=False).encode("utf-8"),
            ) as resp:
                self._outbound("api-response", {**info, "status": resp.status_code})
                if not resp.is_success:
                    raw = (await resp.aread()).decode("utf-8", errors="replace")
                    message = error_message_from_body(raw, resp.reason_phrase or f"HTTP {resp.status_code}")
                    self._response("error", {"status": resp.status_code, "message": message})
                    raise ProtocolError(message, status_code=resp.status_code)

                if stream:
                    return await self._read_stream(resp, deltas=deltas, cancel_token=cancel_token)

                raw = await resp.aread()
                try:
                    return JsonBody(json.loads(raw))
                except ValueError as e:
                    raise ProtocolError("Provider returned an unparsable body", status_code=resp.status_code) from e
        except httpx.TransportError as e:
            self._outbound("api-request-error", {**info, "error": describe_transport_error(e)})
            raise TransportError(str(e) or type(e).__name__, kind=type(e).__name__) from e

    async def _read_stream(
        self,
        resp: httpx.Response,
        *,
        deltas: bool,
        cancel_token: Any | None,
    ) -> ProviderResponse:
        reader = DataLineReader()
        text = ""
        last: Any = None

        def consume(objects: list[Any]) -> None:
            nonlocal text, last
            for obj in objects:
                if deltas:
                    text += openai_delta_text(obj)
                else:
                    last = obj

        async for chunk in resp.aiter_text():
            _check_cancelled(cancel_token)
            consume(reader.feed(chunk))
        consume(reader.finish())

        return StreamText(text) if deltas else JsonBody(last)
