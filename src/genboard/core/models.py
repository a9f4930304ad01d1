# src/genboard/core/models.py

"""
Persisted documents and their normalisation.

All documents are stored as camelCase JSON so the dashboard can read them as-is.
`from_dict` is lenient (missing/invalid fields fall back to defaults, unknown
keys are kept in `extra`), `to_dict` drops unset optional fields.
"""

from __future__ import annotations

import math
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterable
from urllib.parse import quote, unquote

SCHEMA_VERSION = 1
MIN_CONCURRENCY = 1
DEFAULT_CONCURRENCY = 2

API_FORMATS = ("openai", "gemini", "vertex")

# Keys cached per provider format so switching formats in the dashboard
# restores the previous settings of that format.
FORMAT_CONFIG_KEYS = (
    "apiUrl",
    "apiKey",
    "model",
    "apiVersion",
    "vertexProjectId",
    "vertexLocation",
    "vertexPublisher",
    "thinkingBudget",
    "includeThoughts",
    "includeImageConfig",
    "includeSafetySettings",
    "safety",
    "imageConfig",
    "webpQuality",
    "useResponseModalities",
    "customJson",
)

BACKEND_IMAGE_PATH = "/api/backend/image/"
_BACKEND_IMAGE_KEY_RE = re.compile(r"/api/backend/image/([^?]+)")
_TOKEN_PARAM_RE = re.compile(r"[?&]token=[^&]+")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def key_basename(value: Any) -> str:
    """Normalise a stored image reference to a bare file name."""
    if value is None:
        return ""
    return os.path.basename(str(value))


def image_url_for_key(key: str) -> str:
    return f"{BACKEND_IMAGE_PATH}{quote(key, safe='')}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _opt_number(value: Any) -> int | float | None:
    return value if _is_number(value) else None


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _split(raw: dict[str, Any], names: Iterable[str]) -> dict[str, Any]:
    known = set(names)
    return {k: v for k, v in raw.items() if k not in known}


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def normalize_concurrency(value: Any, fallback: int = DEFAULT_CONCURRENCY) -> int:
    if not _is_number(value):
        return fallback
    return max(MIN_CONCURRENCY, int(value))


# ---- stats ----


@dataclass(slots=True)
class Stats:
    total_requests: int = 0
    success_count: int = 0
    fastest_time: int | float = 0
    slowest_time: int | float = 0
    total_time: int | float = 0

    @classmethod
    def from_dict(cls, raw: Any) -> Stats:
        raw = raw if isinstance(raw, dict) else {}

        def num(key: str) -> int | float:
            v = raw.get(key)
            return v if _is_number(v) else 0

        return cls(
            total_requests=int(num("totalRequests")),
            success_count=int(num("successCount")),
            fastest_time=num("fastestTime"),
            slowest_time=num("slowestTime"),
            total_time=num("totalTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "successCount": self.success_count,
            "fastestTime": self.fastest_time,
            "slowestTime": self.slowest_time,
            "totalTime": self.total_time,
        }

    def record_requests(self, count: int = 1) -> None:
        self.total_requests += max(0, int(count))

    def record_success(self, duration: int | float | None) -> None:
        self.success_count += 1
        if duration is None:
            return
        self.total_time += duration
        self.fastest_time = duration if self.fastest_time == 0 else min(self.fastest_time, duration)
        self.slowest_time = max(self.slowest_time, duration)


# ---- task documents ----


class ResultStatus(StrEnum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def parse(cls, raw: Any) -> ResultStatus:
        try:
            return cls(raw)
        except ValueError:
            return cls.LOADING


_RESULT_KEYS = (
    "id",
    "status",
    "startTime",
    "endTime",
    "duration",
    "error",
    "retryCount",
    "autoRetry",
    "localKey",
    "sourceUrl",
    "savedLocal",
)


@dataclass(slots=True)
class SubtaskResult:
    id: str
    status: ResultStatus = ResultStatus.LOADING
    start_time: int | None = None
    end_time: int | None = None
    duration: int | None = None
    error: str | None = None
    retry_count: int = 0
    # None means "never set", which counts as enabled.
    auto_retry: bool | None = True
    local_key: str | None = None
    source_url: str | None = None
    saved_local: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fresh(cls, start_time: int | None = None) -> SubtaskResult:
        return cls(id=new_id(), start_time=start_time if start_time is not None else now_ms())

    @property
    def retries_enabled(self) -> bool:
        return self.auto_retry is not False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SubtaskResult:
        retry_count = raw.get("retryCount")
        auto_retry = raw.get("autoRetry")
        return cls(
            id=str(raw.get("id") or new_id()),
            status=ResultStatus.parse(raw.get("status")),
            start_time=_opt_number(raw.get("startTime")),
            end_time=_opt_number(raw.get("endTime")),
            duration=_opt_number(raw.get("duration")),
            error=_opt_str(raw.get("error")),
            retry_count=int(retry_count) if _is_number(retry_count) else 0,
            auto_retry=auto_retry if isinstance(auto_retry, bool) else None,
            local_key=_opt_str(raw.get("localKey")),
            source_url=_opt_str(raw.get("sourceUrl")),
            saved_local=bool(raw.get("savedLocal", False)),
            extra=_split(raw, _RESULT_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update(
            _drop_none(
                {
                    "id": self.id,
                    "status": self.status.value,
                    "startTime": self.start_time,
                    "endTime": self.end_time,
                    "duration": self.duration,
                    "error": self.error,
                    "retryCount": self.retry_count,
                    "autoRetry": self.auto_retry,
                    "localKey": self.local_key,
                    "sourceUrl": self.source_url,
                    "savedLocal": self.saved_local,
                }
            )
        )
        return out


_UPLOAD_KEYS = ("uid", "name", "type", "localKey", "lastModified", "fromCollection", "sourceSignature")


@dataclass(slots=True)
class UploadedImage:
    uid: str
    name: str = ""
    type: str = ""
    local_key: str | None = None
    last_modified: int | None = None
    from_collection: bool | None = None
    source_signature: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UploadedImage:
        from_collection = raw.get("fromCollection")
        return cls(
            uid=str(raw.get("uid") or new_id()),
            name=_opt_str(raw.get("name")) or "",
            type=_opt_str(raw.get("type")) or "",
            local_key=_opt_str(raw.get("localKey")),
            last_modified=_opt_number(raw.get("lastModified")),
            from_collection=from_collection if isinstance(from_collection, bool) else None,
            source_signature=_opt_str(raw.get("sourceSignature")),
            extra=_split(raw, _UPLOAD_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update(
            _drop_none(
                {
                    "uid": self.uid,
                    "name": self.name,
                    "type": self.type,
                    "localKey": self.local_key,
                    "lastModified": self.last_modified,
                    "fromCollection": self.from_collection,
                    "sourceSignature": self.source_signature,
                }
            )
        )
        return out


_TASK_KEYS = ("version", "prompt", "concurrency", "enableSound", "results", "uploads", "stats")


@dataclass(slots=True)
class Task:
    prompt: str = ""
    concurrency: int = DEFAULT_CONCURRENCY
    enable_sound: bool = True
    results: list[SubtaskResult] = field(default_factory=list)
    uploads: list[UploadedImage] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)
    version: int = SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> Task:
        """Merge a stored/posted document over defaults."""
        raw = raw if isinstance(raw, dict) else {}
        results = raw.get("results")
        uploads = raw.get("uploads")
        enable_sound = raw.get("enableSound")
        version = raw.get("version")
        return cls(
            prompt=raw["prompt"] if isinstance(raw.get("prompt"), str) else "",
            concurrency=normalize_concurrency(raw.get("concurrency")),
            enable_sound=enable_sound if isinstance(enable_sound, bool) else True,
            results=[SubtaskResult.from_dict(r) for r in results if isinstance(r, dict)]
            if isinstance(results, list)
            else [],
            uploads=[UploadedImage.from_dict(u) for u in uploads if isinstance(u, dict)]
            if isinstance(uploads, list)
            else [],
            stats=Stats.from_dict(raw.get("stats")),
            version=int(version) if _is_number(version) else SCHEMA_VERSION,
            extra=_split(raw, _TASK_KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "version": self.version,
                "prompt": self.prompt,
                "concurrency": self.concurrency,
                "enableSound": self.enable_sound,
                "results": [r.to_dict() for r in self.results],
                "uploads": [u.to_dict() for u in self.uploads],
                "stats": self.stats.to_dict(),
            }
        )
        return out

    def find_result(self, subtask_id: str) -> SubtaskResult | None:
        for r in self.results:
            if r.id == subtask_id:
                return r
        return None

    def image_keys(self) -> set[str]:
        """Every image key this task references (uploads and results)."""
        keys: set[str] = set()
        for item in (*self.uploads, *self.results):
            if item.local_key:
                keys.add(key_basename(item.local_key))
        return keys


def removed_image_keys(previous: Task, current: Task) -> list[str]:
    return sorted(previous.image_keys() - current.image_keys())


# ---- collection ----


def strip_backend_token(url: str) -> str:
    if BACKEND_IMAGE_PATH not in url:
        return url
    stripped = _TOKEN_PARAM_RE.sub("", url)
    return re.sub(r"[?&]$", "", stripped)


def backend_key_from_url(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    m = _BACKEND_IMAGE_KEY_RE.search(value)
    return unquote(m.group(1)) if m else ""


@dataclass(slots=True)
class CollectionItem:
    id: str
    prompt: str = ""
    task_id: str = ""
    timestamp: int | float = 0
    image: str | None = None
    local_key: str | None = None
    source_signature: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> CollectionItem | None:
        if not isinstance(raw, dict):
            return None
        item_id = raw.get("id")
        if not isinstance(item_id, str) or not item_id:
            return None
        timestamp = raw.get("timestamp")
        image = raw.get("image")
        return cls(
            id=item_id,
            prompt=_opt_str(raw.get("prompt")) or "",
            task_id=_opt_str(raw.get("taskId")) or "",
            timestamp=timestamp if _is_number(timestamp) else now_ms(),
            image=strip_backend_token(image) or None if isinstance(image, str) else None,
            local_key=_opt_str(raw.get("localKey")) or None,
            source_signature=_opt_str(raw.get("sourceSignature")) or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "prompt": self.prompt,
                "taskId": self.task_id,
                "timestamp": self.timestamp,
                "image": self.image,
                "localKey": self.local_key,
                "sourceSignature": self.source_signature,
            }
        )

    def image_key(self) -> str:
        key = self.local_key or backend_key_from_url(self.image)
        return key_basename(key) if key else ""


def normalize_collection(payload: Any) -> list[CollectionItem]:
    """Sanitise a posted/stored collection list; first occurrence of an id wins."""
    if not isinstance(payload, list):
        return []
    items: list[CollectionItem] = []
    seen: set[str] = set()
    for entry in payload:
        item = CollectionItem.from_dict(entry)
        if item is None or item.id in seen:
            continue
        seen.add(item.id)
        items.append(item)
    return items


def collection_image_keys(items: Iterable[CollectionItem]) -> set[str]:
    return {k for k in (item.image_key() for item in items) if k}


# ---- global state ----

_CONFIG_FIELDS = {
    "apiUrl": "api_url",
    "apiKey": "api_key",
    "model": "model",
    "apiFormat": "api_format",
    "apiVersion": "api_version",
    "vertexProjectId": "vertex_project_id",
    "vertexLocation": "vertex_location",
    "vertexPublisher": "vertex_publisher",
    "stream": "stream",
    "enableCollection": "enable_collection",
}


def _coerce_format(value: Any) -> str:
    return value if value in ("gemini", "vertex") else "openai"


@dataclass(slots=True)
class GlobalConfig:
    api_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = ""
    api_format: str = "openai"
    api_version: str = "v1"
    vertex_project_id: str = ""
    vertex_location: str = "us-central1"
    vertex_publisher: str = "google"
    stream: bool = False
    enable_collection: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> GlobalConfig:
        raw = raw if isinstance(raw, dict) else {}
        cfg = cls(extra=_split(raw, _CONFIG_FIELDS))
        for camel, attr in _CONFIG_FIELDS.items():
            if camel not in raw or raw[camel] is None:
                continue
            value = raw[camel]
            if attr in ("stream", "enable_collection"):
                setattr(cfg, attr, bool(value))
            else:
                setattr(cfg, attr, str(value))
        cfg.api_format = _coerce_format(cfg.api_format)
        return cfg

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        for camel, attr in _CONFIG_FIELDS.items():
            out[camel] = getattr(self, attr)
        return out


def pick_format_config(config: dict[str, Any]) -> dict[str, Any]:
    return {k: config[k] for k in FORMAT_CONFIG_KEYS if k in config}


@dataclass(slots=True)
class GlobalState:
    config: GlobalConfig = field(default_factory=GlobalConfig)
    config_by_format: dict[str, dict[str, Any]] = field(default_factory=dict)
    tasks_order: list[str] = field(default_factory=list)
    global_stats: Stats = field(default_factory=Stats)

    @classmethod
    def from_dict(cls, raw: Any) -> GlobalState:
        raw = raw if isinstance(raw, dict) else {}
        config = GlobalConfig.from_dict(raw.get("config"))
        by_format = raw.get("configByFormat")
        config_by_format = dict(by_format) if isinstance(by_format, dict) else {}
        if not config_by_format.get(config.api_format):
            config_by_format[config.api_format] = pick_format_config(config.to_dict())
        order = raw.get("tasksOrder")
        return cls(
            config=config,
            config_by_format=config_by_format,
            tasks_order=[t for t in order if isinstance(t, str)] if isinstance(order, list) else [],
            global_stats=Stats.from_dict(raw.get("globalStats")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "configByFormat": dict(self.config_by_format),
            "tasksOrder": list(self.tasks_order),
            "globalStats": self.global_stats.to_dict(),
        }

    def apply_patch(self, body: dict[str, Any]) -> GlobalState:
        """Return the state with a dashboard PATCH body merged in."""
        nxt = GlobalState.from_dict(self.to_dict())

        incoming = body.get("configByFormat")
        if isinstance(incoming, dict):
            nxt.config_by_format.update(incoming)

        if body.get("config"):
            nxt.config = GlobalConfig.from_dict(body["config"])
            nxt.config_by_format[nxt.config.api_format] = pick_format_config(nxt.config.to_dict())

        order = body.get("tasksOrder")
        if isinstance(order, list):
            nxt.tasks_order = list(dict.fromkeys(t for t in order if isinstance(t, str)))

        if body.get("globalStats"):
            nxt.global_stats = Stats.from_dict(body["globalStats"])

        return nxt


StatsMutator = Callable[[Stats], None]
