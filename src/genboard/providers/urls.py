# src/genboard/providers/urls.py

"""
Endpoint construction for the three provider wire formats.

gemini / vertex:
  origin + path segments from the configured URL (or the format default),
  version segment injected unless one is present, resource markers
  (projects/locations/publishers/models) completed from configuration,
  then ":generateContent" or ":streamGenerateContent".
openai:
  "<base>[/<version>]/chat/completions", version added only if missing.

Auth placement:
- official Google hosts get the API key as a `key` query parameter, except
  project-scoped Vertex resource paths, which take a bearer token;
- every other (proxied) endpoint gets `Authorization: Bearer <key>`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import quote, urlsplit

from ..core.models import GlobalConfig
from ..errors import ConfigError

API_VERSION_RE = re.compile(r"^v1(?:beta1|beta)?$", re.IGNORECASE)
MARKER_SEGMENTS = frozenset({"projects", "locations", "publishers", "models"})

DEFAULT_API_BASES = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com",
    "vertex": "https://aiplatform.googleapis.com",
}

OFFICIAL_HOSTS = {
    "gemini": "generativelanguage.googleapis.com",
    "vertex": "aiplatform.googleapis.com",
}

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


@dataclass(slots=True)
class ApiBase:
    origin: str
    segments: list[str]
    host: str


@dataclass(slots=True)
class ProviderRequest:
    url: str
    headers: dict[str, str] = field(default_factory=dict)


def is_version_segment(value: str | None) -> bool:
    return bool(API_VERSION_RE.match(value or ""))


def ensure_protocol(value: str) -> str:
    return value if _SCHEME_RE.match(value) else f"https://{value}"


def resolve_api_url(api_url: str | None, api_format: str) -> str:
    trimmed = (api_url or "").strip()
    if trimmed:
        return trimmed
    return DEFAULT_API_BASES.get(api_format, DEFAULT_API_BASES["openai"])


def normalize_api_base(api_url: str) -> ApiBase:
    cleaned = (api_url or "").strip().rstrip("/")
    if not cleaned:
        return ApiBase(origin="", segments=[], host="")
    try:
        parts = urlsplit(ensure_protocol(cleaned))
    except ValueError:
        return ApiBase(origin=cleaned, segments=[], host="")
    if not parts.netloc:
        return ApiBase(origin=cleaned, segments=[], host="")
    return ApiBase(
        origin=f"{parts.scheme}://{parts.netloc}",
        segments=[s for s in parts.path.split("/") if s],
        host=parts.netloc.lower(),
    )


def infer_api_version(api_url: str) -> str | None:
    """Last version-looking path segment of the URL, if any."""
    cleaned = (api_url or "").strip()
    if not cleaned:
        return None
    try:
        segments = [s for s in urlsplit(ensure_protocol(cleaned)).path.split("/") if s]
    except ValueError:
        segments = [s for s in cleaned.split("/") if s]
    for segment in reversed(segments):
        if is_version_segment(segment):
            return segment
    return None


def resolve_api_version(api_url: str, api_version: str | None, fallback: str) -> str:
    inferred = infer_api_version(api_url)
    if inferred:
        return inferred
    return (api_version or "").strip() or fallback


def extract_vertex_project_id(api_url: str) -> str | None:
    segments = normalize_api_base(api_url).segments
    if "projects" not in segments:
        return None
    idx = segments.index("projects")
    if idx + 1 >= len(segments):
        return None
    candidate = segments[idx + 1]
    if candidate in MARKER_SEGMENTS or is_version_segment(candidate):
        return None
    return candidate


class _SegmentPath:
    """Mutable path segments with the marker helpers used by gemini/vertex."""

    def __init__(self, segments: list[str]) -> None:
        self.segments = segments

    def insert_version(self, version: str) -> None:
        for i, segment in enumerate(self.segments):
            if segment in MARKER_SEGMENTS:
                self.segments.insert(i, version)
                return
        self.segments.append(version)

    def ensure_marker(self, marker: str, value: str) -> bool:
        """Make sure `marker` is followed by a value, filling `value` when it is not."""
        if marker not in self.segments:
            if not value:
                return False
            self.segments.extend([marker, value])
            return True
        idx = self.segments.index(marker)
        nxt = self.segments[idx + 1] if idx + 1 < len(self.segments) else None
        if not nxt or nxt in MARKER_SEGMENTS or is_version_segment(nxt):
            if not value:
                return False
            self.segments.insert(idx + 1, value)
        return True

    def apply_model(self, model: str, model_segments: list[str]) -> None:
        model_is_path = bool(model_segments) and model_segments[0] == "models"
        if "models" in self.segments:
            idx = self.segments.index("models")
            del self.segments[idx + 1:]
            self.segments.extend(model_segments[1:] if model_is_path else [model])
        elif model_is_path:
            self.segments.extend(model_segments)
        else:
            self.segments.extend(["models", model])


def build_gemini_request(config: GlobalConfig) -> ProviderRequest:
    fmt = "vertex" if config.api_format == "vertex" else "gemini"
    api_url = resolve_api_url(config.api_url, fmt)
    base = normalize_api_base(api_url)
    origin = base.origin or api_url.rstrip("/")
    has_version = infer_api_version(api_url) is not None
    version = resolve_api_version(api_url, config.api_version, "v1beta1" if fmt == "vertex" else "v1beta")

    path = _SegmentPath(list(base.segments))
    if not has_version and version:
        path.insert_version(version)

    model = (config.model or "").strip()
    if not model:
        raise ConfigError("Model name is not configured")
    model_segments = [s for s in model.split("/") if s]
    model_has_project = "projects" in model_segments
    bare_model = "/".join(model_segments[1:]) if model_segments and model_segments[0] == "models" else model

    project_scoped = False
    if fmt == "vertex":
        project_id = (config.vertex_project_id or "").strip() or extract_vertex_project_id(api_url) or ""
        location = (config.vertex_location or "").strip() or "us-central1"
        publisher = (config.vertex_publisher or "").strip() or "google"
        has_projects = "projects" in path.segments

        if model_has_project:
            path.segments.extend(model_segments)
            project_scoped = True
        elif project_id or has_projects:
            if project_id:
                path.ensure_marker("projects", project_id)
            path.ensure_marker("locations", location)
            path.ensure_marker("publishers", publisher)
            path.ensure_marker("models", bare_model)
            project_scoped = True
        else:
            path.apply_model(model, model_segments)
    else:
        path.apply_model(model, model_segments)

    suffix = ":streamGenerateContent" if config.stream else ":generateContent"
    url = f"{origin}/{'/'.join(path.segments)}{suffix}" if path.segments else f"{origin}{suffix}"
    headers = {"Content-Type": "application/json", "Connection": "close"}

    official = base.host == OFFICIAL_HOSTS[fmt]
    if official and not project_scoped:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}key={quote(config.api_key or '', safe='')}"
    else:
        headers["Authorization"] = f"Bearer {config.api_key or ''}"
    return ProviderRequest(url=url, headers=headers)


def build_openai_request(config: GlobalConfig) -> ProviderRequest:
    api_url = resolve_api_url(config.api_url, "openai")
    base = normalize_api_base(api_url)
    if base.origin:
        base_path = base.origin + ("/" + "/".join(base.segments) if base.segments else "")
    else:
        base_path = api_url.rstrip("/")
    has_version = infer_api_version(api_url) is not None
    version = resolve_api_version(api_url, config.api_version, "v1")
    openai_base = base_path if has_version else f"{base_path}/{version}"
    url = openai_base if openai_base.endswith("/chat/completions") else f"{openai_base}/chat/completions"
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "x-api-key": config.api_key,
        "Content-Type": "application/json",
        "Connection": "close",
    }
    return ProviderRequest(url=url, headers=headers)
