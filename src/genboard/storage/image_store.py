# src/genboard/storage/image_store.py

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ..core.models import key_basename
from ..errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".bin"

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
}

_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
}


def extension_for(content_type: str | None) -> str:
    normalized = (content_type or "").lower()
    for mime, ext in _EXTENSIONS.items():
        if mime in normalized:
            return ext
    return DEFAULT_EXTENSION


def mime_for(name: str) -> str:
    return _MIME_BY_SUFFIX.get(Path(name).suffix.lower(), "application/octet-stream")


@dataclass(slots=True, frozen=True)
class SavedImage:
    key: str
    created: bool


class ImageStore:
    """
    Content-addressed blob directory.

    Keys are sha256(content) + extension. A file whose name starts with the
    same hash counts as already stored, whatever its extension. The check is
    not atomic: two first writers of identical bytes may both write, which
    leaves the same bytes on disk.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        safe = key_basename(key)
        if not safe or safe in (".", ".."):
            raise NotFoundError(f"Invalid image key: {key!r}")
        return self._root / safe

    def list_keys(self) -> list[str]:
        try:
            return sorted(p.name for p in self._root.iterdir() if p.is_file())
        except FileNotFoundError:
            return []

    def find_existing(self, digest: str) -> str | None:
        try:
            names = os.listdir(self._root)
        except FileNotFoundError:
            return None
        for name in names:
            if name.startswith(digest):
                return name
        return None

    def save(self, data: bytes, content_type: str | None) -> SavedImage:
        digest = hashlib.sha256(data).hexdigest()
        key = f"{digest}{extension_for(content_type)}"
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            existing = self.find_existing(digest)
            if existing:
                return SavedImage(key=existing, created=False)
            (self._root / key).write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to store image {key}: {e}") from e
        logger.debug("Stored image key=%s bytes=%d", key, len(data))
        return SavedImage(key=key, created=True)

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except NotFoundError:
            return False

    def read(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(f"Image not found: {key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read image {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            path = self.path_for(key)
        except NotFoundError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete image {key}: {e}") from e
        return True
