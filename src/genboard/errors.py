# src/genboard/errors.py

"""
Error taxonomy.

Sub-task attempts convert Transport/Protocol/Extraction/Config failures into a
retry or a terminal error slot. StorageError and NotFoundError surface to the
HTTP layer.
"""

from __future__ import annotations


class GenboardError(Exception):
    """Base class for errors raised by genboard itself."""


class ConfigError(GenboardError):
    """Provider configuration is incomplete (missing API key or model)."""


class TransportError(GenboardError):
    """Network-level failure talking to a provider (DNS, TLS, reset, timeout)."""

    def __init__(self, message: str, *, kind: str = "") -> None:
        super().__init__(message)
        self.kind = kind


class ProtocolError(GenboardError):
    """Provider answered with a non-success status or an unusable body."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(GenboardError):
    """The provider call succeeded but no image payload could be located."""


class StorageError(GenboardError):
    """Filesystem failure while persisting state or blobs."""


class NotFoundError(GenboardError):
    """Unknown task, sub-task or image key."""
