"""Typed errors raised by the memory engine.

Every error carries a stable machine-readable ``kind``, a human-readable
message and a ``details`` dict with structured context. The tool layer turns
them into ``Error: [KIND] message`` text; nothing here retries.
"""

from __future__ import annotations

from typing import Any


class ScopedMemoryError(Exception):
    """Base class for all memory engine errors."""

    kind = "MEMORY_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return self.message


class ValidationError(ScopedMemoryError):
    """Bad input shape, size, or scope/category pairing."""

    kind = "VALIDATION_ERROR"


class MemoryNotFound(ScopedMemoryError):
    kind = "MEMORY_NOT_FOUND"


class CoreProtected(ScopedMemoryError):
    """Mutation or deletion of an identity memory without override."""

    kind = "CORE_PROTECTED"


class InvalidCategory(ScopedMemoryError):
    kind = "INVALID_CATEGORY"


class StorageFull(ScopedMemoryError):
    """Quota ceiling reached on a category that is never auto-evicted."""

    kind = "STORAGE_FULL"


class Forbidden(ScopedMemoryError):
    """Cross-agent mutation of a collective record."""

    kind = "FORBIDDEN"


class NotInitialized(ScopedMemoryError):
    """A location was used before ensure_location() provisioned it."""

    kind = "NOT_INITIALIZED"


class StoreError(ScopedMemoryError):
    """Wraps any failure of the underlying key-value store."""

    kind = "STORE_ERROR"
