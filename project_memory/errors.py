"""
Error types raised by the memory store.

Everything derives from :class:`MemoryStoreError` so the request boundary
(CLI, programmatic API callers) can catch one type.  Only
:class:`StorageError` is treated as fatal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .migration import MigrationReport


class MemoryStoreError(Exception):
    """Base class for all memory store errors."""


class ValidationError(MemoryStoreError):
    """Malformed fact fields, bad query parameters or unknown kinds.

    Raised before anything is persisted.
    """


class InvalidTarget(ValidationError):
    """Raised when a table / category / kind name is not recognised."""


class EmbeddingUnavailable(MemoryStoreError):
    """Raised when the embedding backend fails after all retries."""


class InconsistentState(MemoryStoreError):
    """A fact references a vector entry that cannot be found (or vice versa)."""

    def __init__(self, message: str, references: list[str] | None = None):
        super().__init__(message)
        self.references = list(references or [])


class MigrationPartialFailure(MemoryStoreError):
    """Raised by :meth:`MigrationReport.raise_for_failures`."""

    def __init__(self, report: "MigrationReport"):
        super().__init__(
            f"Migration of '{report.table}' to '{report.to_model}' "
            f"{report.state.value}: {len(report.failed)} of {report.total} "
            f"fact(s) failed; the previous model remains active."
        )
        self.report = report


class StorageError(MemoryStoreError):
    """Storage-medium failure (disk full, corrupt database, ...)."""
