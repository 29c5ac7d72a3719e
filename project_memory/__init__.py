"""
project_memory: project-scoped memory of decisions, progress and code patterns.

Public API for library usage::

    from project_memory import MemoryService

    with MemoryService() as memory:
        memory.record_decision("Use PostgreSQL for storage", context="need ACID")
        response = memory.semantic_search("database choice for transactions")
"""

from .api import MemoryService
from .config import Config
from .errors import (
    EmbeddingUnavailable,
    InconsistentState,
    InvalidTarget,
    MemoryStoreError,
    MigrationPartialFailure,
    StorageError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "MemoryService",
    "Config",
    "MemoryStoreError",
    "ValidationError",
    "InvalidTarget",
    "EmbeddingUnavailable",
    "InconsistentState",
    "MigrationPartialFailure",
    "StorageError",
]
