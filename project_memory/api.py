"""
Programmatic API for project-memory: use the store as a library.

Example usage::

    from project_memory import MemoryService

    with MemoryService() as memory:
        memory.record_decision("Use PostgreSQL for storage", context="need ACID")
        for result in memory.semantic_search("database choice for transactions"):
            print(result.score, result.excerpt)
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Optional

from .config import Config
from .embeddings import EmbeddingProvider
from .health import MemoryHealth, check
from .migration import MigrationController, MigrationReport
from .retrieval.engine import Query, RetrievalEngine, SearchResponse, SearchResult
from .retrieval.query_analyzer import QueryAnalysis, classify
from .store.coordinator import DualStoreCoordinator
from .store.models import (
    CodePattern,
    Decision,
    Fact,
    ProgressItem,
    Project,
    WriteResult,
    build_fact,
    resolve_tables,
)
from .store.relational import RelationalStore
from .store.vector_store import SQLiteVectorIndex

_logger = logging.getLogger(__name__)


class MemoryService:
    """Project-scoped fact store with hybrid retrieval.

    Wires the relational store, vector index, embedding provider,
    coordinator, retrieval engine and migration controller together and
    exposes the request-level operations.

    Args:
        config: Settings (default: :meth:`Config.load`).
        provider: Embedding provider override (default: built from config).
    """

    def __init__(self, config: Config | None = None,
                 provider: EmbeddingProvider | None = None):
        self.config = config or Config.load()
        os.makedirs(self.config.DATA_DIR, exist_ok=True)
        self.provider = provider or EmbeddingProvider(self.config)
        self.relational = RelationalStore(self.config.relational_db_path)
        self.vectors = SQLiteVectorIndex(self.config.vector_db_path)
        self.coordinator = DualStoreCoordinator(
            self.relational, self.vectors, self.provider, self.config)
        self.engine = RetrievalEngine(self.coordinator, self.config)
        self.migrations = MigrationController(self.coordinator, self.config)
        _logger.debug("Memory store opened at %s", self.config.DATA_DIR)

    def close(self) -> None:
        self.vectors.close()

    def __enter__(self) -> "MemoryService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Writes ──

    def record_fact(self, kind: str, fields: dict[str, Any],
                    project: str | None = None) -> WriteResult:
        """Validate and store a fact of *kind* (``decision``, ``progress``, ``pattern``)."""
        fact = build_fact(kind, fields, project=project or self.config.DEFAULT_PROJECT)
        return self.coordinator.write(fact)

    def record_decision(self, decision: str, context: str = "",
                        alternatives: Optional[list[str]] = None, impact: str = "",
                        project: str | None = None) -> WriteResult:
        fact = Decision(decision=decision, context=context,
                        alternatives=list(alternatives or []), impact=impact,
                        project=project or self.config.DEFAULT_PROJECT)
        return self.coordinator.write(fact)

    def track_progress(self, milestone: str, status: str = "in_progress", notes: str = "",
                       blockers: Optional[list[str]] = None,
                       project: str | None = None) -> WriteResult:
        """Create or update the milestone's progress entry."""
        fact = ProgressItem(milestone=milestone, status=status, notes=notes,
                            blockers=list(blockers or []),
                            project=project or self.config.DEFAULT_PROJECT)
        return self.coordinator.write(fact)

    def add_code_pattern(self, file_path: str, content: str, language: str = "",
                         project: str | None = None) -> WriteResult:
        fact = CodePattern(file_path=file_path, content=content, language=language,
                           project=project or self.config.DEFAULT_PROJECT)
        return self.coordinator.write(fact)

    def delete_fact(self, table: str, fact_id: int, project: str | None = None) -> bool:
        """Delete a fact and its vector.  Returns False if it does not exist."""
        return self.coordinator.delete(table, fact_id, project)

    # ── Reads ──

    def query_memory(self, text: str = "", project: str | None = None,
                     category: str | None = None, limit: int | None = None) -> list[Fact]:
        """Facts matching *text* (hybrid search), or the most recent ones when
        *text* is empty.

        Args:
            text: Free-text query; empty lists recent facts instead.
            project: Project name (default: configured project).
            category: A table or kind alias, or ``"all"``.
            limit: Maximum number of facts.
        """
        project = project or self.config.DEFAULT_PROJECT
        tables = resolve_tables(category)
        if text and text.strip():
            results = self.engine.search(Query(text=text, tables=list(tables), limit=limit,
                                               project=project, strategy="hybrid"))
            return [r.fact for r in results]

        limit = limit or self.config.DEFAULT_LIMIT
        facts: list[Fact] = []
        for table in tables:
            facts.extend(self.relational.list_facts(table, project, limit))
        facts.sort(key=lambda f: (f.updated_at, f.table, f.id), reverse=True)
        return facts[:limit]

    def semantic_search(self, text: str, tables: list[str] | str | None = None,
                        min_similarity: float | None = None, limit: int | None = None,
                        project: str | None = None,
                        strategy: str | None = "vector") -> SearchResponse:
        """Search by meaning.  Pass ``strategy=None`` to let the analyzer choose."""
        if isinstance(tables, str):
            tables = [tables]
        return self.engine.execute(Query(text=text, tables=tables,
                                         min_similarity=min_similarity, limit=limit,
                                         project=project, strategy=strategy))

    def find_duplicates(self, description: str, table: str = "decisions",
                        threshold: float | None = None, project: str | None = None,
                        limit: int | None = None) -> list[SearchResult]:
        """Existing facts similar to *description*, each with a match reason."""
        return self.engine.find_similar(description, table, threshold=threshold,
                                        project=project, limit=limit)

    def classify(self, text: str) -> QueryAnalysis:
        return classify(text)

    def list_projects(self) -> list[Project]:
        return self.relational.list_projects()

    def get_decisions(self, project: str | None = None, limit: int | None = None) -> list[Fact]:
        return self.relational.list_facts("decisions", project or self.config.DEFAULT_PROJECT,
                                          limit)

    def get_progress(self, project: str | None = None, limit: int | None = None) -> list[Fact]:
        return self.relational.list_facts("progress", project or self.config.DEFAULT_PROJECT,
                                          limit)

    # ── Maintenance ──

    def migrate_embeddings(self, table: str, to_model: str, from_model: str | None = None,
                           cancel_event: threading.Event | None = None,
                           show_progress: bool = False) -> MigrationReport:
        """Re-embed *table* under *to_model*; see :class:`MigrationController`."""
        return self.migrations.migrate(table, from_model, to_model,
                                       cancel_event=cancel_event,
                                       show_progress=show_progress)

    def health(self) -> MemoryHealth:
        """Consistency report; see :func:`project_memory.health.check`."""
        return check(self)
