"""
Dual-store coordinator.

Every fact lives twice: as a row in the relational store and as a vector
entry in the table's active collection, linked by the embedding reference
``"<table>:<id>"``.  The coordinator is the only writer of both, so a
committed row always has its vector and a failed write leaves neither.

Write sequence::

    validate -> lock table -> read active pointer -> embed
             -> BEGIN; upsert project; insert/update row;
                upsert vector; set embedding_ref; COMMIT

Embedding happens before the transaction opens, so a backend outage never
holds the database.  If anything fails after the vector was written, the
vector is removed again (or restored to its previous value for updates).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from ..errors import StorageError
from .models import (
    CodePattern,
    Fact,
    ModelPointer,
    ProgressItem,
    VectorEntry,
    WriteResult,
    make_reference,
    resolve_table,
)
from .relational import RelationalStore
from .vector_store import SQLiteVectorIndex, collection_name

logger = logging.getLogger(__name__)


class DualStoreCoordinator:
    """
    Writes and deletes facts across the relational store and vector index.

    Parameters
    ----------
    relational:
        The fact store.
    vectors:
        The vector index.
    provider:
        An :class:`~project_memory.embeddings.EmbeddingProvider`.
    config:
        Supplies the default project and the initial embedding model.
    """

    def __init__(self, relational: RelationalStore, vectors: SQLiteVectorIndex,
                 provider, config) -> None:
        self.relational = relational
        self.vectors = vectors
        self.provider = provider
        self.config = config
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locks and pointers
    # ------------------------------------------------------------------

    def _lock_for(self, table: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(table)
            if lock is None:
                lock = self._locks[table] = threading.RLock()
            return lock

    @contextmanager
    def table_lock(self, table: str) -> Iterator[None]:
        """Hold the re-entrant lock serialising writes and model swaps on *table*."""
        with self._lock_for(resolve_table(table)):
            yield

    def active_pointer(self, table: str) -> ModelPointer:
        """Return the active model pointer of *table*, creating it on first use.

        The first pointer uses the configured ``embedding_model``.  The
        pointer's collection is created in the vector index if missing.
        """
        table = resolve_table(table)
        pointer = self.relational.get_pointer(table)
        if pointer is None:
            model_id = self.config.EMBEDDING_MODEL
            dimension = self.provider.dimension(model_id)
            pointer = self.relational.init_pointer(
                table, model_id, dimension, collection_name(table, model_id, 1))
            logger.info("Initialised %s with embedding model %s", table, model_id)
        self.vectors.create_collection(
            pointer.collection, table, pointer.model_id, pointer.dimension)
        return pointer

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, fact: Fact) -> WriteResult:
        """
        Persist *fact* in both stores.

        Progress items are upserted by ``(project, milestone)``.  A code
        pattern whose file path and content are already stored for the
        project is not written again; the existing fact is reported with
        ``created=False``.

        Raises
        ------
        ValidationError
            Invalid fields; nothing is persisted.
        EmbeddingUnavailable
            The embedding backend failed; nothing is persisted.
        StorageError
            A store failed; the row is rolled back and any vector written
            for it removed.
        """
        fact.validate()
        fact.project = fact.project or self.config.DEFAULT_PROJECT
        table = fact.table

        with self.table_lock(table):
            pointer = self.active_pointer(table)

            if isinstance(fact, CodePattern):
                existing = self.relational.find_pattern(fact.project, fact.pattern_hash)
                if existing is not None:
                    logger.debug("Pattern %s already stored as %s:%d",
                                 fact.pattern_hash, table, existing.id)
                    fact.id = existing.id
                    fact.embedding_ref = existing.embedding_ref
                    return WriteResult(fact.kind, existing.id,
                                       existing.embedding_ref or make_reference(table, existing.id),
                                       fact.project, created=False)

            vector, dimension = self.provider.embed(fact.embedding_text(), pointer.model_id)
            result = self._persist(fact, pointer, vector, dimension)

        logger.info("%s %s:%d in project '%s'",
                    "Recorded" if result.created else "Updated",
                    table, result.fact_id, result.project)
        return result

    def _persist(self, fact: Fact, pointer: ModelPointer, vector: list[float],
                 dimension: int) -> WriteResult:
        table = fact.table
        reference: Optional[str] = None
        previous: Optional[VectorEntry] = None
        vector_written = False
        created = True
        try:
            with self.relational.transaction() as conn:
                project_id = self.relational.ensure_project(conn, fact.project)

                existing = None
                if isinstance(fact, ProgressItem):
                    existing = self.relational.find_progress(conn, fact.project, fact.milestone)
                if existing is not None:
                    fact.id = existing.id
                    fact.created_at = existing.created_at
                    self.relational.update_fact(conn, fact)
                    created = False
                else:
                    self.relational.insert_fact(conn, project_id, fact)

                reference = make_reference(table, fact.id)
                previous = self.vectors.get(pointer.collection, reference)
                self.vectors.upsert(pointer.collection, [VectorEntry(
                    reference=reference,
                    project=fact.project,
                    model_id=pointer.model_id,
                    dimension=dimension,
                    vector=vector,
                    text=fact.excerpt(),
                )])
                vector_written = True
                self.relational.set_embedding_ref(conn, table, fact.id, reference)
        except Exception:
            if vector_written:
                self._compensate(pointer.collection, reference, previous)
            if created:
                fact.id = None
            raise

        fact.embedding_ref = reference
        return WriteResult(fact.kind, fact.id, reference, fact.project, created=created)

    def _compensate(self, collection: str, reference: str,
                    previous: Optional[VectorEntry]) -> None:
        """Undo a vector upsert whose relational transaction did not commit."""
        try:
            if previous is None:
                self.vectors.delete(collection, [reference])
            else:
                self.vectors.upsert(collection, [previous])
            logger.warning("Rolled back vector %s after a failed write", reference)
        except StorageError:
            logger.exception("Could not roll back vector %s; run the health check", reference)

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def delete(self, table: str, fact_id: int, project: Optional[str] = None) -> bool:
        """
        Delete a fact and its vector entry.

        Returns
        -------
        bool
            ``False`` if no fact with that id exists in *project*.
        """
        table = resolve_table(table)
        project = project or self.config.DEFAULT_PROJECT
        with self.table_lock(table):
            pointer = self.active_pointer(table)
            previous: Optional[VectorEntry] = None
            vector_removed = False
            try:
                with self.relational.transaction() as conn:
                    reference = self.relational.delete_fact(conn, table, fact_id, project)
                    if reference is None:
                        return False
                    if reference:
                        previous = self.vectors.get(pointer.collection, reference)
                        self.vectors.delete(pointer.collection, [reference])
                        vector_removed = previous is not None
            except Exception:
                if vector_removed:
                    self._compensate(pointer.collection, previous.reference, previous)
                raise
        logger.info("Deleted %s:%d from project '%s'", table, fact_id, project)
        return True
