"""
Re-embedding of a fact table under a new embedding model.

The new vectors are staged in a fresh collection while the old one stays
live, so writes and searches continue during the (long) embedding phase.
Only the final step runs under the table lock:

1. catch up facts written, updated or deleted while staging;
2. compare-and-swap the table's active model pointer to the staged
   collection;
3. drop the old collection.

If any fact fails to embed, or the run is cancelled, the staged
collection is dropped and the old model stays active.  A table therefore
never mixes vectors of two models.  Only one migration per table runs at
a time; a second one is refused while the first is staging.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from tqdm import tqdm

from .errors import EmbeddingUnavailable, MigrationPartialFailure, ValidationError
from .store.models import Fact, ModelPointer, VectorEntry, make_reference, resolve_table
from .store.vector_store import collection_name

logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_EXCEPTIONS = "completed_with_exceptions"
    CANCELLED = "cancelled"


@dataclass
class MigrationFailure:
    """A fact that could not be embedded under the target model."""

    reference: str
    fact_id: Optional[int]
    project: str
    error: str


@dataclass
class MigrationReport:
    """Outcome of :meth:`MigrationController.migrate`."""

    table: str
    from_model: str
    to_model: str
    total: int = 0
    succeeded: int = 0
    failed: list[MigrationFailure] = field(default_factory=list)
    state: MigrationState = MigrationState.COMPLETED
    swapped: bool = False

    @property
    def ok(self) -> bool:
        return self.state is MigrationState.COMPLETED and self.swapped

    def raise_for_failures(self) -> None:
        """Raise :class:`MigrationPartialFailure` unless the swap happened."""
        if not self.ok:
            raise MigrationPartialFailure(self)

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "from_model": self.from_model,
            "to_model": self.to_model,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": [vars(f) for f in self.failed],
            "state": self.state.value,
            "swapped": self.swapped,
        }


class MigrationController:
    """
    Moves a table's vectors to another embedding model.

    Parameters
    ----------
    coordinator:
        The :class:`~project_memory.store.coordinator.DualStoreCoordinator`;
        its table locks serialise the final swap with concurrent writes.
    config:
        Supplies ``MIGRATION_BATCH_SIZE``.
    """

    def __init__(self, coordinator, config) -> None:
        self._coordinator = coordinator
        self._relational = coordinator.relational
        self._vectors = coordinator.vectors
        self._provider = coordinator.provider
        self._batch_size = max(1, int(config.MIGRATION_BATCH_SIZE))
        self._running: set[str] = set()
        self._running_guard = threading.Lock()

    def migrate(
        self,
        table: str,
        from_model: Optional[str],
        to_model: str,
        cancel_event: Optional[threading.Event] = None,
        show_progress: bool = False,
    ) -> MigrationReport:
        """
        Re-embed every fact of *table* (all projects) under *to_model*.

        Parameters
        ----------
        table:
            Table or kind alias.
        from_model:
            Expected active model; ``None`` accepts whatever is active.
        to_model:
            Target model id; must be registered with the provider.
        cancel_event:
            Checked between facts; when set, the run stops and nothing is
            swapped.
        show_progress:
            Display a ``tqdm`` progress bar.

        Returns
        -------
        MigrationReport
            Call :meth:`MigrationReport.raise_for_failures` to turn an
            unsuccessful run into an exception.

        Raises
        ------
        ValidationError
            Unknown table or model, *from_model* is not the active model,
            or another migration of *table* is in progress.
        """
        table = resolve_table(table)
        with self._running_guard:
            if table in self._running:
                raise ValidationError(f"A migration of {table} is already in progress")
            self._running.add(table)
        try:
            return self._migrate(table, from_model, to_model, cancel_event, show_progress)
        finally:
            with self._running_guard:
                self._running.discard(table)

    def _migrate(self, table: str, from_model: Optional[str], to_model: str,
                 cancel_event: Optional[threading.Event],
                 show_progress: bool) -> MigrationReport:
        spec = self._provider.get_model(to_model)
        pointer = self._coordinator.active_pointer(table)
        if from_model is not None and from_model != pointer.model_id:
            raise ValidationError(
                f"Active model of {table} is '{pointer.model_id}', not '{from_model}'")

        staging = collection_name(table, to_model, pointer.version + 1)
        # A leftover from an interrupted run is never live
        self._vectors.drop_collection(staging)
        self._vectors.create_collection(staging, table, to_model, spec.dimension)

        facts = self._relational.all_facts(table)
        report = MigrationReport(table, pointer.model_id, to_model, total=len(facts))
        logger.info("Migrating %d %s fact(s) from %s to %s",
                    len(facts), table, pointer.model_id, to_model)

        staged: dict[str, str] = {}
        try:
            batch: list[VectorEntry] = []
            for fact in tqdm(facts, desc=f"Re-embedding {table}", unit="fact",
                             disable=not show_progress):
                if cancel_event is not None and cancel_event.is_set():
                    report.state = MigrationState.CANCELLED
                    logger.warning("Migration of %s cancelled after %d fact(s)",
                                   table, len(staged))
                    break
                entry = self._embed(fact, table, spec.dimension, to_model, report)
                if entry is None:
                    continue
                batch.append(entry)
                staged[entry.reference] = fact.updated_at
                if len(batch) >= self._batch_size:
                    self._vectors.upsert(staging, batch)
                    batch = []
            if batch:
                self._vectors.upsert(staging, batch)

            report.succeeded = len(staged)
            if report.failed and report.state is MigrationState.COMPLETED:
                report.state = MigrationState.COMPLETED_WITH_EXCEPTIONS
            if report.state is MigrationState.COMPLETED:
                self._swap(table, pointer, staging, spec.dimension, staged, report)
        finally:
            if not report.swapped:
                self._drop_unless_live(table, staging)

        if report.swapped:
            logger.info("Migrated %s to %s: %d fact(s)", table, to_model, report.succeeded)
        else:
            logger.warning("Migration of %s to %s %s: %d of %d fact(s) failed; "
                           "%s remains active", table, to_model, report.state.value,
                           len(report.failed), report.total, pointer.model_id)
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _embed(self, fact: Fact, table: str, dimension: int, to_model: str,
               report: MigrationReport) -> Optional[VectorEntry]:
        reference = make_reference(table, fact.id)
        try:
            vector, _ = self._provider.embed(fact.embedding_text(), to_model)
        except (EmbeddingUnavailable, ValidationError) as exc:
            logger.warning("Could not re-embed %s: %s", reference, exc)
            report.failed.append(MigrationFailure(reference, fact.id, fact.project, str(exc)))
            return None
        return VectorEntry(
            reference=reference,
            project=fact.project,
            model_id=to_model,
            dimension=dimension,
            vector=vector,
            text=fact.excerpt(),
        )

    def _swap(self, table: str, pointer: ModelPointer, staging: str, dimension: int,
              staged: dict[str, str], report: MigrationReport) -> None:
        with self._coordinator.table_lock(table):
            current = self._relational.get_pointer(table)
            if current is None or current.version != pointer.version:
                self._conflict(report, table, "active model changed during migration")
                return

            # Catch up writes that landed in the old collection while staging
            live: set[str] = set()
            catch_up: list[VectorEntry] = []
            for fact in self._relational.all_facts(table):
                reference = make_reference(table, fact.id)
                live.add(reference)
                if staged.get(reference) == fact.updated_at:
                    continue
                entry = self._embed(fact, table, dimension, report.to_model, report)
                if entry is not None:
                    catch_up.append(entry)
            if report.failed:
                report.state = MigrationState.COMPLETED_WITH_EXCEPTIONS
                return
            if catch_up:
                logger.debug("Catching up %d fact(s) written during migration", len(catch_up))
                self._vectors.upsert(staging, catch_up)
            stale = sorted(self._vectors.references(staging) - live)
            if stale:
                self._vectors.delete(staging, stale)

            if not self._relational.swap_pointer(table, pointer.version, report.to_model,
                                                 dimension, staging):
                self._conflict(report, table, "active model pointer was swapped concurrently")
                return
            report.swapped = True
            report.total = report.succeeded = len(live)
            self._vectors.drop_collection(pointer.collection)

    def _drop_unless_live(self, table: str, collection: str) -> None:
        with self._coordinator.table_lock(table):
            current = self._relational.get_pointer(table)
            if current is not None and current.collection == collection:
                logger.warning("Keeping %s: it is the active collection of %s",
                               collection, table)
                return
            self._vectors.drop_collection(collection)

    @staticmethod
    def _conflict(report: MigrationReport, table: str, message: str) -> None:
        report.state = MigrationState.COMPLETED_WITH_EXCEPTIONS
        report.failed.append(MigrationFailure(table, None, "", message))
