"""
Memory store health check: counts, active models and dual-store consistency.

Used by the CLI (``project-memory health``) and :meth:`MemoryService.health`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from .errors import InconsistentState
from .store.models import TABLES, make_reference

logger = logging.getLogger(__name__)


@dataclass
class TableHealth:
    """Consistency of one fact table."""

    table: str
    fact_count: int = 0
    vector_count: int = 0
    active_model: Optional[str] = None
    dimension: Optional[int] = None
    collection: Optional[str] = None
    model_mismatch: bool = False
    dangling: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.dangling and not self.orphans


@dataclass
class MemoryHealth:
    """Overall memory store health status."""

    data_dir: str
    configured_model: str
    project_count: int = 0
    tables: dict[str, TableHealth] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return all(t.consistent for t in self.tables.values())


def check(service) -> MemoryHealth:
    """
    Check every fact table of *service* against its active vector collection.

    Parameters
    ----------
    service:
        An open :class:`~project_memory.api.MemoryService`.

    Returns
    -------
    MemoryHealth
        Aggregated health status.  Dangling references are also logged as
        :class:`InconsistentState` warnings.
    """
    config = service.config
    health = MemoryHealth(
        data_dir=config.DATA_DIR,
        configured_model=config.EMBEDDING_MODEL,
        project_count=len(service.relational.list_projects()),
    )

    for table in TABLES:
        refs = service.relational.embedding_refs(table)
        status = TableHealth(table=table, fact_count=len(refs))
        pointer = service.relational.get_pointer(table)
        if pointer is not None:
            status.active_model = pointer.model_id
            status.dimension = pointer.dimension
            status.collection = pointer.collection
            status.model_mismatch = pointer.model_id != config.EMBEDDING_MODEL
            vector_refs = service.vectors.references(pointer.collection)
        else:
            vector_refs = set()
        status.vector_count = len(vector_refs)

        for fact_id, ref in sorted(refs.items()):
            if ref is None or ref not in vector_refs:
                status.dangling.append(make_reference(table, fact_id))
        status.orphans = sorted(vector_refs - {r for r in refs.values() if r})

        if status.dangling:
            logger.warning(str(InconsistentState(
                f"{table}: {len(status.dangling)} fact(s) without a vector in "
                f"{status.collection or 'any collection'}: {', '.join(status.dangling[:10])}",
                status.dangling)))
        if status.orphans:
            logger.warning("%s: %d vector(s) without a fact", table, len(status.orphans))
        health.tables[table] = status

    return health


def format_health(health: MemoryHealth) -> str:
    """
    Format a :class:`MemoryHealth` into a human-readable report.

    Parameters
    ----------
    health:
        The health status to format.

    Returns
    -------
    str
        Multi-line human-readable report.
    """
    def _status(ok: bool) -> str:
        return "OK" if ok else "NOT OK"

    lines = [
        "",
        "Project Memory Health Report",
        "=" * 40,
        f"Data dir         : {health.data_dir}",
        f"Configured model : {health.configured_model}",
        f"Projects         : {health.project_count}",
        "",
    ]
    for status in health.tables.values():
        model = status.active_model or "not initialised"
        if status.model_mismatch:
            model += " (differs from config; run migrate)"
        lines += [
            f"{status.table}:",
            f"  Facts         : {status.fact_count}",
            f"  Vectors       : {status.vector_count}",
            f"  Active model  : {model}",
            f"  Dimension     : {status.dimension or '-'}",
            f"  Consistent    : {_status(status.consistent)}",
        ]
        if status.dangling:
            lines.append(f"  Dangling refs : {', '.join(status.dangling[:10])}")
        if status.orphans:
            lines.append(f"  Orphan vectors: {', '.join(status.orphans[:10])}")
        lines.append("")
    return "\n".join(lines)


def to_json(health: MemoryHealth) -> str:
    """Serialise a :class:`MemoryHealth` to JSON."""
    data = asdict(health)
    data["healthy"] = health.healthy
    for table, status in health.tables.items():
        data["tables"][table]["consistent"] = status.consistent
    return json.dumps(data, indent=2)
