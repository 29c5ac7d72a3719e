"""
Fact data model for the memory store.

A fact is one of three kinds, each its own dataclass with its own field set
(:class:`Decision`, :class:`ProgressItem`, :class:`CodePattern`).  The
shared bookkeeping fields (``id``, ``project``, timestamps and
``embedding_ref``) come last on every variant so the kind-specific fields
can be passed positionally.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from ..errors import InvalidTarget, ValidationError

# Stored excerpt length for vector entries and search results
EXCERPT_CHARS = 1000


class FactKind(str, Enum):
    DECISION = "decision"
    PROGRESS = "progress"
    PATTERN = "pattern"


class ProgressStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    TESTING = "testing"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    @classmethod
    def parse(cls, value: "str | ProgressStatus") -> "ProgressStatus":
        """Accept ``in-progress``, ``In Progress`` and ``in_progress`` alike."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(
                f"Invalid progress status '{value}'. Valid: {valid}"
            ) from None


# kind -> relational table / vector collection prefix
TABLE_FOR_KIND: dict[FactKind, str] = {
    FactKind.DECISION: "decisions",
    FactKind.PROGRESS: "progress",
    FactKind.PATTERN: "code_patterns",
}
KIND_FOR_TABLE: dict[str, FactKind] = {t: k for k, t in TABLE_FOR_KIND.items()}
TABLES: tuple[str, ...] = tuple(TABLE_FOR_KIND.values())

_TABLE_ALIASES = {
    "decision": "decisions",
    "decisions": "decisions",
    "progress": "progress",
    "milestone": "progress",
    "milestones": "progress",
    "pattern": "code_patterns",
    "patterns": "code_patterns",
    "code_pattern": "code_patterns",
    "code_patterns": "code_patterns",
}


def now_iso() -> str:
    """Current UTC timestamp as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def resolve_table(name: "str | FactKind") -> str:
    """Map a kind, table or category alias to its table name.

    Raises
    ------
    InvalidTarget
        If *name* does not name a known table.
    """
    if isinstance(name, FactKind):
        return TABLE_FOR_KIND[name]
    key = str(name or "").strip().lower().replace("-", "_")
    table = _TABLE_ALIASES.get(key)
    if table is None:
        raise InvalidTarget(
            f"Unknown table '{name}'. Valid: {', '.join(TABLES)}"
        )
    return table


def resolve_tables(names: "str | list[str] | tuple[str, ...] | None") -> tuple[str, ...]:
    """Resolve a list of table names; ``None`` or ``"all"`` means every table."""
    if names is None:
        return TABLES
    if isinstance(names, str):
        names = [names]
    if any(str(n).strip().lower() == "all" for n in names):
        return TABLES
    resolved: list[str] = []
    for n in names:
        table = resolve_table(n)
        if table not in resolved:
            resolved.append(table)
    if not resolved:
        raise InvalidTarget("At least one table is required")
    return tuple(resolved)


def make_reference(table: str, fact_id: int) -> str:
    """Embedding reference shared by a fact row and its vector entry."""
    return f"{table}:{fact_id}"


def parse_reference(reference: str) -> tuple[str, int]:
    """Inverse of :func:`make_reference`."""
    table, _, raw_id = reference.rpartition(":")
    try:
        return table, int(raw_id)
    except ValueError:
        raise ValidationError(f"Malformed embedding reference '{reference}'") from None


def _clean_list(values: Any, field_name: str) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        try:
            decoded = json.loads(values)
        except json.JSONDecodeError:
            decoded = [values]
        values = decoded if isinstance(decoded, list) else [values]
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"'{field_name}' must be a list of strings")
    return [str(v).strip() for v in values if str(v).strip()]


def _require(value: Any, field_name: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError(f"'{field_name}' is required")
    return text


# ---------------------------------------------------------------------------
# Fact variants
# ---------------------------------------------------------------------------

class _FactMixin:
    """Behaviour shared by all fact variants."""

    kind: ClassVar[FactKind]
    text_fields: ClassVar[tuple[str, ...]]

    @property
    def table(self) -> str:
        return TABLE_FOR_KIND[self.kind]

    @property
    def reference(self) -> Optional[str]:
        return self.embedding_ref  # type: ignore[attr-defined]

    def embedding_text(self) -> str:
        raise NotImplementedError

    def excerpt(self) -> str:
        return self.embedding_text()[:EXCERPT_CHARS]

    def field_texts(self) -> dict[str, str]:
        """Text-bearing fields, used to explain similarity matches."""
        out: dict[str, str] = {}
        for name in self.text_fields:
            value = getattr(self, name)
            if isinstance(value, list):
                value = ", ".join(value)
            if value:
                out[name] = str(value)
        return out

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        for f in dataclass_fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            data[f.name] = value.value if isinstance(value, Enum) else value
        return data


@dataclass
class Decision(_FactMixin):
    """An architectural decision."""

    kind: ClassVar[FactKind] = FactKind.DECISION
    text_fields: ClassVar[tuple[str, ...]] = ("decision", "context", "impact", "alternatives")

    decision: str
    context: str = ""
    alternatives: list[str] = field(default_factory=list)
    impact: str = ""

    id: Optional[int] = None
    project: str = ""
    created_at: str = ""
    updated_at: str = ""
    embedding_ref: Optional[str] = None

    def validate(self) -> None:
        self.decision = _require(self.decision, "decision")
        self.context = (self.context or "").strip()
        self.impact = (self.impact or "").strip()
        self.alternatives = _clean_list(self.alternatives, "alternatives")

    def embedding_text(self) -> str:
        return f"{self.decision} {self.context or ''}".strip()


@dataclass
class ProgressItem(_FactMixin):
    """A milestone and its current status."""

    kind: ClassVar[FactKind] = FactKind.PROGRESS
    text_fields: ClassVar[tuple[str, ...]] = ("milestone", "notes", "blockers")

    milestone: str
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    notes: str = ""
    blockers: list[str] = field(default_factory=list)

    id: Optional[int] = None
    project: str = ""
    created_at: str = ""
    updated_at: str = ""
    embedding_ref: Optional[str] = None

    def validate(self) -> None:
        self.milestone = _require(self.milestone, "milestone")
        self.status = ProgressStatus.parse(self.status)
        self.notes = (self.notes or "").strip()
        self.blockers = _clean_list(self.blockers, "blockers")

    def embedding_text(self) -> str:
        return f"{self.milestone} {self.notes or ''}".strip()


@dataclass
class CodePattern(_FactMixin):
    """A snippet of source (or any raw text) tagged with its origin."""

    kind: ClassVar[FactKind] = FactKind.PATTERN
    text_fields: ClassVar[tuple[str, ...]] = ("content", "file_path", "language")

    file_path: str
    content: str
    language: str = ""

    id: Optional[int] = None
    project: str = ""
    created_at: str = ""
    updated_at: str = ""
    embedding_ref: Optional[str] = None

    def validate(self) -> None:
        self.file_path = _require(self.file_path, "file_path")
        if self.content is None or not str(self.content).strip():
            raise ValidationError("'content' is required")
        self.language = (self.language or "").strip().lower()

    @property
    def pattern_hash(self) -> str:
        digest = hashlib.sha256(f"{self.file_path}\0{self.content}".encode("utf-8"))
        return digest.hexdigest()[:16]

    def embedding_text(self) -> str:
        return self.content


Fact = Union[Decision, ProgressItem, CodePattern]

_FACT_CLASSES: dict[FactKind, type] = {
    FactKind.DECISION: Decision,
    FactKind.PROGRESS: ProgressItem,
    FactKind.PATTERN: CodePattern,
}


def build_fact(kind: "str | FactKind", fields: dict[str, Any], project: str = "") -> Fact:
    """Construct and validate a fact of *kind* from a plain field mapping.

    Unknown field names are rejected rather than silently dropped.
    """
    table = resolve_table(kind)
    fact_kind = KIND_FOR_TABLE[table]
    cls = _FACT_CLASSES[fact_kind]
    allowed = {
        f.name for f in dataclass_fields(cls)
        if f.name not in ("id", "created_at", "updated_at", "embedding_ref")
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(
            f"Unknown field(s) for {fact_kind.value}: {', '.join(sorted(unknown))}"
        )
    data = dict(fields)
    if project:
        data["project"] = project
    try:
        fact = cls(**data)
    except TypeError as exc:
        raise ValidationError(f"Invalid {fact_kind.value} fields: {exc}") from exc
    fact.validate()
    return fact


# ---------------------------------------------------------------------------
# Persistence-side records
# ---------------------------------------------------------------------------

@dataclass
class Project:
    """A namespace owning facts."""

    id: int
    name: str
    path: str = ""
    created_at: str = ""
    last_accessed: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorEntry:
    """Embedding counterpart of a fact."""

    reference: str
    project: str
    model_id: str
    dimension: int
    vector: list[float]
    text: str = ""


@dataclass(frozen=True)
class ModelPointer:
    """The active embedding model and vector collection for one table."""

    table: str
    model_id: str
    dimension: int
    collection: str
    version: int
    updated_at: str = ""


@dataclass
class WriteResult:
    """Outcome of a coordinated write."""

    kind: FactKind
    fact_id: int
    embedding_ref: str
    project: str
    created: bool = True

    @property
    def table(self) -> str:
        return TABLE_FOR_KIND[self.kind]
