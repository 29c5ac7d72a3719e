"""
SQLite-backed relational store for project facts.

Holds the ``projects`` table, one table per fact kind with an FTS5 index
kept in sync by triggers, and the ``embedding_models`` table recording the
active embedding model (and vector collection) of each fact table.

Storage: ``<data_dir>/memory.db``
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from ..errors import StorageError, ValidationError
from .models import (
    TABLES,
    CodePattern,
    Decision,
    Fact,
    ModelPointer,
    ProgressItem,
    ProgressStatus,
    Project,
    now_iso,
    resolve_table,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT    UNIQUE NOT NULL,
    path          TEXT    NOT NULL DEFAULT '',
    created_at    TEXT    NOT NULL,
    last_accessed TEXT    NOT NULL,
    metadata      TEXT    NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS decisions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id    INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    decision      TEXT    NOT NULL,
    context       TEXT    NOT NULL DEFAULT '',
    alternatives  TEXT    NOT NULL DEFAULT '[]',
    impact        TEXT    NOT NULL DEFAULT '',
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL,
    embedding_ref TEXT    DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS progress (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id    INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    milestone     TEXT    NOT NULL,
    status        TEXT    NOT NULL DEFAULT 'not_started'
                  CHECK (status IN ('not_started', 'in_progress', 'testing',
                                    'completed', 'blocked')),
    notes         TEXT    NOT NULL DEFAULT '',
    blockers      TEXT    NOT NULL DEFAULT '[]',
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL,
    embedding_ref TEXT    DEFAULT NULL,
    UNIQUE (project_id, milestone)
);

CREATE TABLE IF NOT EXISTS code_patterns (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id    INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    file_path     TEXT    NOT NULL,
    content       TEXT    NOT NULL,
    language      TEXT    NOT NULL DEFAULT '',
    pattern_hash  TEXT    NOT NULL,
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL,
    embedding_ref TEXT    DEFAULT NULL,
    UNIQUE (project_id, pattern_hash)
);

CREATE TABLE IF NOT EXISTS embedding_models (
    table_name  TEXT    PRIMARY KEY,
    model_id    TEXT    NOT NULL,
    dimension   INTEGER NOT NULL,
    collection  TEXT    NOT NULL,
    version     INTEGER NOT NULL DEFAULT 1,
    updated_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_decisions_project ON decisions(project_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_progress_project  ON progress(project_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_patterns_project  ON code_patterns(project_id, updated_at);
"""

# table -> columns indexed by FTS5
_FTS_COLUMNS: dict[str, tuple[str, ...]] = {
    "decisions": ("decision", "context", "impact", "alternatives"),
    "progress": ("milestone", "notes", "blockers"),
    "code_patterns": ("file_path", "content", "language"),
}

# table -> writable columns, in insert order
_COLUMNS: dict[str, tuple[str, ...]] = {
    "decisions": ("decision", "context", "alternatives", "impact"),
    "progress": ("milestone", "status", "notes", "blockers"),
    "code_patterns": ("file_path", "content", "language", "pattern_hash"),
}

_JSON_COLUMNS = {"alternatives", "blockers"}

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _fts_schema(table: str) -> str:
    cols = _FTS_COLUMNS[table]
    col_list = ", ".join(cols)
    new_vals = ", ".join(f"new.{c}" for c in cols)
    old_vals = ", ".join(f"old.{c}" for c in cols)
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS {table}_fts
USING fts5({col_list}, content='{table}', content_rowid='id');

CREATE TRIGGER IF NOT EXISTS {table}_ai AFTER INSERT ON {table} BEGIN
    INSERT INTO {table}_fts(rowid, {col_list}) VALUES (new.id, {new_vals});
END;

CREATE TRIGGER IF NOT EXISTS {table}_ad AFTER DELETE ON {table} BEGIN
    INSERT INTO {table}_fts({table}_fts, rowid, {col_list})
    VALUES ('delete', old.id, {old_vals});
END;

CREATE TRIGGER IF NOT EXISTS {table}_au AFTER UPDATE OF {col_list} ON {table} BEGIN
    INSERT INTO {table}_fts({table}_fts, rowid, {col_list})
    VALUES ('delete', old.id, {old_vals});
    INSERT INTO {table}_fts(rowid, {col_list}) VALUES (new.id, {new_vals});
END;
"""


def build_match_expression(text: str) -> str:
    """Turn free text into an FTS5 ``MATCH`` expression.

    Every word token becomes a quoted term and the terms are OR-ed, so
    FTS5 operators typed by the user are never interpreted.  Returns an
    empty string when the text has no word tokens.
    """
    tokens: list[str] = []
    for token in _TOKEN_RE.findall(text.lower()):
        if token not in tokens:
            tokens.append(token)
    return " OR ".join(f'"{t}"' for t in tokens)


def _encode(column: str, value):
    if column in _JSON_COLUMNS:
        return json.dumps(list(value or []))
    if isinstance(value, ProgressStatus):
        return value.value
    return value


def _row_to_fact(table: str, row: sqlite3.Row) -> Fact:
    common = dict(
        id=row["id"],
        project=row["project_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        embedding_ref=row["embedding_ref"],
    )
    if table == "decisions":
        return Decision(
            decision=row["decision"],
            context=row["context"],
            alternatives=json.loads(row["alternatives"] or "[]"),
            impact=row["impact"],
            **common,
        )
    if table == "progress":
        return ProgressItem(
            milestone=row["milestone"],
            status=ProgressStatus(row["status"]),
            notes=row["notes"],
            blockers=json.loads(row["blockers"] or "[]"),
            **common,
        )
    return CodePattern(
        file_path=row["file_path"],
        content=row["content"],
        language=row["language"],
        **common,
    )


class RelationalStore:
    """
    SQLite store for projects, facts and active-model pointers.

    Every public method opens its own connection.  Methods taking a
    ``conn`` argument participate in a caller-owned transaction obtained
    from :meth:`transaction`.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_db()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connected SQLite connection with WAL mode for concurrency."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=10)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ValidationError(f"Constraint violated: {exc}") from exc
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"Relational store failure: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables, FTS indexes and triggers."""
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
            for table in TABLES:
                conn.executescript(_fts_schema(table))

    @staticmethod
    def _select(table: str) -> str:
        return (
            f"SELECT t.*, p.name AS project_name FROM {table} t "
            f"JOIN projects p ON p.id = t.project_id"
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work is committed on clean exit and
        rolled back on any exception."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def ensure_project(self, conn: sqlite3.Connection, name: str, path: str = "") -> int:
        """Return the id of project *name*, creating it when missing."""
        ts = now_iso()
        row = conn.execute("SELECT id FROM projects WHERE name = ?", (name,)).fetchone()
        if row is not None:
            conn.execute(
                "UPDATE projects SET last_accessed = ? WHERE id = ?", (ts, row["id"])
            )
            return row["id"]
        cur = conn.execute(
            "INSERT INTO projects (name, path, created_at, last_accessed, metadata) "
            "VALUES (?, ?, ?, ?, '{}')",
            (name, path, ts, ts),
        )
        logger.info("Created project '%s'", name)
        return cur.lastrowid

    def get_project(self, name: str) -> Optional[Project]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM projects WHERE name = ?", (name,)).fetchone()
        return self._row_to_project(row) if row is not None else None

    def list_projects(self) -> list[Project]:
        """All projects, most recently accessed first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM projects ORDER BY last_accessed DESC"
            ).fetchall()
        return [self._row_to_project(r) for r in rows]

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        try:
            metadata = json.loads(row["metadata"] or "{}")
        except json.JSONDecodeError:
            metadata = {}
        return Project(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            created_at=row["created_at"],
            last_accessed=row["last_accessed"],
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Fact writes (caller-owned transaction)
    # ------------------------------------------------------------------

    def insert_fact(self, conn: sqlite3.Connection, project_id: int, fact: Fact) -> int:
        """Insert *fact* and return its new id.  Sets timestamps on *fact*."""
        table = fact.table
        cols = _COLUMNS[table]
        values = [_encode(c, getattr(fact, c)) for c in cols]
        ts = now_iso()
        placeholders = ", ".join("?" for _ in range(len(cols) + 3))
        cur = conn.execute(
            f"INSERT INTO {table} (project_id, {', '.join(cols)}, created_at, updated_at) "
            f"VALUES ({placeholders})",
            (project_id, *values, ts, ts),
        )
        fact.id = cur.lastrowid
        fact.created_at = fact.updated_at = ts
        logger.debug("Inserted %s row %d", table, fact.id)
        return fact.id

    def update_fact(self, conn: sqlite3.Connection, fact: Fact) -> None:
        """Overwrite the kind-specific columns of an existing row."""
        if fact.id is None:
            raise ValidationError("Cannot update a fact without an id")
        table = fact.table
        cols = _COLUMNS[table]
        assignments = ", ".join(f"{c} = ?" for c in cols)
        ts = now_iso()
        conn.execute(
            f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?",
            (*[_encode(c, getattr(fact, c)) for c in cols], ts, fact.id),
        )
        fact.updated_at = ts
        logger.debug("Updated %s row %d", table, fact.id)

    def set_embedding_ref(
        self, conn: sqlite3.Connection, table: str, fact_id: int, reference: Optional[str]
    ) -> None:
        conn.execute(
            f"UPDATE {table} SET embedding_ref = ? WHERE id = ?", (reference, fact_id)
        )

    def delete_fact(self, conn: sqlite3.Connection, table: str, fact_id: int,
                    project: str) -> Optional[str]:
        """Delete a row scoped to *project*.

        Returns
        -------
        Optional[str]
            The deleted row's embedding reference, or ``None`` when no row
            matched.
        """
        row = conn.execute(
            f"SELECT t.id, t.embedding_ref FROM {table} t "
            f"JOIN projects p ON p.id = t.project_id WHERE t.id = ? AND p.name = ?",
            (fact_id, project),
        ).fetchone()
        if row is None:
            return None
        conn.execute(f"DELETE FROM {table} WHERE id = ?", (fact_id,))
        logger.debug("Deleted %s row %d", table, fact_id)
        return row["embedding_ref"] or ""

    def find_progress(self, conn: sqlite3.Connection, project: str,
                      milestone: str) -> Optional[ProgressItem]:
        """The progress row of *project* tracking *milestone*, if any."""
        row = conn.execute(
            self._select("progress") + " WHERE p.name = ? AND t.milestone = ?",
            (project, milestone),
        ).fetchone()
        return _row_to_fact("progress", row) if row is not None else None  # type: ignore[return-value]

    def find_pattern(self, project: str, pattern_hash: str) -> Optional[CodePattern]:
        """The stored pattern of *project* with the same origin and content, if any."""
        with self._connect() as conn:
            row = conn.execute(
                self._select("code_patterns") + " WHERE p.name = ? AND t.pattern_hash = ?",
                (project, pattern_hash),
            ).fetchone()
        return _row_to_fact("code_patterns", row) if row is not None else None  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Fact reads
    # ------------------------------------------------------------------

    def get_fact(self, table: str, fact_id: int, project: Optional[str] = None) -> Optional[Fact]:
        """Return one fact, optionally scoped to *project*."""
        table = resolve_table(table)
        sql = self._select(table) + " WHERE t.id = ?"
        params: list = [fact_id]
        if project is not None:
            sql += " AND p.name = ?"
            params.append(project)
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _row_to_fact(table, row) if row is not None else None

    def get_facts(self, table: str, fact_ids: list[int], project: str) -> dict[int, Fact]:
        """Fetch several facts of one table by id, keyed by id."""
        if not fact_ids:
            return {}
        table = resolve_table(table)
        placeholders = ",".join("?" for _ in fact_ids)
        with self._connect() as conn:
            rows = conn.execute(
                self._select(table) + f" WHERE t.id IN ({placeholders}) AND p.name = ?",
                (*fact_ids, project),
            ).fetchall()
        return {r["id"]: _row_to_fact(table, r) for r in rows}

    def list_facts(self, table: str, project: str, limit: Optional[int] = None) -> list[Fact]:
        """Facts of *project*, most recently updated first."""
        table = resolve_table(table)
        sql = self._select(table) + " WHERE p.name = ? ORDER BY t.updated_at DESC, t.id DESC"
        params: list = [project]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_fact(table, r) for r in rows]

    def all_facts(self, table: str) -> list[Fact]:
        """Every fact of *table* across all projects, oldest first."""
        table = resolve_table(table)
        with self._connect() as conn:
            rows = conn.execute(self._select(table) + " ORDER BY t.id").fetchall()
        return [_row_to_fact(table, r) for r in rows]

    def fact_ids(self, table: str) -> set[int]:
        table = resolve_table(table)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT id FROM {table}").fetchall()
        return {r["id"] for r in rows}

    def count(self, table: str, project: Optional[str] = None) -> int:
        table = resolve_table(table)
        with self._connect() as conn:
            if project is None:
                row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {table} t JOIN projects p "
                    f"ON p.id = t.project_id WHERE p.name = ?",
                    (project,),
                ).fetchone()
        return row[0] if row else 0

    def embedding_refs(self, table: str) -> dict[int, Optional[str]]:
        """Map of fact id to stored embedding reference for *table*."""
        table = resolve_table(table)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT id, embedding_ref FROM {table}").fetchall()
        return {r["id"]: r["embedding_ref"] for r in rows}

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def keyword_search(self, table: str, text: str, project: str,
                       limit: int) -> list[tuple[Fact, float]]:
        """
        FTS5 search over one table, scoped to *project*.

        Parameters
        ----------
        table:
            Fact table name.
        text:
            Free query text; see :func:`build_match_expression`.
        project:
            Project name.
        limit:
            Maximum number of rows.

        Returns
        -------
        list[tuple[Fact, float]]
            ``(fact, raw_score)`` pairs, best first.  The raw score is the
            negated BM25 rank, so larger is better.
        """
        table = resolve_table(table)
        expression = build_match_expression(text)
        if not expression:
            return []
        sql = (
            f"SELECT t.*, p.name AS project_name, bm25({table}_fts) AS rank "
            f"FROM {table}_fts "
            f"JOIN {table} t ON t.id = {table}_fts.rowid "
            f"JOIN projects p ON p.id = t.project_id "
            f"WHERE {table}_fts MATCH ? AND p.name = ? "
            f"ORDER BY rank LIMIT ?"
        )
        with self._connect() as conn:
            rows = conn.execute(sql, (expression, project, int(limit))).fetchall()
        logger.debug("Keyword search on %s matched %d row(s)", table, len(rows))
        return [(_row_to_fact(table, r), -float(r["rank"])) for r in rows]

    # ------------------------------------------------------------------
    # Active model pointers
    # ------------------------------------------------------------------

    def get_pointer(self, table: str) -> Optional[ModelPointer]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM embedding_models WHERE table_name = ?", (table,)
            ).fetchone()
        if row is None:
            return None
        return ModelPointer(
            table=row["table_name"],
            model_id=row["model_id"],
            dimension=row["dimension"],
            collection=row["collection"],
            version=row["version"],
            updated_at=row["updated_at"],
        )

    def init_pointer(self, table: str, model_id: str, dimension: int,
                     collection: str) -> ModelPointer:
        """Create the pointer for *table* unless one exists; return the stored one."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO embedding_models "
                "(table_name, model_id, dimension, collection, version, updated_at) "
                "VALUES (?, ?, ?, ?, 1, ?)",
                (table, model_id, dimension, collection, now_iso()),
            )
        pointer = self.get_pointer(table)
        assert pointer is not None
        return pointer

    def swap_pointer(self, table: str, expected_version: int, model_id: str,
                     dimension: int, collection: str) -> bool:
        """Compare-and-swap the pointer of *table*.

        Returns
        -------
        bool
            ``False`` if the stored version no longer equals
            *expected_version* (nothing is changed).
        """
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE embedding_models SET model_id = ?, dimension = ?, "
                "collection = ?, version = version + 1, updated_at = ? "
                "WHERE table_name = ? AND version = ?",
                (model_id, dimension, collection, now_iso(), table, expected_version),
            )
            swapped = cur.rowcount == 1
        if swapped:
            logger.info("Active model of %s is now %s (%s)", table, model_id, collection)
        return swapped
