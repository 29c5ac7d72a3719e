"""
SQLite-backed vector index for fact embeddings.

Stores embedding vectors in SQLite and computes cosine (or euclidean)
distances with numpy.  Entries live in named collections; every entry of a
collection shares the collection's model and dimension, which is enforced
on upsert.  One collection per ``(table, model, version)`` lets a migration
stage a complete replacement before the active pointer is swapped.

Storage: ``<data_dir>/vectors.db``
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from typing import Iterable, Optional

import numpy as np

from ..errors import StorageError, ValidationError
from .models import VectorEntry, now_iso

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    name        TEXT    PRIMARY KEY,
    table_name  TEXT    NOT NULL,
    model_id    TEXT    NOT NULL,
    dimension   INTEGER NOT NULL,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS vectors (
    collection  TEXT    NOT NULL REFERENCES collections(name) ON DELETE CASCADE,
    reference   TEXT    NOT NULL,
    project     TEXT    NOT NULL,
    vector      BLOB    NOT NULL,
    text        TEXT    NOT NULL DEFAULT '',
    PRIMARY KEY (collection, reference)
);

CREATE INDEX IF NOT EXISTS idx_vectors_project ON vectors(collection, project);
"""

_SLUG_RE = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def collection_name(table: str, model_id: str, version: int) -> str:
    """Deterministic collection name for *table* embedded with *model_id*."""
    slug = _SLUG_RE.sub("_", model_id.lower()).strip("_")
    return f"{table}__{slug}__v{version}"


def _vec_to_bytes(vec: "list[float] | np.ndarray") -> bytes:
    """Serialise a float list to compact bytes via numpy."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    """Deserialise bytes back to a vector."""
    return np.frombuffer(buf, dtype=np.float32).copy()


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine distance between *query* (1-D) and each row of *matrix*, clipped to [0, 1]."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.ones(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    similarity = (matrix @ query) / (row_norms * query_norm)
    return np.clip(1.0 - similarity, 0.0, 1.0)


def l2_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Euclidean distance between *query* and each row of *matrix*."""
    return np.linalg.norm(matrix - query, axis=1)


_METRICS = {
    "cosine": cosine_distances,
    "l2": l2_distances,
}


# ---------------------------------------------------------------------------
# SQLiteVectorIndex
# ---------------------------------------------------------------------------

class SQLiteVectorIndex:
    """Local vector index backed by SQLite + numpy distance computation.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        """Create the database and tables if missing."""
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        with self._lock:
            conn = self._get_conn()
            try:
                conn.executescript(_SCHEMA)
                conn.commit()
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot initialise {self._db_path}: {exc}") from exc

    def _get_conn(self) -> sqlite3.Connection:
        """Lazy connection; callers hold ``self._lock``."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")
                self._conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as exc:
                self._conn = None
                raise StorageError(f"Cannot open {self._db_path}: {exc}") from exc
        return self._conn

    def _write(self, sql: str, params: Iterable = ()) -> int:
        """Run one write statement and commit; return the affected row count."""
        with self._lock:
            conn = self._get_conn()
            try:
                cur = conn.execute(sql, tuple(params))
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StorageError(f"Vector index failure: {exc}") from exc
            return cur.rowcount

    def _read(self, sql: str, params: Iterable = ()) -> list[tuple]:
        with self._lock:
            conn = self._get_conn()
            try:
                return conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Vector index failure: {exc}") from exc

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    logger.debug("Error closing %s", self._db_path, exc_info=True)
                self._conn = None

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def create_collection(self, name: str, table: str, model_id: str, dimension: int) -> None:
        """Create collection *name*; a no-op if it exists with the same model.

        Raises
        ------
        ValidationError
            If the collection exists with a different model or dimension.
        """
        existing = self.get_collection(name)
        if existing is not None:
            if existing["model_id"] != model_id or existing["dimension"] != dimension:
                raise ValidationError(
                    f"Collection '{name}' already holds {existing['model_id']} "
                    f"({existing['dimension']}d) vectors"
                )
            return
        self._write(
            "INSERT INTO collections (name, table_name, model_id, dimension, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (name, table, model_id, int(dimension), now_iso()),
        )
        logger.debug("Created vector collection %s (%s, %dd)", name, model_id, dimension)

    def get_collection(self, name: str) -> Optional[dict]:
        rows = self._read(
            "SELECT name, table_name, model_id, dimension FROM collections WHERE name = ?",
            (name,),
        )
        if not rows:
            return None
        name, table, model_id, dimension = rows[0]
        return {"name": name, "table": table, "model_id": model_id, "dimension": dimension}

    def list_collections(self) -> list[dict]:
        rows = self._read(
            "SELECT c.name, c.table_name, c.model_id, c.dimension, COUNT(v.reference) "
            "FROM collections c LEFT JOIN vectors v ON v.collection = c.name "
            "GROUP BY c.name ORDER BY c.name"
        )
        return [
            {"name": n, "table": t, "model_id": m, "dimension": d, "points_count": c}
            for n, t, m, d, c in rows
        ]

    def drop_collection(self, name: str) -> None:
        """Delete collection *name* and all of its entries."""
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute("DELETE FROM vectors WHERE collection = ?", (name,))
                conn.execute("DELETE FROM collections WHERE name = ?", (name,))
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StorageError(f"Vector index failure: {exc}") from exc
        logger.debug("Dropped vector collection %s", name)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def upsert(self, collection: str, entries: list[VectorEntry]) -> None:
        """Insert or replace entries of *collection*.

        Raises
        ------
        ValidationError
            If the collection is unknown, or an entry's model or dimension
            differs from the collection's.  Nothing is written in that case.
        """
        if not entries:
            return
        info = self.get_collection(collection)
        if info is None:
            raise ValidationError(f"Unknown vector collection '{collection}'")
        rows = []
        for entry in entries:
            if entry.model_id != info["model_id"]:
                raise ValidationError(
                    f"Entry {entry.reference} was embedded with {entry.model_id}, "
                    f"collection '{collection}' holds {info['model_id']}"
                )
            if entry.dimension != info["dimension"] or len(entry.vector) != info["dimension"]:
                raise ValidationError(
                    f"Entry {entry.reference} has dimension {len(entry.vector)}, "
                    f"collection '{collection}' requires {info['dimension']}"
                )
            rows.append((collection, entry.reference, entry.project,
                         _vec_to_bytes(entry.vector), entry.text))
        with self._lock:
            conn = self._get_conn()
            try:
                conn.executemany(
                    "INSERT OR REPLACE INTO vectors (collection, reference, project, vector, text) "
                    "VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StorageError(f"Vector index failure: {exc}") from exc
        logger.debug("Upserted %d vector(s) into %s", len(rows), collection)

    def get(self, collection: str, reference: str) -> Optional[VectorEntry]:
        rows = self._read(
            "SELECT v.reference, v.project, c.model_id, c.dimension, v.vector, v.text "
            "FROM vectors v JOIN collections c ON c.name = v.collection "
            "WHERE v.collection = ? AND v.reference = ?",
            (collection, reference),
        )
        if not rows:
            return None
        ref, project, model_id, dimension, blob, text = rows[0]
        return VectorEntry(
            reference=ref,
            project=project,
            model_id=model_id,
            dimension=dimension,
            vector=_bytes_to_vec(blob).tolist(),
            text=text,
        )

    def delete(self, collection: str, references: list[str]) -> int:
        """Delete entries by reference; return how many were removed."""
        if not references:
            return 0
        placeholders = ",".join("?" for _ in references)
        removed = self._write(
            f"DELETE FROM vectors WHERE collection = ? AND reference IN ({placeholders})",
            (collection, *references),
        )
        logger.debug("Deleted %d vector(s) from %s", removed, collection)
        return removed

    def references(self, collection: str, among: Optional[list[str]] = None) -> set[str]:
        """References stored in *collection*, restricted to *among* when given."""
        if among is None:
            rows = self._read(
                "SELECT reference FROM vectors WHERE collection = ?", (collection,)
            )
            return {r[0] for r in rows}
        if not among:
            return set()
        placeholders = ",".join("?" for _ in among)
        rows = self._read(
            f"SELECT reference FROM vectors WHERE collection = ? "
            f"AND reference IN ({placeholders})",
            (collection, *among),
        )
        return {r[0] for r in rows}

    def count(self, collection: str) -> int:
        rows = self._read(
            "SELECT COUNT(*) FROM vectors WHERE collection = ?", (collection,)
        )
        return rows[0][0] if rows else 0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        collection: str,
        query_vector: list[float],
        project: str,
        top_k: int = 10,
        references: Optional[list[str]] = None,
        metric: str = "cosine",
    ) -> list[dict]:
        """Nearest-neighbour search within one project's entries.

        Parameters
        ----------
        collection:
            Collection to search.
        query_vector:
            The query embedding; must match the collection dimension.
        project:
            Only entries of this project are considered.
        top_k:
            Number of results to return.
        references:
            Optional allow-list of references to restrict the search to.
        metric:
            ``"cosine"`` or ``"l2"``.

        Returns
        -------
        list[dict]
            Each dict has ``reference``, ``distance`` (ascending) and ``text``.
        """
        info = self.get_collection(collection)
        if info is None:
            return []
        if len(query_vector) != info["dimension"]:
            raise ValidationError(
                f"Query vector has dimension {len(query_vector)}, "
                f"collection '{collection}' requires {info['dimension']}"
            )
        distance_fn = _METRICS.get(metric)
        if distance_fn is None:
            raise ValidationError(f"Unknown distance metric '{metric}'")

        sql = "SELECT reference, vector, text FROM vectors WHERE collection = ? AND project = ?"
        params: list = [collection, project]
        if references is not None:
            if not references:
                return []
            sql += f" AND reference IN ({','.join('?' for _ in references)})"
            params.extend(references)
        rows = self._read(sql, params)
        if not rows:
            return []

        query_arr = np.asarray(query_vector, dtype=np.float32)
        matrix = np.stack([_bytes_to_vec(row[1]) for row in rows])
        distances = distance_fn(query_arr, matrix)

        # Get top-k indices
        if len(distances) <= top_k:
            top_indices = np.argsort(distances, kind="stable")
        else:
            top_indices = np.argpartition(distances, top_k)[:top_k]
            top_indices = top_indices[np.argsort(distances[top_indices], kind="stable")]

        return [
            {
                "reference": rows[idx][0],
                "distance": float(distances[idx]),
                "text": rows[idx][2],
            }
            for idx in top_indices
        ]
