"""Vector index abstraction with a local sqlite-vec implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import sqlite_vec

from kbsync.core.errors import VectorStoreError
from kbsync.core.hashing import serialize_f32

logger = logging.getLogger(__name__)


@dataclass
class VectorRecord:
    """A vector as written to the index."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorIndex(ABC):
    """Abstract base class for vector indexes."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """Insert or replace vectors by id. Returns the number written."""
        ...

    @abstractmethod
    async def delete(self, ids: list[str]) -> int:
        """Delete vectors by id. Unknown ids are ignored."""
        ...

    @abstractmethod
    async def total_vector_count(self) -> int:
        ...

    @abstractmethod
    async def fetch_existing(self, ids: list[str]) -> set[str]:
        """Return the subset of ids present in the index."""
        ...

    @abstractmethod
    async def query(self, vector: list[float], top_k: int = 5) -> list[VectorMatch]:
        ...


VECTORS_SQL = """
CREATE TABLE IF NOT EXISTS index_vectors (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  vector_id TEXT NOT NULL UNIQUE,
  dimensions INTEGER NOT NULL,
  metadata TEXT,
  updated_at TEXT DEFAULT (datetime('now'))
);
"""


class SqliteVecIndex(VectorIndex):
    """Local vector index on sqlite-vec.

    Metadata lives in index_vectors; vectors live in one vec0 table per
    dimension (vec_{dimensions}), keyed by the index_vectors rowid.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._vec_tables: set[int] = set()

    @property
    def name(self) -> str:
        return "sqlite-vec"

    def init(self) -> None:
        self.conn.enable_load_extension(True)
        sqlite_vec.load(self.conn)
        self.conn.enable_load_extension(False)
        self.conn.executescript(VECTORS_SQL)
        self.conn.commit()

    def _ensure_vec_table(self, dimensions: int) -> str:
        table = f"vec_{dimensions}"
        if dimensions not in self._vec_tables:
            self.conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0(embedding float[{dimensions}] distance_metric=cosine)"
            )
            self._vec_tables.add(dimensions)
        return table

    def _remove(self, vector_ids: list[str]) -> int:
        removed = 0
        for i in range(0, len(vector_ids), 500):
            batch = vector_ids[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            cur = self.conn.execute(
                f"SELECT id, dimensions FROM index_vectors WHERE vector_id IN ({placeholders})",
                batch,
            )
            for rowid, dimensions in cur.fetchall():
                table = self._ensure_vec_table(dimensions)
                self.conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (rowid,))
                self.conn.execute("DELETE FROM index_vectors WHERE id = ?", (rowid,))
                removed += 1
        return removed

    async def upsert(self, records: list[VectorRecord]) -> int:
        if not records:
            return 0
        try:
            with self.conn:
                self._remove([r.id for r in records])
                for record in records:
                    dimensions = len(record.values)
                    table = self._ensure_vec_table(dimensions)
                    cur = self.conn.execute(
                        "INSERT INTO index_vectors (vector_id, dimensions, metadata) VALUES (?, ?, ?)",
                        (record.id, dimensions, json.dumps(record.metadata)),
                    )
                    self.conn.execute(
                        f"INSERT INTO {table} (rowid, embedding) VALUES (?, ?)",
                        (cur.lastrowid, serialize_f32(record.values)),
                    )
        except sqlite3.Error as e:
            raise VectorStoreError(f"sqlite-vec upsert failed: {e}", service=self.name) from e
        return len(records)

    async def delete(self, ids: list[str]) -> int:
        if not ids:
            return 0
        try:
            with self.conn:
                return self._remove(list(ids))
        except sqlite3.Error as e:
            raise VectorStoreError(f"sqlite-vec delete failed: {e}", service=self.name) from e

    async def total_vector_count(self) -> int:
        cur = self.conn.execute("SELECT COUNT(*) FROM index_vectors")
        return cur.fetchone()[0]

    async def fetch_existing(self, ids: list[str]) -> set[str]:
        found: set[str] = set()
        for i in range(0, len(ids), 500):
            batch = ids[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            cur = self.conn.execute(
                f"SELECT vector_id FROM index_vectors WHERE vector_id IN ({placeholders})",
                batch,
            )
            found.update(row[0] for row in cur.fetchall())
        return found

    async def query(self, vector: list[float], top_k: int = 5) -> list[VectorMatch]:
        table = self._ensure_vec_table(len(vector))
        cur = self.conn.execute(
            f"""
            SELECT v.vector_id, m.distance, v.metadata
            FROM (
                SELECT rowid, distance FROM {table}
                WHERE embedding MATCH ? AND k = ?
            ) m
            JOIN index_vectors v ON v.id = m.rowid
            ORDER BY m.distance
            """,
            (serialize_f32(vector), top_k),
        )
        return [
            VectorMatch(id=row[0], score=1.0 - row[1], metadata=json.loads(row[2] or "{}"))
            for row in cur.fetchall()
        ]
