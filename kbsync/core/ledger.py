"""Content-hash ledger: authoritative record of what has been embedded.

Tables:
- pages: one row per url with the hash of its last committed content
- chunks: one row per live chunk (superseded chunks are deleted, never versioned)
- ingest_runs: run history
- ingest_lock: single-writer lease so two runs never interleave
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from kbsync.core.errors import IngestionLocked
from kbsync.core.hashing import hash_string

if TYPE_CHECKING:
    from kbsync.core.differ import PagePlan
    from kbsync.core.ingest_job import IngestStats
    from kbsync.providers.content_types import Document

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pages (
  url TEXT PRIMARY KEY,
  content_hash TEXT NOT NULL,
  chunk_count INTEGER NOT NULL DEFAULT 0,
  version INTEGER NOT NULL DEFAULT 0,
  deleted INTEGER NOT NULL DEFAULT 0,
  source_type TEXT,
  category TEXT,
  title TEXT,
  word_count INTEGER DEFAULT 0,
  last_seen_at TEXT,
  last_embedded_at TEXT
);

CREATE TABLE IF NOT EXISTS chunks (
  chunk_id TEXT PRIMARY KEY,
  url TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  text_hash TEXT NOT NULL,
  metadata_snapshot TEXT,
  stored_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pages_url ON pages(url);
CREATE INDEX IF NOT EXISTS idx_chunks_url ON chunks(url);

CREATE TABLE IF NOT EXISTS ingest_runs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  started_at TEXT NOT NULL,
  duration_ms INTEGER,
  stats_json TEXT NOT NULL,
  error TEXT
);

CREATE TABLE IF NOT EXISTS ingest_lock (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  owner TEXT NOT NULL,
  expires_at REAL NOT NULL
);
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PageStatus(str, Enum):
    """Classification of a document against the ledger."""

    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass
class PageRecord:
    url: str
    content_hash: str
    chunk_count: int = 0
    version: int = 0
    deleted: bool = False
    source_type: str | None = None
    category: str | None = None
    title: str | None = None
    word_count: int = 0
    last_seen_at: str | None = None
    last_embedded_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> PageRecord:
        return cls(
            url=row["url"],
            content_hash=row["content_hash"],
            chunk_count=row["chunk_count"] or 0,
            version=row["version"] or 0,
            deleted=bool(row["deleted"]),
            source_type=row["source_type"],
            category=row["category"],
            title=row["title"],
            word_count=row["word_count"] or 0,
            last_seen_at=row["last_seen_at"],
            last_embedded_at=row["last_embedded_at"],
        )


@dataclass
class ChunkRecord:
    chunk_id: str
    url: str
    index: int
    text_hash: str
    metadata_snapshot: dict[str, Any] = field(default_factory=dict)
    stored_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ChunkRecord:
        return cls(
            chunk_id=row["chunk_id"],
            url=row["url"],
            index=row["chunk_index"],
            text_hash=row["text_hash"],
            metadata_snapshot=json.loads(row["metadata_snapshot"] or "{}"),
            stored_at=row["stored_at"],
        )


SNAPSHOT_KEYS = ("source", "sourceType", "title", "category", "chunkIndex", "totalChunks")


@dataclass
class Ledger:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    # ==================== Pages ====================

    def get_page(self, url: str) -> PageRecord | None:
        cur = self.conn.execute("SELECT * FROM pages WHERE url = ?", (url,))
        row = cur.fetchone()
        return PageRecord.from_row(row) if row else None

    def classify(self, document: "Document", existing: PageRecord | None = None) -> PageStatus:
        """NEW if unseen or soft-deleted, MODIFIED if the content hash changed, else UNCHANGED."""
        if existing is None:
            existing = self.get_page(document.url)
        if existing is None or existing.deleted:
            return PageStatus.NEW
        if existing.content_hash != hash_string(document.text):
            return PageStatus.MODIFIED
        return PageStatus.UNCHANGED

    def touch(self, url: str, seen_at: str) -> None:
        """Record that an unchanged page was observed. Hash and version stay as they are."""
        self.conn.execute("UPDATE pages SET last_seen_at = ? WHERE url = ?", (seen_at, url))
        self.conn.commit()

    def live_urls(self) -> set[str]:
        cur = self.conn.execute("SELECT url FROM pages WHERE deleted = 0")
        return {row[0] for row in cur.fetchall()}

    # ==================== Chunks ====================

    def chunk_hashes(self, url: str) -> dict[str, str]:
        """Previous {chunk_id: text_hash} for a url."""
        cur = self.conn.execute("SELECT chunk_id, text_hash FROM chunks WHERE url = ?", (url,))
        return {row[0]: row[1] for row in cur.fetchall()}

    def get_chunks(self, url: str) -> list[ChunkRecord]:
        cur = self.conn.execute(
            "SELECT * FROM chunks WHERE url = ? ORDER BY chunk_index", (url,)
        )
        return [ChunkRecord.from_row(row) for row in cur.fetchall()]

    def chunk_ids_for_urls(self, urls: Iterable[str]) -> list[str]:
        urls = list(urls)
        ids: list[str] = []
        for i in range(0, len(urls), 500):
            batch = urls[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            cur = self.conn.execute(
                f"SELECT chunk_id FROM chunks WHERE url IN ({placeholders}) ORDER BY url, chunk_index",
                batch,
            )
            ids.extend(row[0] for row in cur.fetchall())
        return ids

    # ==================== Commit ====================

    def commit(self, plan: "PagePlan", committed_at: str, embedded: bool = True) -> PageRecord:
        """Write the outcome of a successfully applied plan in one transaction.

        Must only be called after every upsert and stale delete for the page
        succeeded. Inserts chunk rows for the embedded chunks, removes rows
        for stale ids, and upserts the page row with version + 1.
        """
        existing = plan.existing
        version = (existing.version if existing else 0) + 1
        last_embedded_at = committed_at if embedded else (existing.last_embedded_at if existing else None)
        document = plan.document

        with self.conn:
            for chunk in plan.delta.to_embed:
                snapshot = {k: chunk.metadata.get(k) for k in SNAPSHOT_KEYS}
                self.conn.execute(
                    """
                    INSERT INTO chunks (chunk_id, url, chunk_index, text_hash, metadata_snapshot, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(chunk_id) DO UPDATE SET
                        url = excluded.url,
                        chunk_index = excluded.chunk_index,
                        text_hash = excluded.text_hash,
                        metadata_snapshot = excluded.metadata_snapshot,
                        stored_at = excluded.stored_at
                    """,
                    (
                        chunk.chunk_id,
                        document.url,
                        chunk.index,
                        chunk.text_hash,
                        json.dumps(snapshot),
                        committed_at,
                    ),
                )
            self._delete_chunk_rows(plan.delta.to_delete)
            self.conn.execute(
                """
                INSERT INTO pages (
                    url, content_hash, chunk_count, version, deleted, source_type,
                    category, title, word_count, last_seen_at, last_embedded_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    content_hash = excluded.content_hash,
                    chunk_count = excluded.chunk_count,
                    version = excluded.version,
                    deleted = 0,
                    source_type = excluded.source_type,
                    category = excluded.category,
                    title = excluded.title,
                    word_count = excluded.word_count,
                    last_seen_at = excluded.last_seen_at,
                    last_embedded_at = excluded.last_embedded_at
                """,
                (
                    document.url,
                    plan.content_hash,
                    plan.chunk_count,
                    version,
                    document.source_type,
                    document.category,
                    document.title,
                    document.word_count,
                    committed_at,
                    last_embedded_at,
                ),
            )

        return self.get_page(document.url)  # type: ignore[return-value]

    def _delete_chunk_rows(self, chunk_ids: list[str]) -> int:
        deleted = 0
        for i in range(0, len(chunk_ids), 500):
            batch = chunk_ids[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            cur = self.conn.execute(f"DELETE FROM chunks WHERE chunk_id IN ({placeholders})", batch)
            deleted += cur.rowcount
        return deleted

    def mark_deleted(self, urls: Iterable[str], seen_at: str) -> int:
        """Soft-delete pages and drop their chunk rows.

        Callers remove the vectors from the index first.
        """
        urls = list(urls)
        if not urls:
            return 0
        with self.conn:
            chunk_ids = self.chunk_ids_for_urls(urls)
            self._delete_chunk_rows(chunk_ids)
            for url in urls:
                self.conn.execute(
                    "UPDATE pages SET deleted = 1, chunk_count = 0, last_seen_at = ? WHERE url = ?",
                    (seen_at, url),
                )
        return len(urls)

    # ==================== Runs ====================

    def record_run(self, stats: "IngestStats") -> int:
        cur = self.conn.execute(
            "INSERT INTO ingest_runs (started_at, duration_ms, stats_json, error) VALUES (?, ?, ?, ?)",
            (stats.run_started_at, stats.duration_ms, json.dumps(stats.to_dict()), stats.error),
        )
        self.conn.commit()
        return cur.lastrowid

    def list_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        cur = self.conn.execute(
            "SELECT id, started_at, duration_ms, stats_json, error FROM ingest_runs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [
            {
                "id": row[0],
                "started_at": row[1],
                "duration_ms": row[2],
                "stats": json.loads(row[3]),
                "error": row[4],
            }
            for row in cur.fetchall()
        ]

    # ==================== Run lock ====================

    def acquire_run_lock(self, owner: str, lease_seconds: int, now: float | None = None) -> None:
        """Take the single-writer lease, or raise IngestionLocked if another owner holds it."""
        now = time.time() if now is None else now
        with self.conn:
            cur = self.conn.execute("SELECT owner, expires_at FROM ingest_lock WHERE id = 1")
            row = cur.fetchone()
            if row and row[0] != owner and row[1] > now:
                raise IngestionLocked(row[0], row[1])
            self.conn.execute(
                """
                INSERT INTO ingest_lock (id, owner, expires_at) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
                """,
                (owner, now + lease_seconds),
            )
        logger.debug(f"Ingestion lock acquired by {owner} for {lease_seconds}s")

    def release_run_lock(self, owner: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM ingest_lock WHERE id = 1 AND owner = ?", (owner,))

    # ==================== Stats ====================

    def stats(self) -> dict[str, int]:
        cur = self.conn.execute("SELECT COUNT(*) FROM pages WHERE deleted = 0")
        live_pages = cur.fetchone()[0]
        cur = self.conn.execute("SELECT COUNT(*) FROM pages WHERE deleted = 1")
        deleted_pages = cur.fetchone()[0]
        cur = self.conn.execute("SELECT COUNT(*) FROM chunks")
        chunks = cur.fetchone()[0]
        return {"pages": live_pages, "deleted_pages": deleted_pages, "chunks": chunks}


def open_ledger(db_path: str) -> Ledger:
    """Open (and create if needed) the ledger database at db_path."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    ledger = Ledger(conn=conn)
    ledger.init()
    return ledger
