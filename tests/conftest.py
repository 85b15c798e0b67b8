"""Shared fixtures: in-memory ledger + sqlite-vec index, fake embedding provider."""

import hashlib
import sqlite3
from dataclasses import replace

import pytest

from kbsync.core.errors import EmbeddingError
from kbsync.core.ledger import Ledger
from kbsync.core.reconciler import BatchPacer
from kbsync.core.settings import Settings
from kbsync.core.vector_index import SqliteVecIndex, VectorIndex, VectorMatch, VectorRecord
from kbsync.providers.embedding import EmbeddingProvider


class FakeProvider(EmbeddingProvider):
    """Deterministic 4-dimensional embeddings derived from the text hash."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    @property
    def name(self) -> str:
        return "Fake"

    @property
    def model_id(self) -> str:
        return "fake-4"

    @property
    def dimensions(self) -> int:
        return 4

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(list(texts))
        return [
            [b / 255 + 0.01 for b in hashlib.sha256(t.encode("utf-8")).digest()[:4]]
            for t in texts
        ]

    @property
    def embedded_texts(self) -> list[str]:
        return [t for batch in self.calls for t in batch]

    def fail_retriable(self) -> None:
        self.fail_with = EmbeddingError("rate limited", provider=self.name, retriable=True)

    def fail_fatal(self) -> None:
        self.fail_with = EmbeddingError("API key invalid", provider=self.name, retriable=False)

    def recover(self) -> None:
        self.fail_with = None


class FakeIndex(VectorIndex):
    """In-memory index that records the order of calls."""

    def __init__(self):
        self.vectors: dict[str, VectorRecord] = {}
        self.log: list[str] = []
        self.upsert_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.fetch_error: Exception | None = None

    @property
    def name(self) -> str:
        return "fake"

    async def upsert(self, records):
        self.log.append("upsert")
        if self.upsert_error is not None:
            raise self.upsert_error
        for record in records:
            self.vectors[record.id] = record
        return len(records)

    async def delete(self, ids):
        self.log.append("delete")
        if self.delete_error is not None:
            raise self.delete_error
        for chunk_id in ids:
            self.vectors.pop(chunk_id, None)
        return len(ids)

    async def total_vector_count(self):
        self.log.append("count")
        return len(self.vectors)

    async def fetch_existing(self, ids):
        if self.fetch_error is not None:
            raise self.fetch_error
        return {chunk_id for chunk_id in ids if chunk_id in self.vectors}

    async def query(self, vector, top_k=5):
        return [VectorMatch(id=k, score=1.0) for k in list(self.vectors)[:top_k]]


@pytest.fixture
def db_conn():
    """In-memory SQLite connection shared by the ledger and the local index."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    yield conn
    conn.close()


@pytest.fixture
def ledger(db_conn):
    ledger = Ledger(conn=db_conn)
    ledger.init()
    return ledger


@pytest.fixture
def vec_index(db_conn, ledger):
    index = SqliteVecIndex(db_conn)
    index.init()
    return index


@pytest.fixture
def fake_index():
    return FakeIndex()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def pacer():
    """No sleeping between batches, not even after failures."""
    return BatchPacer(min_delay=0.0, max_delay=0.0)


def make_settings(**overrides) -> Settings:
    base = Settings(
        app_env="test",
        db_path=":memory:",
        cache_db_path="",
        redis_url="",
        embedding_provider="openai",
        embedding_model="",
        vector_index="sqlite",
        embed_batch_size=32,
        delete_batch_size=500,
        batch_delay_seconds=0.0,
        chunk_size=1200,
        chunk_overlap=300,
        min_text_chars=1,
        metadata_text_bytes=1000,
        stale_page_policy="keep",
        ingest_lock_lease_seconds=3600,
        response_cache_namespace="resp:v1",
        response_cache_lsh_bits=16,
        response_cache_lsh_radius=1,
        response_cache_sim_threshold=0.92,
        response_cache_ttl_seconds=7 * 24 * 3600,
        response_cache_max_candidates=200,
        response_cache_max_items=1000,
        embedding_cache_namespace="emb:v1",
        embedding_cache_ttl_seconds=30 * 24 * 3600,
        embedding_cache_max_items=5000,
    )
    return replace(base, **overrides)
