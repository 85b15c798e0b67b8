"""Process-wide wiring: builds the ingestion service and the caches from Settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from kbsync.core.cache_store import open_cache_store
from kbsync.core.embedding_cache import EmbeddingCache
from kbsync.core.ingest_job import IngestionService
from kbsync.core.ledger import Ledger, open_ledger
from kbsync.core.response_cache import ResponseCache
from kbsync.core.settings import Settings
from kbsync.core.vector_index import SqliteVecIndex, VectorIndex
from kbsync.providers.embedding import EmbeddingProvider, get_provider

logger = logging.getLogger(__name__)

VECTOR_INDEXES = ("sqlite", "pinecone")


@dataclass
class Runtime:
    settings: Settings
    ledger: Ledger
    index: VectorIndex
    provider: EmbeddingProvider
    ingestion: IngestionService
    response_cache: ResponseCache
    embedding_cache: EmbeddingCache

    async def question_embedding(self, text: str) -> list[float]:
        """Query-side embedding of a question, served from the embedding cache when possible."""
        return await self.embedding_cache.get_query_embedding(text, self.provider.embed_query)


def build_index(settings: Settings, ledger: Ledger) -> VectorIndex:
    """Local sqlite-vec index sharing the ledger connection, or the remote Pinecone index."""
    name = settings.vector_index.lower()
    if name == "sqlite":
        index = SqliteVecIndex(ledger.conn)
        index.init()
        return index
    if name == "pinecone":
        from kbsync.providers.pinecone import PineconeIndex

        return PineconeIndex(namespace=os.getenv("PINECONE_NAMESPACE", ""))
    raise ValueError(f"Unknown VECTOR_INDEX: {settings.vector_index}. Available: {list(VECTOR_INDEXES)}")


def build_runtime(settings: Settings | None = None) -> Runtime:
    s = settings or Settings.from_env()
    db_dir = os.path.dirname(s.db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    ledger = open_ledger(s.db_path)
    index = build_index(s, ledger)
    provider = get_provider(s.embedding_provider, s.embedding_model or None)
    # Separate stores: embedding entries must never take LRU slots from cached answers
    response_store = open_cache_store(s.cache_db_path, s.response_cache_max_items, s.redis_url)
    embedding_store = open_cache_store(s.cache_db_path, s.embedding_cache_max_items, s.redis_url)

    logger.info(
        f"Runtime ready: env={s.app_env}, index={index.name}, provider={provider.model_key}, "
        f"cache={response_store.name}, stale_pages={s.stale_page_policy}"
    )
    return Runtime(
        settings=s,
        ledger=ledger,
        index=index,
        provider=provider,
        ingestion=IngestionService(ledger, index, provider, s),
        response_cache=ResponseCache.from_settings(s, response_store, provider.model_key),
        embedding_cache=EmbeddingCache.from_settings(s, embedding_store, provider.model_key),
    )


_runtime: Runtime | None = None


def init_runtime(settings: Settings | None = None) -> Runtime:
    global _runtime
    _runtime = build_runtime(settings)
    return _runtime


def get_runtime() -> Runtime:
    assert _runtime is not None, "Runtime not initialized"
    return _runtime
