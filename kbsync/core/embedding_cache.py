"""Exact-match cache of question text -> query embedding."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from kbsync.core.cache_store import CacheStore, MemoryStore
from kbsync.core.errors import CacheBackendUnavailable
from kbsync.core.hashing import b64_to_vector, hash_string, normalize_query, vector_to_b64

logger = logging.getLogger(__name__)

ComputeFn = Callable[[str], Awaitable[list[float]]]


class EmbeddingCache:
    """Literal-question deduplication for query embeddings.

    Keys are scoped by namespace and model key, so switching embedding
    models never serves a vector from another model's space.
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        model_key: str = "default",
        namespace: str = "emb:v1",
        ttl_seconds: int = 30 * 24 * 3600,
    ) -> None:
        self.store = store or MemoryStore()
        self.model_key = model_key
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_settings(cls, settings, store: CacheStore, model_key: str) -> EmbeddingCache:
        return cls(
            store=store,
            model_key=model_key,
            namespace=settings.embedding_cache_namespace,
            ttl_seconds=settings.embedding_cache_ttl_seconds,
        )

    def key_for_query(self, text: str) -> str:
        digest = hash_string(normalize_query(text))[:32]
        return f"{self.namespace}:{self.model_key}:{digest}"

    async def get_query_embedding(self, text: str, compute_fn: ComputeFn) -> list[float]:
        """Return the cached embedding for text, computing and storing it on a miss.

        Args:
            text: Raw question text.
            compute_fn: Async callable producing the embedding for text.

        Returns:
            The embedding vector. An unavailable cache backend never fails the
            call; the vector is computed and returned uncached.
        """
        key = self.key_for_query(text)
        try:
            cached = await self.store.get(key)
        except CacheBackendUnavailable as e:
            logger.warning(f"Embedding cache read failed: {e}")
            cached = None
        if cached is not None:
            self.hits += 1
            logger.debug(f"Embedding cache HIT key={key}")
            return b64_to_vector(cached)

        self.misses += 1
        vector = [float(x) for x in await compute_fn(text)]
        try:
            await self.store.set(key, vector_to_b64(vector), self.ttl_seconds)
            logger.debug(f"Embedding cache SET key={key} dim={len(vector)}")
        except CacheBackendUnavailable as e:
            logger.warning(f"Embedding cache write failed: {e}")
        return vector

    async def inspect(self, text: str) -> dict[str, Any]:
        """Describe the cache entry a question maps to, without computing anything."""
        key = self.key_for_query(text)
        try:
            cached = await self.store.get(key)
        except CacheBackendUnavailable as e:
            logger.warning(f"Embedding cache read failed: {e}")
            cached = None
        vector = b64_to_vector(cached) if cached is not None else None
        return {
            "key": key,
            "normalized": normalize_query(text),
            "cached": vector is not None,
            "dim": len(vector) if vector is not None else None,
            "vector": vector,
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "backend": self.store.name,
            "namespace": self.namespace,
            "model_key": self.model_key,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }
