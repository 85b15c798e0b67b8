"""Semantic response cache: serves near-duplicate questions from earlier answers.

Lookup uses random-hyperplane LSH. Each stored answer is indexed under the
B-bit signature of its question vector; a query enumerates the signatures
within a small Hamming radius of its own, collects the ids in those buckets
and scores them by exact cosine similarity. The false-negative rate is
tuned by (bits, radius, threshold).

The hyperplanes are never persisted. They are regenerated from a seed
derived from (namespace, model key, dimension), so every process and every
restart computes the same signatures.
"""

from __future__ import annotations

import json
import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import combinations
from typing import Any

from kbsync.core.cache_store import CacheStore, MemoryStore
from kbsync.core.errors import CacheBackendUnavailable
from kbsync.core.hashing import b64_to_vector, hash_string, stable_hash, vector_to_b64

logger = logging.getLogger(__name__)

MAX_BUCKET_SIZE = 1000


def dot(a: list[float], b: list[float]) -> float:
    return math.fsum(x * y for x, y in zip(a, b))


def norm(a: list[float]) -> float:
    return math.sqrt(math.fsum(x * x for x in a))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 if either vector has zero norm or the lengths differ."""
    if len(a) != len(b):
        return 0.0
    na, nb = norm(a), norm(b)
    if na == 0.0 or nb == 0.0:
        return 0.0
    return dot(a, b) / (na * nb)


def hyperplane_seed(namespace: str, model_key: str, dim: int) -> int:
    """Deterministic 64-bit seed for the hyperplanes of one (namespace, model, dimension)."""
    return int(hash_string(f"{namespace}:{model_key}:{dim}")[:16], 16)


class RandomHyperplaneLSH:
    """Locality-sensitive hashing using random unit hyperplanes."""

    def __init__(self, bits: int = 16, seed: str = "default", model_key: str = "default") -> None:
        if bits < 1:
            raise ValueError("bits must be >= 1")
        self.bits = bits
        self.seed = seed
        self.model_key = model_key
        self._planes: dict[int, list[list[float]]] = {}

    def hyperplanes(self, dim: int) -> list[list[float]]:
        planes = self._planes.get(dim)
        if planes is not None:
            return planes
        rng = random.Random(hyperplane_seed(self.seed, self.model_key, dim))
        planes = []
        for _ in range(self.bits):
            v = [rng.gauss(0.0, 1.0) for _ in range(dim)]
            n = norm(v) or 1.0
            planes.append([x / n for x in v])
        self._planes[dim] = planes
        return planes

    def signature(self, vector: list[float]) -> int:
        """B-bit signature; bit i is set iff dot(vector, plane_i) >= 0."""
        sig = 0
        for i, plane in enumerate(self.hyperplanes(len(vector))):
            if dot(vector, plane) >= 0:
                sig |= 1 << i
        return sig

    def neighbors(self, sig: int, radius: int = 1) -> list[int]:
        """Signatures within Hamming distance <= radius, nearest first (sig itself first)."""
        result = [sig]
        for distance in range(1, min(radius, self.bits) + 1):
            for positions in combinations(range(self.bits), distance):
                flipped = sig
                for i in positions:
                    flipped ^= 1 << i
                result.append(flipped)
        return result


@dataclass
class ResponseCacheItem:
    id: str
    vector: list[float]
    response_text: str | None
    metadata: dict[str, Any] | None = None
    question: str | None = None
    model_key: str = "default"
    dim: int = 0
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    ttl_seconds: int = 0
    bucket: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "vector_b64": vector_to_b64(self.vector),
                "responseText": self.response_text,
                "metadata": self.metadata,
                "question": self.question,
                "modelKey": self.model_key,
                "dim": self.dim,
                "created_at": self.created_at,
                "ttlSeconds": self.ttl_seconds,
                "bucket": self.bucket,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> ResponseCacheItem:
        data = json.loads(raw)
        return cls(
            id=data["id"],
            vector=b64_to_vector(data["vector_b64"]),
            response_text=data.get("responseText"),
            metadata=data.get("metadata"),
            question=data.get("question"),
            model_key=data.get("modelKey", "default"),
            dim=data.get("dim", 0),
            created_at=data.get("created_at", ""),
            ttl_seconds=data.get("ttlSeconds", 0),
            bucket=data.get("bucket"),
        )


@dataclass
class SimilarResult:
    hit: bool
    similarity: float = 0.0
    item: ResponseCacheItem | None = None


class ResponseCache:
    """Approximate cache of question vector -> answer."""

    def __init__(
        self,
        store: CacheStore | None = None,
        namespace: str = "resp:v1",
        model_key: str = "default",
        bits: int = 16,
        radius: int = 1,
        threshold: float = 0.92,
        ttl_seconds: int = 7 * 24 * 3600,
        max_candidates: int = 200,
        max_bucket_size: int = MAX_BUCKET_SIZE,
    ) -> None:
        self.store = store or MemoryStore()
        self.namespace = namespace
        self.model_key = model_key
        self.bits = bits
        self.radius = radius
        self.threshold = threshold
        self.ttl_seconds = ttl_seconds
        self.max_candidates = max_candidates
        self.max_bucket_size = max_bucket_size
        self.lsh = RandomHyperplaneLSH(bits=bits, seed=namespace, model_key=model_key)
        self.hits = 0
        self.misses = 0
        self.store.add_eviction_listener(self._on_evict)

    @classmethod
    def from_settings(cls, settings, store: CacheStore, model_key: str) -> ResponseCache:
        return cls(
            store=store,
            namespace=settings.response_cache_namespace,
            model_key=model_key,
            bits=settings.response_cache_lsh_bits,
            radius=settings.response_cache_lsh_radius,
            threshold=settings.response_cache_sim_threshold,
            ttl_seconds=settings.response_cache_ttl_seconds,
            max_candidates=settings.response_cache_max_candidates,
        )

    def item_key(self, item_id: str) -> str:
        return f"{self.namespace}:item:{item_id}"

    def bucket_key(self, sig: int) -> str:
        # Isolated per model key and bit length
        return f"{self.namespace}:b:{self.model_key}:{self.bits}:{sig:x}"

    def make_id(self, vector: list[float], response_text: str | None) -> str:
        return stable_hash(f"{vector_to_b64(vector)}:{response_text or ''}")

    def _on_evict(self, key: str, value: str) -> None:
        """Drop an evicted item from the bucket it was indexed under (in-process store only)."""
        prefix = f"{self.namespace}:item:"
        if not key.startswith(prefix) or not isinstance(self.store, MemoryStore):
            return
        try:
            bucket = json.loads(value).get("bucket")
        except (ValueError, AttributeError):
            return
        if bucket:
            self.store.discard_member(bucket, key[len(prefix) :])

    async def put(self, vector: list[float], payload: dict[str, Any] | None = None) -> str:
        """Store an answer under its question vector. Returns the item id.

        Backend failures are logged and swallowed; the id is returned anyway.
        """
        payload = payload or {}
        vector = [float(x) for x in vector]
        response_text = payload.get("responseText", payload.get("response_text"))
        item_id = self.make_id(vector, response_text)
        bucket = self.bucket_key(self.lsh.signature(vector))
        item = ResponseCacheItem(
            id=item_id,
            vector=vector,
            response_text=response_text,
            metadata=payload.get("metadata"),
            question=payload.get("question"),
            model_key=self.model_key,
            dim=len(vector),
            ttl_seconds=self.ttl_seconds,
            bucket=bucket,
        )
        try:
            await self.store.set(self.item_key(item_id), item.to_json(), self.ttl_seconds)
            await self.store.sadd(bucket, item_id, self.ttl_seconds)
            await self.store.trim_set(bucket, self.max_bucket_size)
            logger.debug(f"Response cache SET backend={self.store.name} id={item_id} bucket={bucket}")
        except CacheBackendUnavailable as e:
            logger.warning(f"Response cache put failed: {e}")
        return item_id

    async def get_similar(
        self,
        vector: list[float],
        radius: int | None = None,
        threshold: float | None = None,
        max_candidates: int | None = None,
    ) -> SimilarResult:
        """Best cached answer for a question vector, if it is similar enough.

        A miss still reports the best similarity seen among the candidates.
        """
        vector = [float(x) for x in vector]
        radius = self.radius if radius is None else radius
        threshold = self.threshold if threshold is None else threshold
        max_candidates = self.max_candidates if max_candidates is None else max_candidates

        sig = self.lsh.signature(vector)
        bucket_keys = [self.bucket_key(code) for code in self.lsh.neighbors(sig, radius)]

        best: SimilarResult | None = None
        try:
            candidate_ids = (await self.store.sunion(bucket_keys))[:max_candidates]
            stale: list[str] = []
            for item_id in candidate_ids:
                raw = await self.store.get(self.item_key(item_id))
                if raw is None:
                    stale.append(item_id)
                    continue
                item = ResponseCacheItem.from_json(raw)
                similarity = cosine_similarity(vector, item.vector)
                if best is None or similarity > best.similarity:
                    best = SimilarResult(hit=False, similarity=similarity, item=item)
            if stale:
                # Lazily drop ids whose item expired from every bucket we touched
                for key in bucket_keys:
                    await self.store.srem(key, stale)
        except CacheBackendUnavailable as e:
            logger.warning(f"Response cache lookup failed: {e}")
            self.misses += 1
            return SimilarResult(hit=False)

        if best is not None and best.similarity >= threshold:
            self.hits += 1
            best.hit = True
            logger.debug(f"Response cache HIT id={best.item.id} sim={best.similarity:.4f}")
            return best

        self.misses += 1
        logger.debug(f"Response cache MISS candidates={len(candidate_ids)}")
        return best or SimilarResult(hit=False)

    def get_stats(self) -> dict[str, Any]:
        try:
            items = self.store.count()
        except CacheBackendUnavailable:
            items = None
        return {
            "backend": self.store.name,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "namespace": self.namespace,
            "lsh_bits": self.bits,
            "hamming_radius": self.radius,
            "threshold": self.threshold,
            "model_key": self.model_key,
            "items": items,
        }
