from __future__ import annotations

import os
from dataclasses import dataclass

STALE_PAGE_POLICIES = ("keep", "prune")


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    cache_db_path: str
    redis_url: str
    embedding_provider: str
    embedding_model: str
    vector_index: str
    embed_batch_size: int
    delete_batch_size: int
    batch_delay_seconds: float
    chunk_size: int
    chunk_overlap: int
    min_text_chars: int
    metadata_text_bytes: int
    stale_page_policy: str
    ingest_lock_lease_seconds: int
    response_cache_namespace: str
    response_cache_lsh_bits: int
    response_cache_lsh_radius: int
    response_cache_sim_threshold: float
    response_cache_ttl_seconds: int
    response_cache_max_candidates: int
    response_cache_max_items: int
    embedding_cache_namespace: str
    embedding_cache_ttl_seconds: int
    embedding_cache_max_items: int

    def __post_init__(self) -> None:
        if self.stale_page_policy not in STALE_PAGE_POLICIES:
            raise ValueError(
                f"Unknown STALE_PAGE_POLICY: {self.stale_page_policy}. Available: {list(STALE_PAGE_POLICIES)}"
            )
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")

    @staticmethod
    def from_env() -> "Settings":
        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "_local/data/kbsync.db").strip(),
            cache_db_path=os.getenv("CACHE_DB_PATH", "").strip(),
            redis_url=os.getenv("REDIS_URL", "").strip(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "cohere").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "").strip(),
            vector_index=os.getenv("VECTOR_INDEX", "sqlite").strip(),
            embed_batch_size=_i("EMBED_BATCH_SIZE", "32"),
            delete_batch_size=_i("DELETE_BATCH_SIZE", "500"),
            batch_delay_seconds=_f("BATCH_DELAY_SECONDS", "0"),
            chunk_size=_i("CHUNK_SIZE", "1200"),
            chunk_overlap=_i("CHUNK_OVERLAP", "300"),
            min_text_chars=_i("MIN_TEXT_CHARS", "1"),
            metadata_text_bytes=_i("METADATA_TEXT_BYTES", "1000"),
            stale_page_policy=os.getenv("STALE_PAGE_POLICY", "keep").strip().lower(),
            ingest_lock_lease_seconds=_i("INGEST_LOCK_LEASE_SECONDS", "3600"),
            response_cache_namespace=os.getenv("RESPONSE_CACHE_NS", "resp:v1").strip(),
            response_cache_lsh_bits=_i("RESPONSE_CACHE_LSH_BITS", "16"),
            response_cache_lsh_radius=_i("RESPONSE_CACHE_LSH_RADIUS", "1"),
            response_cache_sim_threshold=_f("RESPONSE_CACHE_SIM_THRESHOLD", "0.92"),
            response_cache_ttl_seconds=_i("RESPONSE_CACHE_TTL_SECONDS", str(7 * 24 * 3600)),
            response_cache_max_candidates=_i("RESPONSE_CACHE_MAX_CANDIDATES", "200"),
            response_cache_max_items=_i("RESPONSE_CACHE_MAX_ITEMS", "1000"),
            embedding_cache_namespace=os.getenv("EMBEDDING_CACHE_NS", "emb:v1").strip(),
            embedding_cache_ttl_seconds=_i("EMBEDDING_CACHE_TTL_SECONDS", str(30 * 24 * 3600)),
            embedding_cache_max_items=_i("EMBEDDING_CACHE_MAX_ITEMS", "5000"),
        )

    @property
    def prune_stale_pages(self) -> bool:
        return self.stale_page_policy == "prune"
