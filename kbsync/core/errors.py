"""Error taxonomy for ingestion and caching."""

from __future__ import annotations

from dataclasses import dataclass, field


class KbsyncError(Exception):
    """Base class for all kbsync errors."""


class TransientStoreError(KbsyncError):
    """Remote store rejected a request in a way that is worth retrying (429, 5xx, connect)."""

    def __init__(self, message: str, service: str, status_code: int | None = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class VectorStoreError(KbsyncError):
    """Non-retryable vector index failure."""

    def __init__(self, message: str, service: str, retriable: bool = False):
        super().__init__(message)
        self.service = service
        self.retriable = retriable


class EmbeddingError(KbsyncError):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class CacheBackendUnavailable(KbsyncError):
    """Cache backend could not be reached. Callers degrade to a miss."""


class MalformedDocument(KbsyncError):
    """Document cannot be ingested (empty or too short text, missing url)."""

    def __init__(self, url: str | None, reason: str):
        super().__init__(f"{url or '<no url>'}: {reason}")
        self.url = url
        self.reason = reason


class IngestionLocked(KbsyncError):
    """Another ingestion run holds the ledger lease."""

    def __init__(self, owner: str, expires_at: float):
        super().__init__(f"Ingestion lock held by {owner} until {expires_at:.0f}")
        self.owner = owner
        self.expires_at = expires_at


@dataclass
class LedgerInconsistency:
    """Ledger and vector index disagree about a page. Reported, never repaired."""

    url: str
    detail: str
    chunk_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"url": self.url, "detail": self.detail, "chunk_ids": list(self.chunk_ids)}
