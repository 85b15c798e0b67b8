"""Chunk-level diff between the ledger and a freshly split document."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kbsync.core.chunking import CHUNK_OVERLAP, CHUNK_SIZE, Chunk, make_chunks
from kbsync.core.hashing import hash_string
from kbsync.core.ledger import Ledger, PageRecord, PageStatus
from kbsync.providers.content_types import Document


@dataclass(frozen=True)
class PlannedChunk:
    """A chunk scheduled for embedding, with the metadata stored next to its vector."""

    chunk: Chunk
    url: str
    metadata: dict[str, Any]

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def index(self) -> int:
        return self.chunk.index

    @property
    def text(self) -> str:
        return self.chunk.text

    @property
    def text_hash(self) -> str:
        return self.chunk.text_hash


@dataclass
class ChunkDelta:
    to_embed: list[PlannedChunk] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_embed and not self.to_delete


@dataclass
class PagePlan:
    """Everything needed to apply and then commit one document."""

    document: Document
    status: PageStatus
    content_hash: str
    chunk_count: int
    existing: PageRecord | None = None
    delta: ChunkDelta = field(default_factory=ChunkDelta)

    @property
    def url(self) -> str:
        return self.document.url


def build_chunk_metadata(document: Document, index: int, total: int) -> dict[str, Any]:
    return {
        "source": document.url,
        "url": document.url,
        "sourceType": document.source_type,
        "category": document.category,
        "title": document.title or "",
        "chunkIndex": index,
        "totalChunks": total,
        "timestamp": document.timestamp or "",
    }


def diff_chunks(previous: dict[str, str], chunks: list[Chunk]) -> tuple[list[Chunk], list[str]]:
    """Compare previous {chunk_id: text_hash} with the new ordered chunks.

    Returns (chunks to embed, ids to delete). A chunk is embedded when its id
    is new, or when its id exists with a different text hash (cannot happen
    unless ids collide, but a wrong vector is worse than a redundant one).
    """
    current_ids = set()
    to_embed = []
    for chunk in chunks:
        current_ids.add(chunk.chunk_id)
        if previous.get(chunk.chunk_id) != chunk.text_hash:
            to_embed.append(chunk)
    to_delete = [chunk_id for chunk_id in previous if chunk_id not in current_ids]
    return to_embed, to_delete


def plan_document(
    ledger: Ledger,
    document: Document,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
) -> PagePlan:
    """Classify a document and, unless it is unchanged, compute its chunk delta."""
    existing = ledger.get_page(document.url)
    status = ledger.classify(document, existing)
    content_hash = hash_string(document.text)

    if status == PageStatus.UNCHANGED:
        return PagePlan(
            document=document,
            status=status,
            content_hash=content_hash,
            chunk_count=existing.chunk_count if existing else 0,
            existing=existing,
        )

    chunks = make_chunks(document.url, document.text, chunk_size, chunk_overlap)
    previous = ledger.chunk_hashes(document.url) if existing else {}
    to_embed, to_delete = diff_chunks(previous, chunks)

    total = len(chunks)
    delta = ChunkDelta(
        to_embed=[
            PlannedChunk(
                chunk=chunk,
                url=document.url,
                metadata=build_chunk_metadata(document, chunk.index, total),
            )
            for chunk in to_embed
        ],
        to_delete=to_delete,
    )
    return PagePlan(
        document=document,
        status=status,
        content_hash=content_hash,
        chunk_count=total,
        existing=existing,
        delta=delta,
    )
