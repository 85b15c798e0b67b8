"""Apply chunk deltas to the vector index, then commit them to the ledger.

Per page, strictly in this order:
1. upsert the page's new chunks in batches of embed_batch_size
2. delete the page's stale chunk ids (guarded against an empty index)
3. commit the page to the ledger

A failure in 1 or 2 leaves the ledger untouched for that page, so the next
run computes the identical delta. Chunk ids are content-derived, so the
retried upserts overwrite rather than duplicate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from kbsync.core.differ import PagePlan, PlannedChunk
from kbsync.core.errors import EmbeddingError, LedgerInconsistency, TransientStoreError, VectorStoreError
from kbsync.core.hashing import truncate_utf8
from kbsync.core.ledger import Ledger
from kbsync.core.vector_index import VectorIndex, VectorRecord
from kbsync.providers.embedding import EmbeddingProvider

if TYPE_CHECKING:
    from kbsync.core.ingest_job import IngestStats

logger = logging.getLogger(__name__)


class BatchPacer:
    """Adaptive pause between remote batches.

    - min_delay: Base delay between batches
    - max_delay: Maximum delay after repeated failures
    - Delays increase on failures, reset on success
    """

    FAILURE_MULTIPLIER = 1.5  # How much to increase delay on failure

    def __init__(self, min_delay: float = 0.0, max_delay: float = 10.0) -> None:
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._delay = min_delay
        self._last_batch = 0.0

    @property
    def delay(self) -> float:
        return self._delay

    async def wait(self) -> None:
        """Wait if needed before sending the next batch."""
        wait_time = self._delay - (time.monotonic() - self._last_batch)
        if wait_time > 0:
            logger.debug(f"Pacing: waiting {wait_time:.1f}s before next batch")
            await asyncio.sleep(wait_time)
        self._last_batch = time.monotonic()

    def record_success(self) -> None:
        self._delay = self.min_delay

    def record_failure(self) -> None:
        # A zero base delay still backs off after a failure
        current = max(self._delay, 1.0)
        self._delay = min(current * self.FAILURE_MULTIPLIER, self.max_delay)
        logger.debug(f"Pacing: increased delay to {self._delay:.1f}s")


class Reconciler:
    """Applies page plans to a vector index."""

    def __init__(
        self,
        ledger: Ledger,
        index: VectorIndex,
        provider: EmbeddingProvider,
        batch_size: int = 32,
        delete_batch_size: int = 500,
        metadata_text_bytes: int = 1000,
        pacer: BatchPacer | None = None,
    ) -> None:
        self.ledger = ledger
        self.index = index
        self.provider = provider
        self.batch_size = batch_size
        self.delete_batch_size = delete_batch_size
        self.metadata_text_bytes = metadata_text_bytes
        self.pacer = pacer or BatchPacer()

    def build_record(self, chunk: PlannedChunk, values: list[float]) -> VectorRecord:
        metadata = {"text": truncate_utf8(chunk.text, self.metadata_text_bytes), **chunk.metadata}
        return VectorRecord(id=chunk.chunk_id, values=values, metadata=metadata)

    async def upsert_batch(self, chunks: list[PlannedChunk]) -> int:
        """Embed one batch of chunks and upsert the vectors. Returns the number stored."""
        if not chunks:
            return 0
        embeddings = await self.provider.embed([c.text for c in chunks])
        if len(embeddings) != len(chunks):
            raise EmbeddingError(
                f"Expected {len(chunks)} embeddings, got {len(embeddings)}",
                provider=self.provider.name,
                retriable=True,
            )
        records = [self.build_record(chunk, values) for chunk, values in zip(chunks, embeddings)]
        await self.index.upsert(records)
        return len(records)

    async def delete_batch(self, chunk_ids: list[str]) -> int:
        """Delete vectors in slices of delete_batch_size.

        Skipped entirely when the index reports zero vectors: a freshly reset
        index must not act on a stale id list.
        """
        chunk_ids = list(dict.fromkeys(chunk_ids))
        if not chunk_ids:
            return 0
        total = await self.index.total_vector_count()
        if total == 0:
            logger.info(f"Skipping delete of {len(chunk_ids)} ids: vector index is empty")
            return 0
        deleted = 0
        for i in range(0, len(chunk_ids), self.delete_batch_size):
            batch = chunk_ids[i : i + self.delete_batch_size]
            await self.index.delete(batch)
            deleted += len(batch)
        return deleted

    async def apply_plan(self, plan: PagePlan, stats: "IngestStats", committed_at: str) -> bool:
        """Upsert, delete, then commit one page. Returns True if the page was committed.

        Index failures of either kind, and retriable embedding errors, are
        logged and leave the page for the next run. A non-retriable embedding
        error (bad API key, unknown model) is not tied to this page and
        propagates to end the run.
        """
        to_embed = plan.delta.to_embed
        total_batches = (len(to_embed) + self.batch_size - 1) // self.batch_size

        for batch_index in range(total_batches):
            batch = to_embed[batch_index * self.batch_size : (batch_index + 1) * self.batch_size]
            await self.pacer.wait()
            try:
                stored = await self.upsert_batch(batch)
            except (TransientStoreError, VectorStoreError, EmbeddingError) as e:
                if isinstance(e, EmbeddingError) and not e.retriable:
                    raise
                self.pacer.record_failure()
                stats.batches_failed += 1
                stats.pages_failed += 1
                logger.warning(
                    f"Upsert batch {batch_index + 1}/{total_batches} failed for {plan.url}: {e}. "
                    "Page left uncommitted for retry."
                )
                return False
            self.pacer.record_success()
            stats.chunks_embedded += stored
            logger.info(
                f"Batch {batch_index + 1}/{total_batches} stored for {plan.url} (size={len(batch)})"
            )

        if plan.delta.to_delete:
            try:
                stats.chunks_deleted += await self.delete_batch(plan.delta.to_delete)
            except (TransientStoreError, VectorStoreError) as e:
                stats.pages_failed += 1
                logger.warning(
                    f"Deleting {len(plan.delta.to_delete)} stale chunks failed for {plan.url}: {e}. "
                    "Page left uncommitted for retry."
                )
                return False

        self.ledger.commit(plan, committed_at)
        return True

    async def prune_pages(self, urls: list[str], seen_at: str) -> int:
        """Remove pages from the index, then soft-delete them in the ledger.

        A page whose vector delete fails stays live in the ledger, so the
        ledger never claims a page is gone while its vectors remain.
        """
        pruned = 0
        for url in urls:
            chunk_ids = self.ledger.chunk_ids_for_urls([url])
            try:
                await self.delete_batch(chunk_ids)
            except (TransientStoreError, VectorStoreError) as e:
                logger.warning(f"Pruning {url} failed: {e}. Page kept live.")
                continue
            self.ledger.mark_deleted([url], seen_at)
            pruned += 1
        return pruned

    async def audit(self, urls: list[str]) -> list[LedgerInconsistency]:
        """Compare ledger chunk rows with the index for the given pages. Reports only."""
        problems: list[LedgerInconsistency] = []
        for url in urls:
            page = self.ledger.get_page(url)
            if page is None or page.deleted:
                continue
            chunk_ids = self.ledger.chunk_ids_for_urls([url])
            if len(chunk_ids) != page.chunk_count:
                problems.append(
                    LedgerInconsistency(
                        url=url,
                        detail=f"ledger has {len(chunk_ids)} chunk rows, page records {page.chunk_count}",
                    )
                )
            if not chunk_ids:
                continue
            present = await self.index.fetch_existing(chunk_ids)
            missing = [chunk_id for chunk_id in chunk_ids if chunk_id not in present]
            if missing:
                problems.append(
                    LedgerInconsistency(
                        url=url,
                        detail=f"{len(missing)} chunks missing from {self.index.name}",
                        chunk_ids=missing,
                    )
                )
        return problems
