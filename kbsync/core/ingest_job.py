"""Incremental ingestion runs.

Provides:
- IngestStats: counters returned by every run (callers must inspect them,
  a run with failed pages still returns normally)
- IngestionService.ingest(): classify, diff, apply, commit
- IngestionService.preview(): identical counters, no writes
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from kbsync.core.chunking import get_chunking_info
from kbsync.core.differ import PagePlan, plan_document
from kbsync.core.errors import (
    EmbeddingError,
    LedgerInconsistency,
    MalformedDocument,
    TransientStoreError,
    VectorStoreError,
)
from kbsync.core.ledger import Ledger, PageStatus, now_iso
from kbsync.core.reconciler import BatchPacer, Reconciler
from kbsync.core.settings import Settings
from kbsync.core.vector_index import VectorIndex
from kbsync.providers.content_types import Document
from kbsync.providers.embedding import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class IngestStats:
    """Counters of one ingestion run (or preview)."""

    run_started_at: str = field(default_factory=now_iso)
    preview: bool = False
    pages_new: int = 0
    pages_modified: int = 0
    pages_unchanged: int = 0
    pages_skipped: int = 0
    pages_failed: int = 0
    pages_deleted: int = 0
    chunks_to_embed: int = 0
    chunks_to_delete: int = 0
    chunks_embedded: int = 0
    chunks_deleted: int = 0
    batches_failed: int = 0
    duration_ms: int = 0
    error: str | None = None
    inconsistencies: list[LedgerInconsistency] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True only if the run finished and every page was committed."""
        return self.error is None and self.pages_failed == 0

    def count_status(self, status: PageStatus) -> None:
        if status == PageStatus.NEW:
            self.pages_new += 1
        elif status == PageStatus.MODIFIED:
            self.pages_modified += 1
        else:
            self.pages_unchanged += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_started_at": self.run_started_at,
            "preview": self.preview,
            "pages_new": self.pages_new,
            "pages_modified": self.pages_modified,
            "pages_unchanged": self.pages_unchanged,
            "pages_skipped": self.pages_skipped,
            "pages_failed": self.pages_failed,
            "pages_deleted": self.pages_deleted,
            "chunks_to_embed": self.chunks_to_embed,
            "chunks_to_delete": self.chunks_to_delete,
            "chunks_embedded": self.chunks_embedded,
            "chunks_deleted": self.chunks_deleted,
            "batches_failed": self.batches_failed,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "inconsistencies": [i.to_dict() for i in self.inconsistencies],
        }


class IngestionService:
    """Keeps a vector index in sync with periodically re-scraped documents."""

    def __init__(
        self,
        ledger: Ledger,
        index: VectorIndex,
        provider: EmbeddingProvider,
        settings: Settings,
        pacer: BatchPacer | None = None,
    ) -> None:
        self.ledger = ledger
        self.settings = settings
        self.reconciler = Reconciler(
            ledger=ledger,
            index=index,
            provider=provider,
            batch_size=settings.embed_batch_size,
            delete_batch_size=settings.delete_batch_size,
            metadata_text_bytes=settings.metadata_text_bytes,
            pacer=pacer or BatchPacer(min_delay=settings.batch_delay_seconds),
        )

    def _plan(self, documents: Iterable[Document | dict], stats: IngestStats) -> list[PagePlan]:
        plans: list[PagePlan] = []
        seen: set[str] = set()
        for raw in documents:
            document = raw if isinstance(raw, Document) else Document.from_dict(raw)
            try:
                document.validate(self.settings.min_text_chars)
            except MalformedDocument as e:
                stats.pages_skipped += 1
                logger.info(f"Skipping malformed document: {e}")
                continue
            if document.url in seen:
                # Later duplicates of a url in the same batch are ignored
                stats.pages_skipped += 1
                logger.info(f"Skipping duplicate url in run: {document.url}")
                continue
            seen.add(document.url)

            plan = plan_document(
                self.ledger,
                document,
                chunk_size=self.settings.chunk_size,
                chunk_overlap=self.settings.chunk_overlap,
            )
            stats.count_status(plan.status)
            stats.chunks_to_embed += len(plan.delta.to_embed)
            stats.chunks_to_delete += len(plan.delta.to_delete)
            plans.append(plan)

        logger.info(
            f"Page plan summary: new={stats.pages_new}, modified={stats.pages_modified}, "
            f"unchanged={stats.pages_unchanged}, skipped={stats.pages_skipped}, "
            f"toEmbed={stats.chunks_to_embed}, toDelete={stats.chunks_to_delete}"
        )
        return plans

    def _stale_urls(self, plans: list[PagePlan]) -> list[str]:
        if not self.settings.prune_stale_pages:
            return []
        seen = {plan.url for plan in plans}
        return sorted(self.ledger.live_urls() - seen)

    async def preview(self, documents: Iterable[Document | dict]) -> IngestStats:
        """Dry run: same counters as ingest(), no ledger or index writes.

        Also audits the observed pages against the index and reports any
        LedgerInconsistency found. An index failure during the audit is
        reported in stats.error; the counters are still returned.
        """
        start = time.monotonic()
        stats = IngestStats(preview=True)
        plans = self._plan(documents, stats)
        stats.pages_deleted = len(self._stale_urls(plans))
        try:
            stats.inconsistencies = await self.reconciler.audit(
                [plan.url for plan in plans if plan.existing is not None]
            )
        except (TransientStoreError, VectorStoreError) as e:
            stats.error = f"Audit failed: {e}"
            logger.error(f"Preview audit against the index failed: {e}")
        for problem in stats.inconsistencies:
            logger.warning(f"Ledger inconsistency for {problem.url}: {problem.detail}")
        stats.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Preview complete (no writes performed)")
        return stats

    async def ingest(self, documents: Iterable[Document | dict], owner: str | None = None) -> IngestStats:
        """Run one incremental ingestion.

        Holds the ledger run lock for the whole run. Pages are applied one
        after another; a failed page is counted and skipped, the rest
        continue. A run-level failure stops processing and is reported in
        stats.error with everything committed so far kept.

        Raises:
            IngestionLocked: If another run holds the lock.
        """
        owner = owner or f"run-{uuid.uuid4()}"
        self.ledger.acquire_run_lock(owner, self.settings.ingest_lock_lease_seconds)
        start = time.monotonic()
        stats = IngestStats()
        logger.info(f"Starting ledger ingestion run at {stats.run_started_at}")
        logger.debug(f"Chunking: {get_chunking_info(self.settings.chunk_size, self.settings.chunk_overlap)}")

        try:
            plans = self._plan(documents, stats)

            for plan in plans:
                if plan.status == PageStatus.UNCHANGED:
                    self.ledger.touch(plan.url, stats.run_started_at)
                    continue
                await self.reconciler.apply_plan(plan, stats, committed_at=stats.run_started_at)

            stale = self._stale_urls(plans)
            if stale:
                logger.info(f"Pruning {len(stale)} pages absent from this run")
                stats.pages_deleted = await self.reconciler.prune_pages(stale, stats.run_started_at)

        except (EmbeddingError, VectorStoreError) as e:
            stats.error = str(e)
            logger.error(f"Ingestion run aborted: {e}")
        except Exception as e:
            stats.error = f"Unexpected error: {e}"
            logger.exception("Unexpected error in ingestion run")
        finally:
            stats.duration_ms = int((time.monotonic() - start) * 1000)
            try:
                self.ledger.record_run(stats)
            finally:
                self.ledger.release_run_lock(owner)

        logger.info(
            f"Ingestion completed in {stats.duration_ms} ms: embedded={stats.chunks_embedded}, "
            f"deleted={stats.chunks_deleted}, failedPages={stats.pages_failed}"
        )
        return stats
