"""Tests for the vector store reconciler."""

import pytest

from kbsync.core.differ import plan_document
from kbsync.core.errors import EmbeddingError, TransientStoreError, VectorStoreError
from kbsync.core.ingest_job import IngestStats
from kbsync.core.reconciler import BatchPacer, Reconciler
from kbsync.providers.content_types import Document

URL = "https://example.com/page"
AT = "2024-01-01T00:00:00+00:00"


@pytest.fixture
def reconciler(ledger, fake_index, provider, pacer):
    return Reconciler(ledger, fake_index, provider, batch_size=2, delete_batch_size=2, pacer=pacer)


def long_text(paragraphs: int = 8) -> str:
    return "\n\n".join(f"Section {i}: " + "content words here " * 40 for i in range(paragraphs))


class TestBatchPacer:
    def test_failure_increases_delay(self):
        pacer = BatchPacer(min_delay=0.0, max_delay=10.0)
        pacer.record_failure()
        assert pacer.delay == 1.5
        pacer.record_failure()
        assert pacer.delay == 2.25

    def test_delay_is_capped(self):
        pacer = BatchPacer(min_delay=0.0, max_delay=2.0)
        for _ in range(5):
            pacer.record_failure()
        assert pacer.delay == 2.0

    def test_success_resets(self):
        pacer = BatchPacer(min_delay=0.5, max_delay=10.0)
        pacer.record_failure()
        pacer.record_success()
        assert pacer.delay == 0.5


class TestDeleteBatch:
    @pytest.mark.asyncio
    async def test_skipped_on_empty_index(self, reconciler, fake_index):
        deleted = await reconciler.delete_batch(["a", "b", "c"])
        assert deleted == 0
        assert "delete" not in fake_index.log

    @pytest.mark.asyncio
    async def test_deletes_in_slices(self, reconciler, fake_index, provider):
        plan = plan_document(reconciler.ledger, Document(url=URL, canonical_text="hello world"))
        await reconciler.upsert_batch(plan.delta.to_embed)
        fake_index.log.clear()

        deleted = await reconciler.delete_batch(["a", "b", "c", "a"])
        assert deleted == 3
        assert fake_index.log == ["count", "delete", "delete"]

    @pytest.mark.asyncio
    async def test_empty_id_list(self, reconciler, fake_index):
        assert await reconciler.delete_batch([]) == 0
        assert fake_index.log == []


class TestBuildRecord:
    def test_metadata_text_is_truncated(self, ledger, fake_index, provider):
        reconciler = Reconciler(ledger, fake_index, provider, metadata_text_bytes=10)
        plan = plan_document(ledger, Document(url=URL, canonical_text="äöü" * 20))
        record = reconciler.build_record(plan.delta.to_embed[0], [0.1, 0.2])
        assert len(record.metadata["text"].encode("utf-8")) <= 10
        assert record.metadata["text"] == "äöüäö"
        assert record.metadata["url"] == URL
        assert record.id == plan.delta.to_embed[0].chunk_id


class TestApplyPlan:
    @pytest.mark.asyncio
    async def test_new_page_is_committed(self, reconciler, ledger, fake_index):
        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text=long_text()))
        assert await reconciler.apply_plan(plan, stats, AT)

        assert stats.chunks_embedded == plan.chunk_count
        assert set(fake_index.vectors) == {c.chunk_id for c in plan.delta.to_embed}
        assert ledger.get_page(URL).version == 1

    @pytest.mark.asyncio
    async def test_upserts_before_deletes(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        fake_index.log.clear()

        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello galaxy"))
        assert await reconciler.apply_plan(plan, stats, AT)

        assert fake_index.log == ["upsert", "count", "delete"]
        assert stats.chunks_embedded == 1
        assert stats.chunks_deleted == 1
        assert list(fake_index.vectors) == [plan.delta.to_embed[0].chunk_id]

    @pytest.mark.asyncio
    async def test_transient_upsert_failure_leaves_ledger_untouched(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        before = ledger.get_page(URL)
        fake_index.log.clear()
        fake_index.upsert_error = TransientStoreError("503", service="fake", status_code=503)

        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello galaxy"))
        assert not await reconciler.apply_plan(plan, stats, AT)

        assert stats.batches_failed == 1
        assert stats.pages_failed == 1
        assert "delete" not in fake_index.log
        after = ledger.get_page(URL)
        assert after.version == before.version
        assert after.content_hash == before.content_hash
        assert reconciler.pacer.delay == 0.0

    @pytest.mark.asyncio
    async def test_transient_delete_failure_leaves_ledger_untouched(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        fake_index.delete_error = TransientStoreError("429", service="fake", status_code=429)

        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello galaxy"))
        assert not await reconciler.apply_plan(plan, stats, AT)
        assert stats.pages_failed == 1
        assert ledger.get_page(URL).version == 1

    @pytest.mark.asyncio
    async def test_retriable_embedding_error_is_isolated(self, reconciler, ledger, provider):
        provider.fail_retriable()
        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello world"))
        assert not await reconciler.apply_plan(plan, stats, AT)
        assert stats.batches_failed == 1
        assert ledger.get_page(URL) is None

    @pytest.mark.asyncio
    async def test_fatal_embedding_error_propagates(self, reconciler, ledger, provider):
        provider.fail_fatal()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello world"))
        with pytest.raises(EmbeddingError):
            await reconciler.apply_plan(plan, IngestStats(), AT)
        assert ledger.get_page(URL) is None

    @pytest.mark.asyncio
    async def test_rejected_upsert_is_isolated(self, reconciler, ledger, fake_index):
        fake_index.upsert_error = VectorStoreError("400 - metadata too large", service="fake")
        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello world"))
        assert not await reconciler.apply_plan(plan, stats, AT)
        assert stats.batches_failed == 1
        assert stats.pages_failed == 1
        assert ledger.get_page(URL) is None

    @pytest.mark.asyncio
    async def test_rejected_delete_is_isolated(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        fake_index.delete_error = VectorStoreError("400 - bad request", service="fake")

        stats = IngestStats()
        plan = plan_document(ledger, Document(url=URL, canonical_text="hello galaxy"))
        assert not await reconciler.apply_plan(plan, stats, AT)
        assert stats.pages_failed == 1
        assert stats.batches_failed == 0
        assert ledger.get_page(URL).version == 1


class TestPruneAndAudit:
    @pytest.mark.asyncio
    async def test_prune_removes_vectors_then_pages(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        assert await reconciler.prune_pages([URL], AT) == 1
        assert fake_index.vectors == {}
        assert ledger.get_page(URL).deleted

    @pytest.mark.asyncio
    async def test_failed_prune_keeps_page_live(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        fake_index.delete_error = TransientStoreError("503", service="fake", status_code=503)
        assert await reconciler.prune_pages([URL], AT) == 0
        assert not ledger.get_page(URL).deleted
        assert ledger.get_chunks(URL) != []

    @pytest.mark.asyncio
    async def test_audit_reports_missing_vectors(self, reconciler, ledger, fake_index):
        await reconciler.apply_plan(
            plan_document(ledger, Document(url=URL, canonical_text="hello world")), IngestStats(), AT
        )
        assert await reconciler.audit([URL]) == []

        fake_index.vectors.clear()
        problems = await reconciler.audit([URL])
        assert len(problems) == 1
        assert problems[0].url == URL
        assert problems[0].chunk_ids == ledger.chunk_ids_for_urls([URL])
        # Reported only, nothing repaired
        assert ledger.get_page(URL).version == 1
