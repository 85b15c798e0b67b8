"""Tests for the content-hash ledger and the chunk differ."""

import pytest

from kbsync.core.chunking import make_chunks
from kbsync.core.differ import build_chunk_metadata, diff_chunks, plan_document
from kbsync.core.errors import IngestionLocked, MalformedDocument
from kbsync.core.hashing import hash_string
from kbsync.core.ingest_job import IngestStats
from kbsync.core.ledger import PageStatus
from kbsync.providers.content_types import Document

URL = "https://example.com/page"


def doc(text: str, url: str = URL, **kwargs) -> Document:
    return Document(url=url, canonical_text=text, **kwargs)


def commit_text(ledger, text: str, url: str = URL, at: str = "2024-01-01T00:00:00+00:00"):
    plan = plan_document(ledger, doc(text, url))
    return plan, ledger.commit(plan, at)


class TestDocument:
    def test_from_dict_camel_case(self):
        d = Document.from_dict(
            {
                "url": " https://example.com/x ",
                "canonicalText": "Hello there world",
                "sourceType": "faq",
                "category": " Billing ",
                "title": "X",
            }
        )
        assert d.url == "https://example.com/x"
        assert d.source_type == "faq"
        assert d.category == "billing"
        assert d.word_count == 3

    def test_from_dict_text_key(self):
        d = Document.from_dict({"url": "u", "text": "abc", "word_count": 7})
        assert d.canonical_text == "abc"
        assert d.word_count == 7
        assert d.category == "general"

    @pytest.mark.parametrize("url,text", [("", "text"), ("u", ""), ("u", "   \n ")])
    def test_validate_rejects(self, url, text):
        with pytest.raises(MalformedDocument):
            doc(text, url).validate()

    def test_validate_min_chars(self):
        with pytest.raises(MalformedDocument, match="shorter than 20"):
            doc("hello world").validate(min_chars=20)
        doc("hello world").validate(min_chars=1)


class TestClassify:
    def test_unseen_page_is_new(self, ledger):
        assert ledger.classify(doc("hello world")) == PageStatus.NEW

    def test_same_content_is_unchanged(self, ledger):
        commit_text(ledger, "hello world")
        assert ledger.classify(doc("hello world")) == PageStatus.UNCHANGED

    def test_surrounding_whitespace_is_ignored(self, ledger):
        commit_text(ledger, "hello world")
        assert ledger.classify(doc("  hello world\n")) == PageStatus.UNCHANGED

    def test_changed_content_is_modified(self, ledger):
        commit_text(ledger, "hello world")
        assert ledger.classify(doc("hello galaxy")) == PageStatus.MODIFIED

    def test_soft_deleted_page_is_new(self, ledger):
        commit_text(ledger, "hello world")
        ledger.mark_deleted([URL], "2024-01-02T00:00:00+00:00")
        assert ledger.classify(doc("hello world")) == PageStatus.NEW


class TestCommit:
    def test_first_commit(self, ledger):
        plan, page = commit_text(ledger, "hello world")
        assert page.version == 1
        assert page.content_hash == hash_string("hello world")
        assert page.chunk_count == 1
        assert page.deleted is False
        chunks = ledger.get_chunks(URL)
        assert [c.chunk_id for c in chunks] == [plan.delta.to_embed[0].chunk_id]
        assert chunks[0].metadata_snapshot["chunkIndex"] == 0

    def test_version_increments_on_change(self, ledger):
        commit_text(ledger, "hello world")
        plan, page = commit_text(ledger, "hello galaxy")
        assert plan.status == PageStatus.MODIFIED
        assert page.version == 2
        assert len(ledger.get_chunks(URL)) == 1
        assert ledger.get_chunks(URL)[0].chunk_id == plan.delta.to_embed[0].chunk_id

    def test_touch_keeps_hash_and_version(self, ledger):
        _, page = commit_text(ledger, "hello world")
        ledger.touch(URL, "2024-02-01T00:00:00+00:00")
        touched = ledger.get_page(URL)
        assert touched.version == page.version
        assert touched.content_hash == page.content_hash
        assert touched.last_seen_at == "2024-02-01T00:00:00+00:00"

    def test_mark_deleted_drops_chunks(self, ledger):
        commit_text(ledger, "hello world")
        assert ledger.mark_deleted([URL], "2024-01-02T00:00:00+00:00") == 1
        page = ledger.get_page(URL)
        assert page.deleted
        assert page.chunk_count == 0
        assert ledger.get_chunks(URL) == []
        assert URL not in ledger.live_urls()

    def test_stats(self, ledger):
        commit_text(ledger, "hello world")
        commit_text(ledger, "other page", url="https://example.com/other")
        ledger.mark_deleted(["https://example.com/other"], "2024-01-02T00:00:00+00:00")
        assert ledger.stats() == {"pages": 1, "deleted_pages": 1, "chunks": 1}


class TestDiffer:
    def test_unchanged_plan_is_empty(self, ledger):
        commit_text(ledger, "hello world")
        plan = plan_document(ledger, doc("hello world"))
        assert plan.status == PageStatus.UNCHANGED
        assert plan.delta.is_empty

    def test_new_page_embeds_every_chunk(self, ledger):
        text = "\n\n".join(f"Paragraph {i}: " + "word " * 100 for i in range(10))
        plan = plan_document(ledger, doc(text))
        assert plan.status == PageStatus.NEW
        assert len(plan.delta.to_embed) == plan.chunk_count > 1
        assert plan.delta.to_delete == []

    def test_modified_page_delta(self, ledger):
        old_plan, _ = commit_text(ledger, "hello world")
        plan = plan_document(ledger, doc("hello galaxy"))
        assert [c.text for c in plan.delta.to_embed] == ["hello galaxy"]
        assert plan.delta.to_delete == [old_plan.delta.to_embed[0].chunk_id]

    def test_diff_chunks(self):
        old = make_chunks(URL, "hello world")
        new = make_chunks(URL, "hello galaxy")
        previous = {c.chunk_id: c.text_hash for c in old}
        to_embed, to_delete = diff_chunks(previous, new)
        assert to_embed == new
        assert to_delete == [old[0].chunk_id]

        to_embed, to_delete = diff_chunks(previous, old)
        assert to_embed == []
        assert to_delete == []

    def test_chunk_metadata(self):
        meta = build_chunk_metadata(doc("x", title="Title", source_type="faq"), 2, 5)
        assert meta["source"] == URL
        assert meta["sourceType"] == "faq"
        assert meta["chunkIndex"] == 2
        assert meta["totalChunks"] == 5
        assert meta["title"] == "Title"


class TestRunLock:
    def test_second_owner_is_rejected(self, ledger):
        ledger.acquire_run_lock("run-a", 60, now=1000.0)
        with pytest.raises(IngestionLocked) as exc:
            ledger.acquire_run_lock("run-b", 60, now=1010.0)
        assert exc.value.owner == "run-a"

    def test_expired_lease_can_be_taken(self, ledger):
        ledger.acquire_run_lock("run-a", 60, now=1000.0)
        ledger.acquire_run_lock("run-b", 60, now=1061.0)

    def test_release(self, ledger):
        ledger.acquire_run_lock("run-a", 60, now=1000.0)
        ledger.release_run_lock("run-a")
        ledger.acquire_run_lock("run-b", 60, now=1001.0)

    def test_release_by_other_owner_is_ignored(self, ledger):
        ledger.acquire_run_lock("run-a", 60, now=1000.0)
        ledger.release_run_lock("run-b")
        with pytest.raises(IngestionLocked):
            ledger.acquire_run_lock("run-b", 60, now=1001.0)


def test_record_and_list_runs(ledger):
    stats = IngestStats(pages_new=2, chunks_embedded=5)
    ledger.record_run(stats)
    runs = ledger.list_runs()
    assert len(runs) == 1
    assert runs[0]["stats"]["pages_new"] == 2
    assert runs[0]["stats"]["chunks_embedded"] == 5
    assert runs[0]["error"] is None
