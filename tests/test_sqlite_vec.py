"""Test the sqlite-vec backed vector index."""

import sqlite3

import pytest
import sqlite_vec

from kbsync.core.vector_index import SqliteVecIndex, VectorRecord


def test_sqlite_vec_loads():
    """Test that sqlite-vec extension loads correctly."""
    conn = sqlite3.connect(":memory:")
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)

    cur = conn.execute("SELECT vec_version()")
    version = cur.fetchone()[0]
    assert version is not None
    conn.close()


@pytest.mark.asyncio
async def test_upsert_and_query(vec_index):
    await vec_index.upsert(
        [
            VectorRecord(id="doc-1", values=[1.0, 0.0, 0.0, 0.0], metadata={"text": "one"}),
            VectorRecord(id="doc-2", values=[0.0, 1.0, 0.0, 0.0], metadata={"text": "two"}),
            VectorRecord(id="doc-3", values=[0.9, 0.1, 0.0, 0.0], metadata={"text": "three"}),
        ]
    )

    results = await vec_index.query([1.0, 0.0, 0.0, 0.0], top_k=3)

    # doc 1 first (exact match), doc 3 second (similar), doc 2 last (orthogonal)
    assert [r.id for r in results] == ["doc-1", "doc-3", "doc-2"]
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    assert results[2].score == pytest.approx(0.0, abs=1e-5)
    assert results[1].metadata == {"text": "three"}


@pytest.mark.asyncio
async def test_upsert_replaces_by_id(vec_index):
    await vec_index.upsert([VectorRecord(id="a", values=[1.0, 0.0], metadata={"v": 1})])
    await vec_index.upsert([VectorRecord(id="a", values=[0.0, 1.0], metadata={"v": 2})])

    assert await vec_index.total_vector_count() == 1
    results = await vec_index.query([0.0, 1.0], top_k=1)
    assert results[0].id == "a"
    assert results[0].metadata == {"v": 2}


@pytest.mark.asyncio
async def test_delete_and_fetch_existing(vec_index):
    await vec_index.upsert(
        [VectorRecord(id=f"id-{i}", values=[float(i + 1), 1.0, 0.0]) for i in range(5)]
    )
    assert await vec_index.fetch_existing(["id-0", "id-4", "missing"]) == {"id-0", "id-4"}

    removed = await vec_index.delete(["id-0", "id-1", "missing"])
    assert removed == 2
    assert await vec_index.total_vector_count() == 3
    assert await vec_index.fetch_existing(["id-0", "id-2"]) == {"id-2"}


@pytest.mark.asyncio
async def test_dimensions_live_in_separate_tables(vec_index):
    await vec_index.upsert(
        [
            VectorRecord(id="small", values=[1.0, 0.0]),
            VectorRecord(id="large", values=[0.1] * 1536),
        ]
    )
    assert await vec_index.total_vector_count() == 2
    assert [r.id for r in await vec_index.query([1.0, 0.0], top_k=5)] == ["small"]
    assert [r.id for r in await vec_index.query([0.1] * 1536, top_k=5)] == ["large"]
