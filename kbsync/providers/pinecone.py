"""Pinecone data-plane client (REST over httpx)."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from kbsync.core.errors import TransientStoreError, VectorStoreError
from kbsync.core.vector_index import VectorIndex, VectorMatch, VectorRecord

logger = logging.getLogger(__name__)

API_VERSION = "2024-07"
MAX_UPSERT_BATCH = 100  # Pinecone recommends <= 100 vectors per upsert request
MAX_FETCH_BATCH = 100


class PineconeIndex(VectorIndex):
    """Remote index addressed by its data-plane host."""

    def __init__(
        self,
        host: str | None = None,
        api_key: str | None = None,
        namespace: str = "",
        timeout: float = 30.0,
    ) -> None:
        host = (host or os.getenv("PINECONE_INDEX_HOST", "")).strip()
        if not host:
            raise ValueError("PINECONE_INDEX_HOST not set")
        if not host.startswith("http"):
            host = f"https://{host}"
        self._host = host.rstrip("/")
        self._api_key = (api_key or os.getenv("PINECONE_API_KEY", "")).strip()
        self._namespace = namespace
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "Pinecone"

    def _headers(self) -> dict[str, str]:
        return {
            "Api-Key": self._api_key,
            "Content-Type": "application/json",
            "X-Pinecone-API-Version": API_VERSION,
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                if method == "GET":
                    response = await client.get(f"{self._host}{path}", headers=self._headers(), **kwargs)
                else:
                    response = await client.post(f"{self._host}{path}", headers=self._headers(), **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429 or status >= 500:
                    raise TransientStoreError(
                        f"Pinecone {path} returned {status}", service=self.name, status_code=status
                    ) from e
                raise VectorStoreError(
                    f"Pinecone {path} failed: {status} - {e.response.text}", service=self.name
                ) from e
            except httpx.TransportError as e:
                raise TransientStoreError(f"Pinecone unreachable: {e}", service=self.name) from e
        if not response.content:
            return {}
        return response.json()

    async def upsert(self, records: list[VectorRecord]) -> int:
        written = 0
        for i in range(0, len(records), MAX_UPSERT_BATCH):
            batch = records[i : i + MAX_UPSERT_BATCH]
            data = await self._request(
                "POST",
                "/vectors/upsert",
                json={
                    "vectors": [{"id": r.id, "values": r.values, "metadata": r.metadata} for r in batch],
                    "namespace": self._namespace,
                },
            )
            written += data.get("upsertedCount", len(batch))
        return written

    async def delete(self, ids: list[str]) -> int:
        if not ids:
            return 0
        await self._request("POST", "/vectors/delete", json={"ids": list(ids), "namespace": self._namespace})
        return len(ids)

    async def total_vector_count(self) -> int:
        data = await self._request("POST", "/describe_index_stats", json={})
        total = data.get("totalVectorCount")
        if isinstance(total, int):
            return total
        namespaces = data.get("namespaces") or {}
        return sum(ns.get("vectorCount", 0) for ns in namespaces.values())

    async def fetch_existing(self, ids: list[str]) -> set[str]:
        found: set[str] = set()
        for i in range(0, len(ids), MAX_FETCH_BATCH):
            batch = ids[i : i + MAX_FETCH_BATCH]
            params = [("ids", chunk_id) for chunk_id in batch]
            if self._namespace:
                params.append(("namespace", self._namespace))
            data = await self._request("GET", "/vectors/fetch", params=params)
            found.update((data.get("vectors") or {}).keys())
        return found

    async def query(self, vector: list[float], top_k: int = 5) -> list[VectorMatch]:
        data = await self._request(
            "POST",
            "/query",
            json={
                "vector": vector,
                "topK": top_k,
                "includeMetadata": True,
                "namespace": self._namespace,
            },
        )
        return [
            VectorMatch(id=m["id"], score=m.get("score", 0.0), metadata=m.get("metadata") or {})
            for m in data.get("matches", [])
        ]
