"""Embedding Provider Abstraction for multiple backends (OpenAI, Cohere)."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from kbsync.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    max_tokens: int  # Max input tokens


OPENAI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-3-small": ModelInfo("text-embedding-3-small", dimensions=1536, max_tokens=8191),
    "text-embedding-3-large": ModelInfo("text-embedding-3-large", dimensions=3072, max_tokens=8191),
}

COHERE_MODELS: dict[str, ModelInfo] = {
    "embed-english-v3.0": ModelInfo("embed-english-v3.0", dimensions=1024, max_tokens=512),
    "embed-multilingual-v3.0": ModelInfo("embed-multilingual-v3.0", dimensions=1024, max_tokens=512),
}


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g., 'OpenAI', 'Cohere')."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @property
    def model_key(self) -> str:
        """Identity used to scope caches: provider and model together."""
        return f"{self.name.lower()}:{self.model_id}"

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate document-side embeddings for a list of texts.

        Returns:
            List of embedding vectors in the same order as input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_query(self, text: str) -> list[float]:
        """Generate the embedding of a question. Same space as embed() unless the model distinguishes."""
        result = await self.embed([text])
        return result[0]


async def _post_with_backoff(
    client: httpx.AsyncClient,
    url: str,
    provider: str,
    headers: dict[str, str],
    body: dict,
) -> dict:
    """POST with exponential backoff on 429/5xx. Other HTTP errors are not retried."""
    delay = INITIAL_DELAY
    last_error: Exception | None = None

    for attempt in range(MAX_RETRIES):
        try:
            response = await client.post(url, headers=headers, json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            last_error = e
            status = e.response.status_code
            if status == 429 or status >= 500:
                logger.warning(
                    f"{provider} returned {status}, attempt {attempt + 1}/{MAX_RETRIES}. Waiting {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_DELAY)
            elif status == 401:
                raise EmbeddingError(f"{provider} API key invalid", provider=provider, retriable=False) from e
            else:
                raise EmbeddingError(
                    f"{provider} API error: {status} - {e.response.text}",
                    provider=provider,
                    retriable=False,
                ) from e
        except httpx.TransportError as e:
            raise EmbeddingError(f"{provider} unreachable: {e}", provider=provider, retriable=True) from e

    # All retries exhausted
    raise EmbeddingError(
        f"{provider} still rate limited after {MAX_RETRIES} attempts",
        provider=provider,
        retriable=True,
    ) from last_error


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embedding provider using the API."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: str | None = None):
        if model not in OPENAI_MODELS:
            raise ValueError(f"Unknown OpenAI model: {model}. Available: {list(OPENAI_MODELS.keys())}")

        self._model = model
        self._model_info = OPENAI_MODELS[model]
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()
        self._max_chars = 20000  # ~5000 tokens, safe for 8192 limit with variable tokenization

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Get embeddings for multiple texts in a single API call (base64 encoded response)."""
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY not set", provider=self.name, retriable=False)

        truncated = [t[: self._max_chars] for t in texts]

        async with httpx.AsyncClient(timeout=120.0) as client:
            data = await _post_with_backoff(
                client,
                "https://api.openai.com/v1/embeddings",
                provider=self.name,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                body={"model": self._model, "input": truncated, "encoding_format": "base64"},
            )

        # API returns embeddings in order, but let's be safe
        embeddings: list[list[float] | None] = [None] * len(texts)
        for item in data["data"]:
            embedding = item["embedding"]
            if isinstance(embedding, str):
                raw = base64.b64decode(embedding)
                embedding = list(struct.unpack(f"{len(raw) // 4}f", raw))
            embeddings[item["index"]] = embedding
        return embeddings  # type: ignore[return-value]


class CohereProvider(EmbeddingProvider):
    """Cohere embedding provider. Documents and questions use different input types."""

    def __init__(self, model: str = "embed-english-v3.0", api_key: str | None = None):
        if model not in COHERE_MODELS:
            raise ValueError(f"Unknown Cohere model: {model}. Available: {list(COHERE_MODELS.keys())}")

        self._model = model
        self._model_info = COHERE_MODELS[model]
        self._api_key = api_key or os.getenv("COHERE_API_KEY", "").strip()
        self._max_batch = 96  # Cohere limit per request

    @property
    def name(self) -> str:
        return "Cohere"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def _embed(self, texts: list[str], input_type: str) -> list[list[float]]:
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError("COHERE_API_KEY not set", provider=self.name, retriable=False)

        results: list[list[float]] = []
        async with httpx.AsyncClient(timeout=60.0) as client:
            for i in range(0, len(texts), self._max_batch):
                data = await _post_with_backoff(
                    client,
                    "https://api.cohere.com/v1/embed",
                    provider=self.name,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    body={
                        "model": self._model,
                        "texts": texts[i : i + self._max_batch],
                        "input_type": input_type,
                        "embedding_types": ["float"],
                    },
                )
                embeddings = data["embeddings"]
                if isinstance(embeddings, dict):
                    embeddings = embeddings["float"]
                results.extend(embeddings)
        return results

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await self._embed(texts, "search_document")

    async def embed_query(self, text: str) -> list[float]:
        result = await self._embed([text], "search_query")
        return result[0]


def get_provider(provider_name: str = "cohere", model: str | None = None) -> EmbeddingProvider:
    """Factory function to get an embedding provider.

    Args:
        provider_name: 'openai' or 'cohere'
        model: Optional model ID. Uses default if not specified.

    Raises:
        ValueError: If provider or model is unknown.
    """
    provider_name = provider_name.lower()

    if provider_name == "openai":
        return OpenAIProvider(model=model or "text-embedding-3-small")

    elif provider_name == "cohere":
        return CohereProvider(model=model or os.getenv("COHERE_EMBED_MODEL", "embed-english-v3.0"))

    else:
        raise ValueError(f"Unknown provider: {provider_name}. Available: openai, cohere")
