"""
Embedding provider abstraction with remote, local and mock backends.

- OpenAIEmbeddingProvider: OpenAI-compatible /embeddings endpoint over httpx
- LocalEmbeddingProvider: sentence-transformers, runs off the event loop
- MockEmbeddingProvider: fixed vectors for tests

Providers only convert text to vectors. Shape validation and caching live
in embedding_cache.QueryEmbedder.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from captain_context.errors import EmbeddingFailure

LOG = logging.getLogger("context.embedding_provider")

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion."""

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Convert a batch of texts into embedding vectors.

        Returns a list of float vectors, one per input text.
        """
        ...

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""
        ...

    @property
    def model_id(self) -> str:
        return type(self).__name__

    async def close(self) -> None:
        """Release resources. Override if needed."""
        pass


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Remote embeddings via an OpenAI-compatible API.

    Default model: text-embedding-3-small (1536 dimensions).

    Transport errors, HTTP 429 and HTTP 5xx are retried with exponential
    backoff; other 4xx responses and malformed payloads are permanent.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("CAPTAIN_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY", "")
        if not self._api_key:
            raise ValueError("API key required. Set CAPTAIN_OPENAI_API_KEY or pass api_key=.")

        self._model = model
        self._dim = dimension
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
        )
        LOG.info("Remote embeddings: %s (%dd) at %s", model, dimension, base_url)

    @property
    def model_id(self) -> str:
        return self._model

    def dimension(self) -> int:
        return self._dim

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        body: dict[str, Any] = {"model": self._model, "input": texts}
        data = await self._post_with_retry(body)

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in items]
        except (KeyError, TypeError, AttributeError) as exc:
            raise EmbeddingFailure(f"Malformed embeddings response: {exc!r}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingFailure(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors

    async def _post_with_retry(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST /embeddings, retrying transient failures only."""
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                resp = await self._client.post("/embeddings", json=body)
            except httpx.TransportError as exc:
                last_error = exc
            else:
                if resp.status_code in RETRYABLE_STATUS:
                    last_error = httpx.HTTPStatusError(
                        f"HTTP {resp.status_code}", request=resp.request, response=resp
                    )
                elif resp.is_error:
                    raise EmbeddingFailure(
                        f"Embedding request rejected: HTTP {resp.status_code} {resp.text[:200]}"
                    )
                else:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise EmbeddingFailure("Embedding response is not valid JSON") from exc

            if attempt + 1 < self._max_retries:
                wait = self._base_delay * 2**attempt
                LOG.warning(
                    "Embedding call failed (attempt %d/%d): %s. Retrying in %.1fs.",
                    attempt + 1,
                    self._max_retries,
                    last_error,
                    wait,
                )
                await asyncio.sleep(wait)

        raise EmbeddingFailure(
            f"Embedding provider unavailable after {self._max_retries} attempts: {last_error}"
        ) from last_error

    async def close(self) -> None:
        await self._client.aclose()


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Default model: all-MiniLM-L6-v2 (384 dimensions). Encoding runs in a
    worker thread so the event loop stays responsive.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: Optional[str] = None) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for LocalEmbeddingProvider. "
                "Install with: pip install 'captain-context[local]'"
            )

        self._model_name = model_name
        LOG.info("Loading embedding model: %s", model_name)
        self._model = SentenceTransformer(model_name, device=device)
        self._dim = self._model.get_sentence_embedding_dimension()

    @property
    def model_id(self) -> str:
        return self._model_name

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        embeddings = await asyncio.to_thread(
            self._model.encode,
            texts,
            normalize_embeddings=True,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        return embeddings.tolist()

    def dimension(self) -> int:
        return self._dim


class MockEmbeddingProvider(EmbeddingProvider):
    """Mock embedding provider for testing. Returns a fixed vector and counts calls."""

    def __init__(self, dim: int = 1536, value: float = 0.1) -> None:
        self._dim = dim
        self._value = value
        self._call_count = 0

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self._call_count += 1
        return [[self._value] * self._dim for _ in texts]

    def dimension(self) -> int:
        return self._dim

    @property
    def call_count(self) -> int:
        return self._call_count


def build_embedding_provider(backend: str = "openai", **kwargs: Any) -> EmbeddingProvider:
    """
    Factory: create an EmbeddingProvider of the requested type.

    Args:
        backend: "openai", "local" or "mock"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "openai":
        return OpenAIEmbeddingProvider(**kwargs)
    elif backend == "local":
        return LocalEmbeddingProvider(**kwargs)
    elif backend == "mock":
        return MockEmbeddingProvider(**kwargs)
    else:
        raise ValueError(
            f"Unknown embedding backend: {backend!r}. Supported: 'openai', 'local', 'mock'"
        )
