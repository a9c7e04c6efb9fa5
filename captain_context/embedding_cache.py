"""
Query embedding cache and the cached embedding path.

One EmbeddingCache is constructed per process and passed into every
pipeline that should share it. Keys are the exact query string: case and
whitespace differences are misses. The lock guards only map reads and
writes and is never held across a provider call, so concurrent misses on
the same query race and the last writer wins.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

import numpy as np

from captain_context.embedding_provider import EmbeddingProvider
from captain_context.errors import EmbeddingFailure
from captain_context.types import CacheEntry, estimate_tokens

LOG = logging.getLogger("context.cache")


class EmbeddingCache:
    """
    Bounded query → vector map with oldest-first eviction.

    When the size exceeds ``capacity``, the oldest ``evict_fraction`` of
    ``capacity`` entries are dropped. Readers always receive a copy.
    """

    def __init__(self, capacity: int = 200, evict_fraction: float = 0.25) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if not 0.0 < evict_fraction <= 1.0:
            raise ValueError("evict_fraction must be in (0, 1]")
        self._capacity = capacity
        self._evict_count = max(1, int(capacity * evict_fraction))
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, query: str) -> Optional[List[float]]:
        with self._lock:
            entry = self._entries.get(query)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
        return list(entry.vector)

    def get_entry(self, query: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(query)

    def put(self, query: str, vector: List[float], model_id: str) -> None:
        entry = CacheEntry(
            vector=tuple(float(v) for v in vector),
            model_id=model_id,
            token_count_estimate=estimate_tokens(query),
        )
        with self._lock:
            # Re-inserting moves the key to the newest position.
            self._entries.pop(query, None)
            self._entries[query] = entry
            if len(self._entries) > self._capacity:
                self._evict_oldest()

    def _evict_oldest(self) -> None:
        # Dict order is insertion order, so the head holds the oldest entries.
        oldest = list(self._entries)[: self._evict_count]
        for key in oldest:
            del self._entries[key]
        self._evictions += len(oldest)
        LOG.debug("Evicted %d cached embeddings (size now %d)", len(oldest), len(self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, query: object) -> bool:
        with self._lock:
            return query in self._entries


class QueryEmbedder:
    """
    Cached embedding path: cache hit → stored vector, miss → provider call,
    validation, cache write.

    Failures (provider errors, wrong length, non-finite or non-numeric
    values) raise EmbeddingFailure and never write to the cache. No retry
    happens here; retry belongs to the provider.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        dimension: int | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._dim = dimension or provider.dimension()

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    @property
    def dimension(self) -> int:
        return self._dim

    async def close(self) -> None:
        await self._provider.close()

    async def get_embedding(self, query: str) -> List[float]:
        vector, _ = await self.embed_query(query)
        return vector

    async def embed_query(self, query: str) -> Tuple[List[float], bool]:
        """Return ``(vector, cache_hit)`` for the exact query string."""
        cached = self._cache.get(query)
        if cached is not None:
            LOG.debug("Embedding cache hit (%d chars)", len(query))
            return cached, True

        vector = await self.embed_uncached(query)
        self._cache.put(query, vector, self._provider.model_id)
        return list(vector), False

    async def embed_uncached(self, text: str) -> List[float]:
        """Call the provider and validate the returned vector. Does not touch the cache."""
        try:
            vectors = await self._provider.embed([text])
        except EmbeddingFailure:
            raise
        except Exception as exc:
            raise EmbeddingFailure(f"Embedding provider error: {exc}") from exc

        if not vectors or len(vectors) != 1:
            raise EmbeddingFailure(f"Expected 1 embedding, got {len(vectors) if vectors else 0}")
        return self._validate(vectors[0])

    def _validate(self, vector: object) -> List[float]:
        if isinstance(vector, (str, bytes)):
            raise EmbeddingFailure("Embedding is not a numeric sequence")
        try:
            arr = np.asarray(vector, dtype=float)
        except (TypeError, ValueError) as exc:
            raise EmbeddingFailure(f"Embedding contains non-numeric values: {exc}") from exc

        if arr.ndim != 1 or arr.shape[0] != self._dim:
            raise EmbeddingFailure(
                f"Embedding has wrong shape: expected ({self._dim},), got {arr.shape}"
            )
        if not np.isfinite(arr).all():
            raise EmbeddingFailure("Embedding contains non-finite values")
        return [float(v) for v in arr.tolist()]
