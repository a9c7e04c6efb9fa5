"""
Vector search client.

Wraps a VectorStore with argument checking, a timeout, and error
translation. The pipeline asks the index for everything above score 0 and
applies its own quality floor in the ranking engine, so index efficiency
and result quality can be tuned independently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from captain_context.errors import SearchUnavailable
from captain_context.types import CandidateMatch
from captain_context.vector_store import VectorSearchResult, VectorStore

LOG = logging.getLogger("context.search")

MAX_TOP_K = 100


class VectorSearchClient:
    """
    Nearest-neighbour queries against an external vector index.

    Zero matches is a successful, empty result. Transport and index errors
    (including timeouts) raise SearchUnavailable.
    """

    def __init__(self, store: VectorStore, timeout_s: float = 10.0) -> None:
        self._store = store
        self._timeout_s = timeout_s

    @property
    def store(self) -> VectorStore:
        return self._store

    async def search(self, vector: List[float], top_k: int, min_score: float = 0.0) -> List[CandidateMatch]:
        if isinstance(top_k, bool) or not isinstance(top_k, int) or not 1 <= top_k <= MAX_TOP_K:
            raise ValueError(f"top_k must be an integer between 1 and {MAX_TOP_K}, got {top_k!r}")
        if not 0.0 <= min_score <= 1.0:
            raise ValueError(f"min_score must be between 0 and 1, got {min_score!r}")

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._store.search, list(vector), top_k),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise SearchUnavailable(f"Vector search timed out after {self._timeout_s:.1f}s") from exc
        except Exception as exc:
            raise SearchUnavailable(f"Vector search failed: {exc}") from exc

        matches = [self._to_candidate(r) for r in raw[:top_k]]
        matches = [m for m in matches if m.score > 0.0 and m.score >= min_score]
        LOG.debug("Vector search returned %d raw, %d kept (min_score=%.2f)", len(raw), len(matches), min_score)
        return matches

    async def ping(self, dimension: int) -> bool:
        """Issue a top-1 query with a trivial vector; True if the index answered."""
        try:
            await self.search([1.0] + [0.0] * (dimension - 1), top_k=1)
        except SearchUnavailable as exc:
            LOG.warning("Vector index connectivity probe failed: %s", exc)
            return False
        return True

    @staticmethod
    def _to_candidate(result: VectorSearchResult) -> CandidateMatch:
        metadata = dict(result.metadata or {})
        content = result.text or str(metadata.pop("content", "") or "")
        metadata.pop("content", None)
        metadata.setdefault("source", "")
        return CandidateMatch(content=content, score=float(result.score), metadata=metadata)
