"""
Context pipeline orchestrator.

query → cached embedding → vector search → filter/dedupe/rank → pack
      → (nothing usable? fallback) → PackedContext + telemetry

With fallback enabled, ``run`` never raises: dependency failures and
unexpected errors become a fallback context with ``fallback_used=True``
and a ``fallback_reason`` in the telemetry. Packed text is never blank:
qualified passages that leave nothing after packing also fall back, with
reason ``budget_exhausted``.

Usage::

    pipeline = build_pipeline(AppConfig.from_env())
    packed = await pipeline.run("Como manter o foco?")
    prompt_context = packed.text
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from captain_context.config import AppConfig, PipelineConfig
from captain_context.embedding_cache import EmbeddingCache, QueryEmbedder
from captain_context.embedding_provider import EmbeddingProvider, build_embedding_provider
from captain_context.errors import ConfigurationInvalid, ContextUnavailable, EmbeddingFailure, SearchUnavailable
from captain_context.fallback import FallbackService
from captain_context.packing import ContextPacker
from captain_context.ranking import RankingEngine, search_quality
from captain_context.search import VectorSearchClient
from captain_context.types import HealthReport, PackedContext
from captain_context.vector_store import VectorStore, build_vector_store

LOG = logging.getLogger("context.pipeline")

HEALTH_CHECK_TEXT = "health check"


def _ms_since(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


class ContextPipeline:
    """
    Retrieval and context assembly for a single query at a time.

    Stateless per call apart from the shared embedding cache held by the
    embedder. Independent calls may run concurrently.
    """

    def __init__(
        self,
        embedder: QueryEmbedder,
        search_client: VectorSearchClient,
        config: Optional[PipelineConfig] = None,
        ranking: Optional[RankingEngine] = None,
        packer: Optional[ContextPacker] = None,
        fallback: Optional[FallbackService] = None,
    ) -> None:
        self._embedder = embedder
        self._search = search_client
        self._config = config or PipelineConfig()
        self._ranking = ranking or RankingEngine(self._config)
        self._packer = packer or ContextPacker()
        self._fallback = fallback or FallbackService()

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def cache(self) -> EmbeddingCache:
        return self._embedder.cache

    async def run(self, query: str) -> PackedContext:
        started = time.perf_counter()
        telemetry: Dict[str, Any] = {"embedding_ms": 0.0, "search_ms": 0.0, "cache_hit": False}

        if not query or not query.strip():
            return self._degrade(query, "empty_query", telemetry, started)

        try:
            packed = await self._retrieve(query, telemetry)
        except (EmbeddingFailure, SearchUnavailable) as exc:
            if not self._config.fallback_enabled:
                raise
            reason = "embedding_failure" if isinstance(exc, EmbeddingFailure) else "search_unavailable"
            LOG.warning("Retrieval failed (%s): %s", reason, exc)
            return self._degrade(query, reason, telemetry, started)
        except Exception:
            if not self._config.fallback_enabled:
                raise
            LOG.exception("Unexpected error while assembling context")
            return self._degrade(query, "internal_error", telemetry, started)

        if not packed.used_results or not packed.text.strip():
            # Candidates that qualified but did not fit the window are a budget problem.
            reason = "budget_exhausted" if packed.metrics.filtered_count else "no_qualifying_results"
            return self._degrade(query, reason, telemetry, started, original_count=packed.metrics.original_count)
        return self._finish(packed, None, telemetry, started)

    async def _retrieve(self, query: str, telemetry: Dict[str, Any]) -> PackedContext:
        config = self._config

        step = time.perf_counter()
        vector, cache_hit = await self._embedder.embed_query(query)
        telemetry["embedding_ms"] = _ms_since(step)
        telemetry["cache_hit"] = cache_hit

        # Quality filtering happens in the ranking engine, not the index.
        step = time.perf_counter()
        candidates = await self._search.search(vector, config.top_k, min_score=0.0)
        telemetry["search_ms"] = _ms_since(step)

        ranked = self._ranking.rank(candidates, query, vector)
        return self._packer.pack(
            ranked[: config.max_results],
            config.context_window_size,
            config.include_source_attribution,
            original_count=len(candidates),
            filtered_count=len(ranked),
        )

    def _degrade(
        self,
        query: str,
        reason: str,
        telemetry: Dict[str, Any],
        started: float,
        original_count: int = 0,
    ) -> PackedContext:
        if not self._config.fallback_enabled:
            raise ContextUnavailable(f"No context available for query ({reason})")
        packed = self._fallback.fallback(query or "", original_count=original_count)
        return self._finish(packed, reason, telemetry, started)

    def _finish(
        self,
        packed: PackedContext,
        reason: Optional[str],
        telemetry: Dict[str, Any],
        started: float,
    ) -> PackedContext:
        elapsed = _ms_since(started)
        LOG.info(
            "Context ready: %d result(s), %d tokens, fallback=%s, %.1f ms",
            len(packed.used_results),
            packed.total_tokens,
            packed.fallback_used,
            elapsed,
        )
        return packed.with_telemetry(
            elapsed_ms=elapsed,
            fallback_reason=reason,
            quality=search_quality(packed.used_results, self._config.context_window_size),
            **telemetry,
        )

    def validate_configuration(self) -> List[str]:
        """Human-readable configuration issues; empty when consistent. Never raises."""
        return self._config.validate()

    async def health_check(self) -> HealthReport:
        """Exercise the embedding and search paths with trivial inputs."""
        report = HealthReport()

        issues = self.validate_configuration()
        report.configuration = not issues
        if issues:
            report.errors["configuration"] = "; ".join(issues)

        try:
            await self._embedder.embed_uncached(HEALTH_CHECK_TEXT)
            report.embedding = True
        except EmbeddingFailure as exc:
            report.errors["embedding"] = str(exc)

        report.search = await self._search.ping(self._embedder.dimension)
        if not report.search:
            report.errors["search"] = "Vector index did not answer a top-1 query"

        LOG.info(
            "Health: embedding=%s search=%s configuration=%s",
            report.embedding,
            report.search,
            report.configuration,
        )
        return report

    async def close(self) -> None:
        await self._embedder.close()
        self._search.store.close()


def build_pipeline(
    app_config: Optional[AppConfig] = None,
    *,
    provider: Optional[EmbeddingProvider] = None,
    store: Optional[VectorStore] = None,
    cache: Optional[EmbeddingCache] = None,
    strict: bool = True,
) -> ContextPipeline:
    """
    Factory: assemble a ContextPipeline from configuration.

    Pass ``cache`` to share one EmbeddingCache across pipelines in the
    same process. Explicit ``provider``/``store`` instances take precedence
    over the configured backends.

    Raises:
        ConfigurationInvalid: the pipeline configuration has issues and
            ``strict`` is True
    """
    app_config = app_config or AppConfig.from_env()
    pipeline_config = app_config.pipeline

    issues = pipeline_config.validate()
    for issue in issues:
        LOG.warning("Configuration issue: %s", issue)
    if issues and strict:
        raise ConfigurationInvalid(issues)

    if provider is None:
        provider = build_embedding_provider(app_config.embedding.backend, **app_config.embedding.provider_kwargs())
    if store is None:
        store = build_vector_store(app_config.store.backend, **app_config.store.store_kwargs())
    if cache is None:
        cache = EmbeddingCache(app_config.cache.capacity, app_config.cache.evict_fraction)

    return ContextPipeline(
        embedder=QueryEmbedder(provider, cache),
        search_client=VectorSearchClient(store, timeout_s=pipeline_config.search_timeout_s),
        config=pipeline_config,
    )
