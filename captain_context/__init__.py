"""
Semantic retrieval and context assembly for a conversational assistant.

Given a user query, the pipeline embeds it (with a shared cache), queries
a vector index, filters, deduplicates and ranks the candidates, packs them
into a token budget, and falls back to a topic-routed canned passage when
retrieval yields nothing usable.

Usage:
    from captain_context import AppConfig, build_pipeline

    pipeline = build_pipeline(AppConfig.from_env())
    packed = await pipeline.run("Preciso de motivação")
    print(packed.text, packed.fallback_used)
"""

from __future__ import annotations

from captain_context.config import AppConfig, CacheConfig, EmbeddingConfig, PipelineConfig, RankingWeights, StoreConfig
from captain_context.embedding_cache import EmbeddingCache, QueryEmbedder
from captain_context.errors import (
    ConfigurationInvalid,
    ContextUnavailable,
    EmbeddingFailure,
    PipelineError,
    SearchUnavailable,
)
from captain_context.pipeline import ContextPipeline, build_pipeline
from captain_context.types import CandidateMatch, HealthReport, PackedContext, PackingMetrics, RankedResult

__all__ = [
    "AppConfig",
    "CacheConfig",
    "CandidateMatch",
    "ConfigurationInvalid",
    "ContextPipeline",
    "ContextUnavailable",
    "EmbeddingCache",
    "EmbeddingConfig",
    "EmbeddingFailure",
    "HealthReport",
    "PackedContext",
    "PackingMetrics",
    "PipelineConfig",
    "PipelineError",
    "QueryEmbedder",
    "RankedResult",
    "RankingWeights",
    "SearchUnavailable",
    "StoreConfig",
    "build_pipeline",
]
