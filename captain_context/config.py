"""Configuration for the context pipeline.

Loads settings from environment variables with documented defaults.
Partial overrides are merged field by field via ``with_overrides``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Union

WEIGHT_SUM_TOLERANCE = 0.1


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RankingWeights:
    """Weights of the composite relevance score."""
    semantic: float = 0.7
    source: float = 0.2
    length: float = 0.05
    recency: float = 0.05

    def total(self) -> float:
        return self.semantic + self.source + self.length + self.recency

    def merged(self, overrides: Mapping[str, float]) -> "RankingWeights":
        return replace(self, **dict(overrides))

    def to_dict(self) -> Dict[str, float]:
        return {
            "semantic": self.semantic,
            "source": self.source,
            "length": self.length,
            "recency": self.recency,
        }

    @classmethod
    def from_env(cls) -> "RankingWeights":
        return cls(
            semantic=float(os.getenv("CAPTAIN_WEIGHT_SEMANTIC", "0.7")),
            source=float(os.getenv("CAPTAIN_WEIGHT_SOURCE", "0.2")),
            length=float(os.getenv("CAPTAIN_WEIGHT_LENGTH", "0.05")),
            recency=float(os.getenv("CAPTAIN_WEIGHT_RECENCY", "0.05")),
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Retrieval, ranking and packing options.

    - top_k: candidates requested from the index (1-100)
    - min_score: quality floor applied after retrieval
    - max_results: cap on items handed to the packer (<= top_k)
    - diversity_threshold: Jaccard similarity above which a candidate is a duplicate
    - context_window_size: token budget for packed context (>= 500)
    - fallback_enabled: whether canned passages may replace failed retrieval
    - include_source_attribution: append "[Source: ...]" to each passage
    - hybrid_search: blend keyword overlap into similarity before the threshold filter
    - hybrid_keyword_weight: keyword share of the blended score (0-1)
    """
    top_k: int = 10
    min_score: float = 0.7
    max_results: int = 5
    diversity_threshold: float = 0.95
    context_window_size: int = 4000
    fallback_enabled: bool = True
    include_source_attribution: bool = True
    keyword_bonus_weight: float = 0.1
    recency_half_life_days: float = 180.0
    search_timeout_s: float = 10.0
    hybrid_search: bool = False
    hybrid_keyword_weight: float = 0.3
    weights: RankingWeights = field(default_factory=RankingWeights)

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with the given fields replaced.

        ``weights`` may be a RankingWeights or a partial mapping, which is
        merged into the current weights.
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise TypeError(f"Unknown pipeline option(s): {', '.join(unknown)}")

        weights: Union[RankingWeights, Mapping[str, float], None] = overrides.pop("weights", None)
        if isinstance(weights, Mapping):
            overrides["weights"] = self.weights.merged(weights)
        elif weights is not None:
            overrides["weights"] = weights
        return replace(self, **overrides)

    def validate(self) -> List[str]:
        """Return human-readable configuration issues (empty when consistent)."""
        issues: List[str] = []

        if not 0.0 <= self.min_score <= 1.0:
            issues.append("min_score must be between 0 and 1")
        if not 0.0 <= self.diversity_threshold <= 1.0:
            issues.append("diversity_threshold must be between 0 and 1")
        if self.top_k < 1 or self.top_k > 100:
            issues.append("top_k must be between 1 and 100")
        if self.max_results < 1:
            issues.append("max_results must be at least 1")
        if self.max_results > self.top_k:
            issues.append("max_results cannot exceed top_k")
        if self.context_window_size < 500:
            issues.append("context_window_size should be at least 500 tokens")
        if self.keyword_bonus_weight < 0:
            issues.append("keyword_bonus_weight cannot be negative")
        if self.recency_half_life_days <= 0:
            issues.append("recency_half_life_days must be positive")
        if self.search_timeout_s <= 0:
            issues.append("search_timeout_s must be positive")
        if not 0.0 <= self.hybrid_keyword_weight <= 1.0:
            issues.append("hybrid_keyword_weight must be between 0 and 1")

        weights = self.weights.to_dict()
        negative = [name for name, value in weights.items() if value < 0]
        if negative:
            issues.append(f"Ranking weights cannot be negative: {', '.join(negative)}")
        if abs(self.weights.total() - 1.0) > WEIGHT_SUM_TOLERANCE:
            issues.append(
                f"Ranking weights should sum to approximately 1.0 (got {self.weights.total():.2f})"
            )

        return issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_k": self.top_k,
            "min_score": self.min_score,
            "max_results": self.max_results,
            "diversity_threshold": self.diversity_threshold,
            "context_window_size": self.context_window_size,
            "fallback_enabled": self.fallback_enabled,
            "include_source_attribution": self.include_source_attribution,
            "keyword_bonus_weight": self.keyword_bonus_weight,
            "recency_half_life_days": self.recency_half_life_days,
            "search_timeout_s": self.search_timeout_s,
            "hybrid_search": self.hybrid_search,
            "hybrid_keyword_weight": self.hybrid_keyword_weight,
            "weights": self.weights.to_dict(),
        }

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            top_k=int(os.getenv("CAPTAIN_TOP_K", "10")),
            min_score=float(os.getenv("CAPTAIN_MIN_SCORE", "0.7")),
            max_results=int(os.getenv("CAPTAIN_MAX_RESULTS", "5")),
            diversity_threshold=float(os.getenv("CAPTAIN_DIVERSITY_THRESHOLD", "0.95")),
            context_window_size=int(os.getenv("CAPTAIN_CONTEXT_WINDOW_SIZE", "4000")),
            fallback_enabled=_env_bool("CAPTAIN_FALLBACK_ENABLED", True),
            include_source_attribution=_env_bool("CAPTAIN_SOURCE_ATTRIBUTION", True),
            keyword_bonus_weight=float(os.getenv("CAPTAIN_KEYWORD_BONUS", "0.1")),
            recency_half_life_days=float(os.getenv("CAPTAIN_RECENCY_HALF_LIFE_DAYS", "180")),
            search_timeout_s=float(os.getenv("CAPTAIN_SEARCH_TIMEOUT_S", "10")),
            hybrid_search=_env_bool("CAPTAIN_HYBRID_SEARCH", False),
            hybrid_keyword_weight=float(os.getenv("CAPTAIN_HYBRID_KEYWORD_WEIGHT", "0.3")),
            weights=RankingWeights.from_env(),
        )


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""
    backend: str = "openai"  # "openai", "local", "mock"
    model: str = "text-embedding-3-small"
    dimension: int = 1536
    api_key: str = ""  # empty = read CAPTAIN_OPENAI_API_KEY / OPENAI_API_KEY
    base_url: str = "https://api.openai.com/v1"
    max_retries: int = 3
    timeout_s: float = 30.0

    def provider_kwargs(self) -> Dict[str, Any]:
        if self.backend == "openai":
            return {
                "api_key": self.api_key or None,
                "model": self.model,
                "dimension": self.dimension,
                "base_url": self.base_url,
                "max_retries": self.max_retries,
                "timeout": self.timeout_s,
            }
        if self.backend == "local":
            return {"model_name": self.model}
        return {"dim": self.dimension}

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            backend=os.getenv("CAPTAIN_EMBEDDING_BACKEND", "openai"),
            model=os.getenv("CAPTAIN_EMBEDDING_MODEL", "text-embedding-3-small"),
            dimension=int(os.getenv("CAPTAIN_EMBEDDING_DIMENSION", "1536")),
            api_key=os.getenv("CAPTAIN_OPENAI_API_KEY", ""),
            base_url=os.getenv("CAPTAIN_EMBEDDING_BASE_URL", "https://api.openai.com/v1"),
            max_retries=int(os.getenv("CAPTAIN_EMBEDDING_MAX_RETRIES", "3")),
            timeout_s=float(os.getenv("CAPTAIN_EMBEDDING_TIMEOUT_S", "30")),
        )


@dataclass
class StoreConfig:
    """Vector index configuration."""
    backend: str = "chroma"  # "chroma", "memory"
    collection_name: str = "knowledge_base"
    persist_directory: str = ""  # empty = ephemeral unless chroma_host is set
    chroma_host: str = ""  # empty = embedded mode
    chroma_port: int = 8000

    def store_kwargs(self) -> Dict[str, Any]:
        if self.backend != "chroma":
            return {}
        return {
            "collection_name": self.collection_name,
            "persist_directory": self.persist_directory or None,
            "chroma_host": self.chroma_host or None,
            "chroma_port": self.chroma_port,
        }

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            backend=os.getenv("CAPTAIN_VECTOR_STORE_BACKEND", "chroma"),
            collection_name=os.getenv("CHROMA_COLLECTION", "knowledge_base"),
            persist_directory=os.getenv("CHROMA_PERSIST_DIR", ""),
            chroma_host=os.getenv("CHROMA_HOST", ""),
            chroma_port=int(os.getenv("CHROMA_PORT", "8000")),
        )


@dataclass
class CacheConfig:
    """Query embedding cache bounds."""
    capacity: int = 200
    evict_fraction: float = 0.25

    @classmethod
    def from_env(cls) -> "CacheConfig":
        return cls(
            capacity=int(os.getenv("CAPTAIN_CACHE_CAPACITY", "200")),
            evict_fraction=float(os.getenv("CAPTAIN_CACHE_EVICT_FRACTION", "0.25")),
        )


@dataclass
class AppConfig:
    """Top-level application configuration."""
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, overrides: Optional[Mapping[str, Any]] = None) -> "AppConfig":
        pipeline = PipelineConfig.from_env()
        if overrides:
            pipeline = pipeline.with_overrides(**dict(overrides))
        return cls(
            pipeline=pipeline,
            embedding=EmbeddingConfig.from_env(),
            store=StoreConfig.from_env(),
            cache=CacheConfig.from_env(),
            log_level=os.getenv("CAPTAIN_CONTEXT_LOG_LEVEL", "INFO").upper(),
        )
