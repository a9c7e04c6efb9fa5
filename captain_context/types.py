"""
Core data models for the context pipeline.

All models are dataclasses with dict serialization so a PackedContext can
be logged or returned over the tool server as JSON.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

ELLIPSIS = "..."
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class CandidateMatch:
    """A retrieved passage and its similarity score, before quality filtering."""

    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return str(self.metadata.get("source") or "")

    @property
    def section(self) -> Optional[str]:
        return self.metadata.get("section")

    @property
    def title(self) -> Optional[str]:
        return self.metadata.get("title")

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "score": self.score, "metadata": dict(self.metadata)}


@dataclass(frozen=True)
class RankedResult(CandidateMatch):
    """A candidate with its composite ranking score (used only for ordering)."""

    composite_score: float = 0.0

    @classmethod
    def from_candidate(cls, candidate: CandidateMatch, composite_score: float) -> "RankedResult":
        return cls(
            content=candidate.content,
            score=candidate.score,
            metadata=dict(candidate.metadata),
            composite_score=composite_score,
        )

    @property
    def truncated(self) -> bool:
        return self.content.endswith(ELLIPSIS)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["composite_score"] = self.composite_score
        return d


@dataclass(frozen=True)
class PackingMetrics:
    """Counts describing how the candidate set shrank on its way into the context."""

    original_count: int = 0
    filtered_count: int = 0
    truncated_count: int = 0
    token_utilization: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_count": self.original_count,
            "filtered_count": self.filtered_count,
            "truncated_count": self.truncated_count,
            "token_utilization": self.token_utilization,
        }


@dataclass(frozen=True)
class PackedContext:
    """The pipeline's sole externally visible output."""

    text: str
    used_results: Tuple[RankedResult, ...]
    total_tokens: int
    relevance_score: float
    fallback_used: bool
    metrics: PackingMetrics
    telemetry: Dict[str, Any] = field(default_factory=dict)

    def with_telemetry(self, **telemetry: Any) -> "PackedContext":
        merged = dict(self.telemetry)
        merged.update(telemetry)
        return PackedContext(
            text=self.text,
            used_results=self.used_results,
            total_tokens=self.total_tokens,
            relevance_score=self.relevance_score,
            fallback_used=self.fallback_used,
            metrics=self.metrics,
            telemetry=merged,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "used_results": [r.to_dict() for r in self.used_results],
            "total_tokens": self.total_tokens,
            "relevance_score": self.relevance_score,
            "fallback_used": self.fallback_used,
            "metrics": self.metrics.to_dict(),
            "telemetry": dict(self.telemetry),
        }


@dataclass(frozen=True)
class CacheEntry:
    """A cached query embedding. Immutable once written."""

    vector: Tuple[float, ...]
    model_id: str
    token_count_estimate: int
    inserted_at: float = field(default_factory=time.time)


@dataclass
class HealthReport:
    """Per-dependency health plus an aggregate."""

    embedding: bool = False
    search: bool = False
    configuration: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def overall(self) -> bool:
        return self.embedding and self.search and self.configuration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding": self.embedding,
            "search": self.search,
            "configuration": self.configuration,
            "overall": self.overall,
            "errors": dict(self.errors),
        }
