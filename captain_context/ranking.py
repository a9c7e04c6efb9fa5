"""
Ranking & filtering engine.

Candidates pass through these steps, in order:

0. Optional hybrid blend (``hybrid_search``): the similarity score becomes
   ``(1 - w) * similarity + w * keyword_overlap``. The blended value then
   stands in for the similarity everywhere below.
1. Threshold filter: drop blank passages and anything below ``min_score``.
2. Deduplication: greedy, score-descending; a candidate is dropped when its
   Jaccard word-set similarity to an already-kept candidate exceeds
   ``diversity_threshold``. The best member of a duplicate cluster always
   survives.
3. Composite scoring: weighted semantic score, source priority, length
   fitness and recency, plus a flat keyword-overlap bonus.
4. Sort by composite score, descending.

The composite score is only an ordering key; reported relevance always
uses the similarity score (blended, when hybrid search is on).
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from collections import Counter
from datetime import datetime, timezone
from itertools import combinations
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from captain_context.config import PipelineConfig, RankingWeights
from captain_context.types import CandidateMatch, RankedResult, estimate_tokens

LOG = logging.getLogger("context.ranking")

# Substring → priority. Checked in order; first match wins.
SOURCE_PRIORITIES: Tuple[Tuple[str, float], ...] = (
    ("modocaverna-docs.md", 1.0),
    ("cave-focus", 0.9),
    ("modo-caverna", 0.8),
    ("manifesto", 0.9),
    ("pilares", 0.8),
    ("protocolo", 0.7),
)
DEFAULT_SOURCE_PRIORITY = 0.5

# (exclusive upper bound in characters, fitness)
LENGTH_BUCKETS: Tuple[Tuple[int, float], ...] = (
    (100, 0.3),
    (300, 0.6),
    (800, 1.0),
    (1500, 0.8),
)
LONG_CONTENT_FITNESS = 0.6

HIGH_QUALITY_SCORE = 0.8
MEDIUM_QUALITY_SCORE = 0.6

SECONDS_PER_DAY = 86400.0


def _words(text: str) -> set:
    return set(text.lower().split())


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over lower-cased whitespace-separated words."""
    words_a, words_b = _words(a), _words(b)
    union = words_a | words_b
    if not union:
        # Two empty passages are identical.
        return 1.0
    return len(words_a & words_b) / len(union)


def deduplicate(candidates: Sequence[CandidateMatch], threshold: float) -> List[CandidateMatch]:
    """Keep candidates in score-descending order, dropping near-duplicates of kept ones."""
    ordered = sorted(candidates, key=lambda c: c.score, reverse=True)
    kept: List[CandidateMatch] = []
    for candidate in ordered:
        if any(jaccard_similarity(candidate.content, k.content) > threshold for k in kept):
            LOG.debug("Dropped near-duplicate candidate (score=%.3f, source=%s)", candidate.score, candidate.source)
            continue
        kept.append(candidate)
    return kept


def source_relevance(source: str) -> float:
    source = (source or "").lower()
    for key, priority in SOURCE_PRIORITIES:
        if key in source:
            return priority
    return DEFAULT_SOURCE_PRIORITY


def length_fitness(content: str) -> float:
    """Step function favouring passages of roughly 300-800 characters."""
    length = len(content)
    for upper, fitness in LENGTH_BUCKETS:
        if length < upper:
            return fitness
    return LONG_CONTENT_FITNESS


def keyword_overlap(content: str, query: str) -> float:
    """Fraction of query words (longer than 2 chars) found in the content."""
    query_words = [w for w in query.lower().split() if len(w) > 2]
    if not query_words:
        return 0.0
    haystack = content.lower()
    matched = sum(1 for w in query_words if w in haystack)
    return matched / len(query_words)


def _parse_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def recency_factor(
    metadata: Mapping[str, Any],
    half_life_days: float,
    now: Optional[float] = None,
) -> float:
    """
    Exponential decay on the ``updated_at`` metadata field.

    Returns 1.0 for a passage updated now, 0.5 after one half-life, and 0.0
    when ``updated_at`` is missing or unparseable.
    """
    updated_at = _parse_timestamp(metadata.get("updated_at"))
    if updated_at is None:
        return 0.0
    now = time.time() if now is None else now
    age_days = max(0.0, (now - updated_at) / SECONDS_PER_DAY)
    return 0.5 ** (age_days / half_life_days)


class RankingEngine:
    """Filters, deduplicates and orders candidates according to a PipelineConfig."""

    def __init__(self, config: PipelineConfig) -> None:
        self._config = config

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def blend(self, candidates: Sequence[CandidateMatch], query: str) -> List[CandidateMatch]:
        """Mix keyword overlap into each similarity score (hybrid search)."""
        weight = self._config.hybrid_keyword_weight
        return [
            dataclasses.replace(c, score=(1.0 - weight) * c.score + weight * keyword_overlap(c.content, query))
            for c in candidates
        ]

    def filter(self, candidates: Sequence[CandidateMatch]) -> List[CandidateMatch]:
        """Threshold filter followed by deduplication."""
        qualified = [c for c in candidates if c.content.strip() and c.score >= self._config.min_score]
        if len(qualified) < len(candidates):
            LOG.debug(
                "Threshold filter kept %d of %d candidates (min_score=%.2f)",
                len(qualified),
                len(candidates),
                self._config.min_score,
            )
        return deduplicate(qualified, self._config.diversity_threshold)

    def composite_score(
        self,
        candidate: CandidateMatch,
        query: str,
        weights: RankingWeights,
        now: Optional[float] = None,
    ) -> float:
        config = self._config
        return (
            weights.semantic * candidate.score
            + weights.source * source_relevance(candidate.source)
            + weights.length * length_fitness(candidate.content)
            + weights.recency * recency_factor(candidate.metadata, config.recency_half_life_days, now)
            + config.keyword_bonus_weight * keyword_overlap(candidate.content, query)
        )

    def rank(
        self,
        candidates: Sequence[CandidateMatch],
        query: str,
        query_vector: Optional[Sequence[float]] = None,
        weights: Union[RankingWeights, Mapping[str, float], None] = None,
    ) -> List[RankedResult]:
        """
        Filter, deduplicate, score and sort, blending in keyword overlap
        first when hybrid search is on.

        ``query_vector`` is accepted for interface symmetry with the search
        step; similarity already arrives on each candidate. ``weights`` may be
        a full RankingWeights or a partial mapping merged over the configured
        weights.
        """
        if weights is None:
            effective = self._config.weights
        elif isinstance(weights, RankingWeights):
            effective = weights
        else:
            effective = self._config.weights.merged(weights)

        if self._config.hybrid_search:
            candidates = self.blend(candidates, query)

        now = time.time()
        survivors = self.filter(candidates)
        ranked = [
            RankedResult.from_candidate(c, self.composite_score(c, query, effective, now))
            for c in survivors
        ]
        ranked.sort(key=lambda r: r.composite_score, reverse=True)
        return ranked


def search_quality(results: Sequence[CandidateMatch], context_window_size: int) -> Dict[str, Any]:
    """
    Summary statistics for a set of used results.

    Score buckets: high >= 0.8, medium 0.6-0.8, low < 0.6. Content coverage
    is estimated tokens over the context window, capped at 1.0. Diversity is
    one minus the mean pairwise Jaccard similarity of the passages (1.0 for a
    single result).
    """
    if not results:
        return {
            "result_count": 0,
            "average_score": 0.0,
            "score_distribution": {"high": 0, "medium": 0, "low": 0},
            "source_distribution": {},
            "content_coverage": 0.0,
            "diversity_score": 0.0,
        }

    scores = [r.score for r in results]
    distribution = {
        "high": sum(1 for s in scores if s >= HIGH_QUALITY_SCORE),
        "medium": sum(1 for s in scores if MEDIUM_QUALITY_SCORE <= s < HIGH_QUALITY_SCORE),
        "low": sum(1 for s in scores if s < MEDIUM_QUALITY_SCORE),
    }
    sources = Counter(r.source or "unknown" for r in results)
    tokens = sum(estimate_tokens(r.content) for r in results)
    coverage = min(1.0, tokens / context_window_size) if context_window_size > 0 else 0.0
    overlaps = [jaccard_similarity(a.content, b.content) for a, b in combinations(results, 2)]
    diversity = 1.0 - math.fsum(overlaps) / len(overlaps) if overlaps else 1.0

    return {
        "result_count": len(results),
        "average_score": math.fsum(scores) / len(scores),
        "score_distribution": distribution,
        "source_distribution": dict(sources),
        "content_coverage": coverage,
        "diversity_score": diversity,
    }
