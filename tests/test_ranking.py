"""Tests for the ranking & filtering engine and search quality metrics."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from captain_context.config import PipelineConfig, RankingWeights
from captain_context.ranking import (
    RankingEngine,
    deduplicate,
    jaccard_similarity,
    keyword_overlap,
    length_fitness,
    recency_factor,
    search_quality,
    source_relevance,
)
from captain_context.types import CandidateMatch


def _candidate(content: str, score: float, source: str = "", **metadata) -> CandidateMatch:
    return CandidateMatch(content=content, score=score, metadata={"source": source, **metadata})


class TestSimilarity:
    def test_identical_text(self):
        assert jaccard_similarity("Foco total agora", "foco  TOTAL agora") == 1.0

    def test_partial_overlap(self):
        # {a, b, c} vs {b, c, d} → 2 / 4
        assert jaccard_similarity("a b c", "b c d") == 0.5

    def test_disjoint(self):
        assert jaccard_similarity("um dois", "tres quatro") == 0.0


class TestDeduplicate:
    def test_ten_identical_candidates_collapse_to_one(self):
        candidates = [_candidate("O foco é sua arma mais poderosa.", 0.9, source=f"s{i}") for i in range(10)]
        assert len(deduplicate(candidates, 0.95)) == 1

    def test_higher_score_survives(self):
        low = _candidate("mesmo texto aqui", 0.75, source="low")
        high = _candidate("mesmo texto aqui", 0.92, source="high")
        kept = deduplicate([low, high], 0.95)
        assert [c.source for c in kept] == ["high"]

    def test_distinct_content_kept(self):
        kept = deduplicate([_candidate("alpha beta", 0.8), _candidate("gamma delta", 0.9)], 0.95)
        assert len(kept) == 2

    def test_threshold_is_exclusive(self):
        # similarity 0.5 is not above a 0.5 threshold
        kept = deduplicate([_candidate("a b c", 0.9), _candidate("b c d", 0.8)], 0.5)
        assert len(kept) == 2


class TestFactors:
    @pytest.mark.parametrize(
        "source, expected",
        [
            ("modocaverna-docs.md", 1.0),
            ("kb/cave-focus.md", 0.9),
            ("modo-caverna-intro.md", 0.8),
            ("manifesto.md", 0.9),
            ("PILARES.md", 0.8),
            ("protocolo-40-dias.md", 0.7),
            ("blog-post.md", 0.5),
            ("", 0.5),
        ],
    )
    def test_source_relevance(self, source, expected):
        assert source_relevance(source) == expected

    @pytest.mark.parametrize(
        "length, expected",
        [(50, 0.3), (99, 0.3), (100, 0.6), (299, 0.6), (300, 1.0), (799, 1.0), (800, 0.8), (1499, 0.8), (1500, 0.6)],
    )
    def test_length_fitness(self, length, expected):
        assert length_fitness("x" * length) == expected

    def test_keyword_overlap_ignores_short_words(self):
        # "de" is too short; "foco" and "disciplina" count, only "foco" matches
        assert keyword_overlap("Mantenha o foco no essencial.", "foco de disciplina") == 0.5

    def test_keyword_overlap_no_words(self):
        assert keyword_overlap("qualquer", "a de") == 0.0

    def test_recency_missing_is_zero(self):
        assert recency_factor({}, 180.0) == 0.0
        assert recency_factor({"updated_at": "not a date"}, 180.0) == 0.0

    def test_recency_half_life(self):
        now = time.time()
        assert recency_factor({"updated_at": now}, 180.0, now=now) == pytest.approx(1.0)
        assert recency_factor({"updated_at": now - 180 * 86400}, 180.0, now=now) == pytest.approx(0.5)

    def test_recency_iso_string(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        updated = (now - timedelta(days=90)).isoformat().replace("+00:00", "Z")
        factor = recency_factor({"updated_at": updated}, 90.0, now=now.timestamp())
        assert factor == pytest.approx(0.5)


class TestRankingEngine:
    def test_threshold_filter(self):
        engine = RankingEngine(PipelineConfig(min_score=0.7))
        ranked = engine.rank([_candidate("a", 0.69), _candidate("b", 0.7), _candidate("c", 0.95)], "q")
        assert sorted(r.content for r in ranked) == ["b", "c"]

    def test_blank_passages_never_qualify(self):
        engine = RankingEngine(PipelineConfig(min_score=0.5))
        ranked = engine.rank([_candidate("", 0.95), _candidate("   \n", 0.9), _candidate("Texto real.", 0.8)], "q")
        assert [r.content for r in ranked] == ["Texto real."]

    def test_all_below_threshold_is_empty(self):
        engine = RankingEngine(PipelineConfig(min_score=0.7))
        assert engine.rank([_candidate(f"passage {i}", 0.5) for i in range(5)], "q") == []

    def test_composite_score_formula(self):
        engine = RankingEngine(PipelineConfig())
        content = "disciplina " * 40  # 440 chars → length fitness 1.0
        ranked = engine.rank([_candidate(content, 0.8, source="manifesto.md")], "disciplina diária")
        expected = 0.7 * 0.8 + 0.2 * 0.9 + 0.05 * 1.0 + 0.05 * 0.0 + 0.1 * 0.5
        assert ranked[0].composite_score == pytest.approx(expected)
        # reported score stays the raw similarity
        assert ranked[0].score == 0.8

    def test_source_priority_reorders(self):
        engine = RankingEngine(PipelineConfig())
        body = "texto de apoio " * 25
        ranked = engine.rank(
            [
                _candidate(body + "um", 0.80, source="blog.md"),
                _candidate(body + "dois", 0.78, source="modocaverna-docs.md"),
            ],
            "pergunta",
        )
        assert ranked[0].source == "modocaverna-docs.md"

    def test_partial_weight_override(self):
        engine = RankingEngine(PipelineConfig())
        candidate = _candidate("x" * 400, 0.9, source="blog.md")
        ranked = engine.rank([candidate], "", weights={"source": 0.0})
        assert ranked[0].composite_score == pytest.approx(0.7 * 0.9 + 0.05 * 1.0)

    def test_sorted_descending(self):
        engine = RankingEngine(PipelineConfig(min_score=0.0))
        ranked = engine.rank([_candidate(f"passagem numero {i}", 0.1 * i) for i in range(1, 10)], "q")
        scores = [r.composite_score for r in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_hybrid_blend_applies_before_threshold(self):
        candidates = [
            _candidate("disciplina diária sempre", 0.8, source="a"),
            _candidate("nada relacionado aqui", 0.8, source="b"),
        ]
        plain = RankingEngine(PipelineConfig(min_score=0.7)).rank(candidates, "disciplina foco")
        assert len(plain) == 2

        hybrid = RankingEngine(PipelineConfig(min_score=0.7, hybrid_search=True, hybrid_keyword_weight=0.3))
        ranked = hybrid.rank(candidates, "disciplina foco")
        # 0.7 * 0.8 + 0.3 * 0.5 = 0.71 survives; 0.7 * 0.8 + 0.3 * 0.0 = 0.56 does not
        assert [r.source for r in ranked] == ["a"]
        assert ranked[0].score == pytest.approx(0.71)

    def test_blend_leaves_input_untouched(self):
        candidate = _candidate("foco", 0.9)
        blended = RankingEngine(PipelineConfig(hybrid_search=True)).blend([candidate], "foco")
        assert blended[0].score == pytest.approx(0.7 * 0.9 + 0.3)
        assert candidate.score == 0.9


class TestSearchQuality:
    def test_distribution(self):
        results = [
            _candidate("x" * 40, 0.9, source="a"),
            _candidate("x" * 40, 0.7, source="a"),
            _candidate("x" * 40, 0.5, source="b"),
        ]
        quality = search_quality(results, context_window_size=100)
        assert quality["result_count"] == 3
        assert quality["average_score"] == pytest.approx(0.7)
        assert quality["score_distribution"] == {"high": 1, "medium": 1, "low": 1}
        assert quality["source_distribution"] == {"a": 2, "b": 1}
        assert quality["content_coverage"] == pytest.approx(0.3)

    def test_empty(self):
        quality = search_quality([], context_window_size=4000)
        assert quality["result_count"] == 0
        assert quality["content_coverage"] == 0.0
        assert quality["diversity_score"] == 0.0

    def test_coverage_capped(self):
        quality = search_quality([_candidate("x" * 10000, 0.9)], context_window_size=500)
        assert quality["content_coverage"] == 1.0

    def test_diversity_score(self):
        pair = [_candidate("a b c", 0.9), _candidate("b c d", 0.9)]
        assert search_quality(pair, 4000)["diversity_score"] == pytest.approx(0.5)

        trio = pair + [_candidate("x y", 0.9)]
        # pairwise overlaps 0.5, 0.0, 0.0
        assert search_quality(trio, 4000)["diversity_score"] == pytest.approx(5 / 6)

        assert search_quality([_candidate("sozinho", 0.9)], 4000)["diversity_score"] == 1.0
