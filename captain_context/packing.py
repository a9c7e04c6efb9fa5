"""
Context window packer.

Greedy selection of ranked results into a token budget. A fixed overhead
is reserved up front (larger when source attribution is on). Results that
fit whole are included whole; the first result that does not fit is
truncated at a sentence or word boundary when at least
MIN_TRUNCATION_TOKENS remain, and packing stops there.

Token cost is the rough ``ceil(len(text) / 4)`` estimate everywhere.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import List, Optional, Sequence, Tuple

from captain_context.types import ELLIPSIS, CHARS_PER_TOKEN, PackedContext, PackingMetrics, RankedResult, estimate_tokens

LOG = logging.getLogger("context.packing")

PASSAGE_SEPARATOR = "\n\n---\n\n"
ATTRIBUTION_OVERHEAD_TOKENS = 200
PLAIN_OVERHEAD_TOKENS = 50
MIN_TRUNCATION_TOKENS = 100
# Below this share of the character budget, sentence packing gives way to word packing.
SENTENCE_FILL_RATIO = 0.3

# A sentence keeps its own terminal punctuation; a trailing fragment without one also counts.
_SENTENCE = re.compile(r"[^.!?]+(?:[.!?]+|$)")

# Internal source identifier (substring) → human-readable name.
SOURCE_DISPLAY_NAMES: Tuple[Tuple[str, str], ...] = (
    ("modocaverna-docs.md", "Documentação Principal do Modo Caverna"),
    ("cave-focus", "Cave Focus - Módulo de Foco"),
    ("pilares", "Os Três Pilares Fundamentais"),
    ("manifesto", "Manifesto Caverna"),
    ("protocolo", "Protocolo de 40 Dias"),
)


def format_source_attribution(source: str, section: Optional[str] = None) -> str:
    """Readable source name, with `` - section`` appended when known."""
    name = source
    lowered = (source or "").lower()
    for key, display in SOURCE_DISPLAY_NAMES:
        if key in lowered:
            name = display
            break
    if section:
        return f"{name} - {section}"
    return name


def _word_truncate(content: str, max_chars: int) -> str:
    cut = content[:max_chars]
    boundary = cut.rfind(" ")
    if boundary > 0:
        cut = cut[:boundary]
    return cut.rstrip()


def truncate_content(content: str, max_tokens: int) -> str:
    """
    Shorten ``content`` to at most ``max_tokens`` estimated tokens.

    Whole sentences, with their own punctuation, are accumulated first; if
    they fill less than 30% of the character budget, the cut falls on a
    word boundary instead. The result always ends with the ellipsis marker,
    which counts toward the budget. Content that already fits is returned
    unchanged.
    """
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(content) <= max_chars:
        return content

    available = max_chars - len(ELLIPSIS)
    if available <= 0:
        return ""

    packed = ""
    for match in _SENTENCE.finditer(content):
        sentence = match.group(0).strip()
        if not sentence:
            continue
        piece = f"{packed} {sentence}" if packed else sentence
        if len(piece) > available:
            break
        packed = piece

    if len(packed) < SENTENCE_FILL_RATIO * available:
        packed = _word_truncate(content, available)

    # No period directly before the ellipsis.
    return packed.rstrip(".") + ELLIPSIS


class ContextPacker:
    """Packs ranked results into a single attributed context string."""

    def __init__(self, separator: str = PASSAGE_SEPARATOR) -> None:
        self._separator = separator

    def render(self, result: RankedResult, attribute_sources: bool) -> str:
        if attribute_sources and result.source:
            attribution = format_source_attribution(result.source, result.section)
            return f"{result.content}\n\n[Source: {attribution}]"
        return result.content

    def _render_all(self, results: Sequence[RankedResult], attribute_sources: bool) -> str:
        return self._separator.join(self.render(r, attribute_sources) for r in results)

    def select(self, ranked: Sequence[RankedResult], budget_tokens: int, attribute_sources: bool) -> List[RankedResult]:
        """Greedy budget walk. The boundary item, if any, is returned truncated."""
        overhead = ATTRIBUTION_OVERHEAD_TOKENS if attribute_sources else PLAIN_OVERHEAD_TOKENS
        remaining = budget_tokens - overhead
        selected: List[RankedResult] = []

        for result in ranked:
            cost = estimate_tokens(result.content)
            if cost <= remaining:
                selected.append(result)
                remaining -= cost
                continue

            if remaining >= MIN_TRUNCATION_TOKENS:
                shortened = truncate_content(result.content, remaining)
                LOG.debug(
                    "Truncated boundary passage from %d to %d tokens (%d remaining)",
                    cost,
                    estimate_tokens(shortened),
                    remaining,
                )
                selected.append(dataclasses.replace(result, content=shortened))
            else:
                LOG.debug("Stopped packing: %d tokens remaining, next passage needs %d", remaining, cost)
            break

        return selected

    def pack(
        self,
        ranked: Sequence[RankedResult],
        budget_tokens: int,
        attribute_sources: bool = True,
        original_count: Optional[int] = None,
        filtered_count: Optional[int] = None,
    ) -> PackedContext:
        """
        Build a PackedContext from ranked results.

        ``original_count`` and ``filtered_count`` describe the candidate set
        before ranking; both default to ``len(ranked)``.
        """
        selected = self.select(ranked, budget_tokens, attribute_sources)
        text = self._render_all(selected, attribute_sources)

        # Attribution suffixes and separators are not itemised in the walk above.
        while selected and estimate_tokens(text) > budget_tokens:
            dropped = selected.pop()
            LOG.debug("Dropped trailing passage (source=%s) to respect budget", dropped.source)
            text = self._render_all(selected, attribute_sources)

        total_tokens = estimate_tokens(text)
        relevance = sum(r.score for r in selected) / len(selected) if selected else 0.0
        metrics = PackingMetrics(
            original_count=len(ranked) if original_count is None else original_count,
            filtered_count=len(ranked) if filtered_count is None else filtered_count,
            truncated_count=sum(1 for r in selected if r.truncated),
            token_utilization=min(1.0, total_tokens / budget_tokens) if budget_tokens > 0 else 0.0,
        )
        return PackedContext(
            text=text,
            used_results=tuple(selected),
            total_tokens=total_tokens,
            relevance_score=relevance,
            fallback_used=False,
            metrics=metrics,
        )
