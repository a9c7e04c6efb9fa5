"""
Fallback substitution service.

Supplies a canned passage when retrieval fails or nothing qualifies, so
the pipeline never returns an empty context. Routing is keyword
containment over the lower-cased query: topics are checked in
declaration order and the first topic with a matching keyword wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from captain_context.types import PackedContext, PackingMetrics, RankedResult, estimate_tokens

LOG = logging.getLogger("context.fallback")

FALLBACK_TOKEN_UTILIZATION = 0.1


class FallbackTopic(str, Enum):
    """Known fallback topics. GENERAL matches when nothing else does."""

    MOTIVATION = "motivation"
    DISCIPLINE = "discipline"
    FOCUS = "focus"
    PROGRESS = "progress"
    OBSTACLES = "obstacles"
    GENERAL = "general"


@dataclass(frozen=True)
class FallbackPassage:
    keywords: Tuple[str, ...]
    content: str
    source: str
    section: str
    score: float


FALLBACK_CATALOG: Dict[FallbackTopic, FallbackPassage] = {
    FallbackTopic.MOTIVATION: FallbackPassage(
        keywords=("motivação", "motivation", "inspiração", "energia"),
        content=(
            "Guerreiro, a verdadeira transformação não vem de respostas externas, mas da sua "
            "capacidade de agir mesmo na incerteza. O Cave Mode ensina que Purpose > Focus > "
            "Progress. Defina seu propósito agora, foque no que pode controlar, e dê o próximo passo."
        ),
        source="fallback_motivation",
        section="core_principles",
        score=0.8,
    ),
    FallbackTopic.DISCIPLINE: FallbackPassage(
        keywords=("disciplina", "discipline", "hábito", "rotina", "consistência"),
        content=(
            "A disciplina é a ponte entre objetivos e conquistas. No Cave Mode, não esperamos "
            "motivação - criamos disciplina através da ação consistente. Comece pequeno, seja "
            "consistente, e construa momentum. Cada ação disciplinada fortalece o guerreiro interior."
        ),
        source="fallback_discipline",
        section="action_principles",
        score=0.8,
    ),
    FallbackTopic.FOCUS: FallbackPassage(
        keywords=("foco", "focus", "concentração", "atenção", "distração"),
        content=(
            "O foco é sua arma mais poderosa contra a mediocridade. Elimine distrações, defina "
            "prioridades claras, e proteja seu tempo como um recurso sagrado. Um guerreiro "
            "focado vale por mil dispersos."
        ),
        source="fallback_focus",
        section="concentration_mastery",
        score=0.8,
    ),
    FallbackTopic.PROGRESS: FallbackPassage(
        keywords=("progresso", "progress", "crescimento", "evolução", "melhoria"),
        content=(
            "O progresso não é sobre perfeição, é sobre consistência. Cada dia que você escolhe "
            "a ação sobre a procrastinação, você está vencendo. Meça seu progresso em ações "
            "tomadas, não em resultados alcançados."
        ),
        source="fallback_progress",
        section="growth_mindset",
        score=0.8,
    ),
    FallbackTopic.OBSTACLES: FallbackPassage(
        keywords=("obstáculo", "problema", "dificuldade", "desafio", "barreira"),
        content=(
            "Obstáculos não são impedimentos - são oportunidades disfarçadas para fortalecer "
            "sua determinação. O Cave Mode ensina que cada desafio é um teste da sua resolução. "
            "Encare-os de frente e cresça através deles."
        ),
        source="fallback_obstacles",
        section="resilience_building",
        score=0.8,
    ),
    FallbackTopic.GENERAL: FallbackPassage(
        keywords=(),
        content=(
            "Guerreiro, mesmo quando as respostas não estão claras, sua capacidade de ação "
            "permanece intacta. Use este momento para refletir sobre seus objetivos, reorganizar "
            "suas prioridades, e dar o próximo passo com determinação. A caverna ensina que a "
            "força vem de dentro."
        ),
        source="fallback_default",
        section="general_guidance",
        score=0.7,
    ),
}


def select_topic(query: str, catalog: Dict[FallbackTopic, FallbackPassage] | None = None) -> FallbackTopic:
    lowered = (query or "").lower()
    for topic, passage in (catalog or FALLBACK_CATALOG).items():
        if any(keyword in lowered for keyword in passage.keywords):
            return topic
    return FallbackTopic.GENERAL


class FallbackService:
    """Builds single-passage fallback contexts."""

    def __init__(self, catalog: Dict[FallbackTopic, FallbackPassage] | None = None) -> None:
        self._catalog = dict(catalog or FALLBACK_CATALOG)
        if FallbackTopic.GENERAL not in self._catalog:
            raise ValueError("Fallback catalog must define a GENERAL passage")

    def fallback(self, query: str, original_count: int = 0) -> PackedContext:
        """
        Return a fallback context for ``query``.

        The result always has ``fallback_used=True``, exactly one used
        result, the passage's fixed relevance score, and a deliberately low
        token utilization.
        """
        topic = select_topic(query, self._catalog)
        passage = self._catalog[topic]
        LOG.info("Using fallback passage for topic %s", topic.value)

        result = RankedResult(
            content=passage.content,
            score=passage.score,
            metadata={"source": passage.source, "section": passage.section, "topic": topic.value},
            composite_score=passage.score,
        )
        return PackedContext(
            text=passage.content,
            used_results=(result,),
            total_tokens=estimate_tokens(passage.content),
            relevance_score=passage.score,
            fallback_used=True,
            metrics=PackingMetrics(
                original_count=original_count,
                filtered_count=0,
                truncated_count=0,
                token_utilization=FALLBACK_TOKEN_UTILIZATION,
            ),
        )
