"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.integration  — Requires real external services (remote index, embedding API)
    @pytest.mark.embedding    — Requires sentence-transformers model downloadable

Run stringent tests:
    pytest -m integration             # all integration tests
    pytest -m embedding               # only embedding model tests
    pytest -m "not integration"       # skip all integration tests (fast CI)
"""

import hashlib
import math
import os
from typing import Callable, List, Optional

import pytest

from captain_context.config import PipelineConfig
from captain_context.embedding_cache import EmbeddingCache, QueryEmbedder
from captain_context.embedding_provider import EmbeddingProvider
from captain_context.pipeline import ContextPipeline
from captain_context.search import VectorSearchClient
from captain_context.vector_store import InMemoryVectorStore, VectorDocument, VectorSearchResult, VectorStore

# ─── Infrastructure checks ────────────────────────────────────────────────────


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer("all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


def _integration_configured() -> bool:
    return bool(os.environ.get("CAPTAIN_OPENAI_API_KEY") and os.environ.get("CHROMA_HOST"))


_EMBEDDING_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: requires external services (remote index, embedding API)")
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _EMBEDDING_OK

    needs_embedding = any("embedding" in item.keywords for item in items)
    if needs_embedding and _EMBEDDING_OK is None:
        _EMBEDDING_OK = _embedding_model_available()

    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")
    skip_integration = pytest.mark.skip(reason="CAPTAIN_OPENAI_API_KEY and CHROMA_HOST not set")

    for item in items:
        if "embedding" in item.keywords and not _EMBEDDING_OK:
            item.add_marker(skip_embedding)
        if "integration" in item.keywords and not _integration_configured():
            item.add_marker(skip_integration)


# ─── Deterministic Embedding Provider ─────────────────────────────────────────
#
# Maps each text to a reproducible unit vector derived from its SHA-512 hash.
# Components are centred on zero, so unrelated texts land near cosine 0 and
# identical texts at exactly 1.0. Lets the full pipeline run without a model.


class DeterministicEmbeddingProvider(EmbeddingProvider):
    """Hash-based embedding provider that counts its calls."""

    DIM = 64

    def __init__(self) -> None:
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.text_to_vec(t) for t in texts]

    def dimension(self) -> int:
        return self.DIM

    @classmethod
    def text_to_vec(cls, text: str) -> List[float]:
        h = hashlib.sha512(text.encode("utf-8")).digest()
        raw = [((h[i % len(h)] + i * 37) % 256) / 255.0 - 0.5 for i in range(cls.DIM)]
        norm = math.sqrt(sum(x * x for x in raw))
        return [x / norm for x in raw] if norm > 0 else raw


class FailingEmbeddingProvider(EmbeddingProvider):
    """Always raises, like an unreachable embedding API."""

    def __init__(self, dim: int = DeterministicEmbeddingProvider.DIM) -> None:
        self._dim = dim
        self.call_count = 0

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.call_count += 1
        raise ConnectionError("embedding service unreachable")

    def dimension(self) -> int:
        return self._dim


class StaticVectorStore(VectorStore):
    """Returns a fixed result list regardless of the query vector."""

    def __init__(self, results: List[VectorSearchResult]) -> None:
        self._results = list(results)
        self.queries: List[int] = []

    def add(self, documents: List[VectorDocument]) -> None:
        raise NotImplementedError("StaticVectorStore is read-only")

    def search(self, query_embedding: List[float], top_k: int = 10) -> List[VectorSearchResult]:
        self.queries.append(top_k)
        return self._results[:top_k]

    def count(self) -> int:
        return len(self._results)


class FailingVectorStore(VectorStore):
    """Raises on every search, like an index with a broken transport."""

    def add(self, documents: List[VectorDocument]) -> None:
        raise ConnectionError("vector index unreachable")

    def search(self, query_embedding: List[float], top_k: int = 10) -> List[VectorSearchResult]:
        raise ConnectionError("vector index unreachable")

    def count(self) -> int:
        raise ConnectionError("vector index unreachable")


# ─── Knowledge base passages ──────────────────────────────────────────────────

PASSAGES = [
    VectorDocument(
        id="pilares-1",
        text=(
            "Os três pilares do Modo Caverna são propósito, foco e progresso. O propósito dá "
            "direção, o foco elimina o ruído e o progresso transforma intenção em resultado. "
            "Sem os três juntos, a jornada perde força."
        ),
        metadata={"source": "pilares.md", "section": "Visão geral"},
    ),
    VectorDocument(
        id="focus-1",
        text=(
            "Cave Focus é o módulo de concentração profunda. Defina um bloco de tempo, desligue "
            "notificações e trabalhe em uma única tarefa até o fim do ciclo."
        ),
        metadata={"source": "cave-focus.md"},
    ),
    VectorDocument(
        id="protocolo-1",
        text=(
            "O Protocolo de 40 Dias propõe uma rotina diária com metas pequenas e verificáveis. "
            "Registre cada dia concluído para construir consistência."
        ),
        metadata={"source": "protocolo-40-dias.md", "section": "Rotina"},
    ),
]


def seed_store(store: VectorStore, documents: List[VectorDocument] = PASSAGES) -> VectorStore:
    store.add(
        [
            VectorDocument(
                id=d.id,
                text=d.text,
                embedding=DeterministicEmbeddingProvider.text_to_vec(d.text),
                metadata=dict(d.metadata),
            )
            for d in documents
        ]
    )
    return store


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def provider() -> DeterministicEmbeddingProvider:
    return DeterministicEmbeddingProvider()


@pytest.fixture
def failing_provider() -> FailingEmbeddingProvider:
    return FailingEmbeddingProvider()


@pytest.fixture
def failing_store() -> FailingVectorStore:
    return FailingVectorStore()


@pytest.fixture
def passages() -> List[VectorDocument]:
    return list(PASSAGES)


@pytest.fixture
def seeded_store() -> InMemoryVectorStore:
    return seed_store(InMemoryVectorStore())


@pytest.fixture
def static_store() -> Callable[..., StaticVectorStore]:
    """Factory: ``static_store([(text, score, metadata), ...])``."""

    def _make(rows) -> StaticVectorStore:
        return StaticVectorStore(
            [
                VectorSearchResult(id=f"doc-{i}", text=text, score=score, metadata=dict(metadata))
                for i, (text, score, metadata) in enumerate(rows)
            ]
        )

    return _make


@pytest.fixture
def make_pipeline(provider) -> Callable[..., ContextPipeline]:
    """Factory: wire a ContextPipeline around a store, with optional overrides."""

    def _make(
        store: VectorStore,
        embedding_provider: Optional[EmbeddingProvider] = None,
        cache: Optional[EmbeddingCache] = None,
        **overrides,
    ) -> ContextPipeline:
        config = PipelineConfig().with_overrides(**overrides)
        embedder = QueryEmbedder(embedding_provider or provider, cache if cache is not None else EmbeddingCache())
        return ContextPipeline(embedder, VectorSearchClient(store, timeout_s=config.search_timeout_s), config=config)

    return _make
