"""
Abstract vector index interface with Chroma and in-memory backends.

Chroma operates in three modes:
- Ephemeral Client: in-memory, used by tests and local experiments
- PersistentClient: no server needed, local persistence
- HttpClient: connects to a remote Chroma service

Only the read path matters to the pipeline; ``add`` exists to seed
indexes in tests and development. Ingestion is handled elsewhere.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

LOG = logging.getLogger("context.vector_store")


@dataclass
class VectorDocument:
    """A knowledge-base passage stored in the index."""

    id: str
    text: str
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorSearchResult:
    """A single raw match from the index."""

    id: str
    text: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    """
    Abstract interface for vector storage and similarity search.

    ``search`` returns at most ``top_k`` matches ordered by similarity and
    an empty list (not an error) when the index has nothing to return.
    """

    @abstractmethod
    def add(self, documents: List[VectorDocument]) -> None:
        """Add documents to the store. Upserts on matching IDs."""

    @abstractmethod
    def search(self, query_embedding: List[float], top_k: int = 10) -> List[VectorSearchResult]:
        """Search for similar documents by embedding vector."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of documents in the store."""

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


# Chroma accepts only these metadata value types.
_CHROMA_SCALARS = (str, int, float, bool)


def _connect_chroma(persist_directory: Optional[str], chroma_host: Optional[str], chroma_port: int) -> Any:
    import chromadb

    if chroma_host:
        LOG.info("Chroma: connecting to %s:%d", chroma_host, chroma_port)
        return chromadb.HttpClient(host=chroma_host, port=chroma_port)
    if persist_directory:
        Path(persist_directory).mkdir(parents=True, exist_ok=True)
        LOG.info("Chroma: persistent knowledge base at %s", persist_directory)
        return chromadb.PersistentClient(path=persist_directory)
    LOG.info("Chroma: ephemeral (in-memory) knowledge base")
    return chromadb.Client()


def _chroma_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten passage metadata into values Chroma will store."""
    flat: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, _CHROMA_SCALARS):
            flat[key] = value
        elif isinstance(value, (list, tuple, set)):
            flat[key] = ", ".join(str(v) for v in value)
        else:
            flat[key] = str(value)
    # Chroma rejects empty metadata dicts
    flat.setdefault("source", "")
    return flat


class ChromaVectorStore(VectorStore):
    """
    Knowledge base passages in a Chroma collection (cosine space).

    Set CHROMA_HOST to connect to a remote Chroma instance, CHROMA_PERSIST_DIR
    for local persistence; otherwise the collection lives in memory.
    Cosine distance is reported back as similarity ``1 - distance``,
    floored at 0.
    """

    def __init__(
        self,
        collection_name: str = "knowledge_base",
        persist_directory: Optional[str] = None,
        chroma_host: Optional[str] = None,
        chroma_port: int = 8000,
    ) -> None:
        self._client = _connect_chroma(persist_directory, chroma_host, chroma_port)
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self.collection_name = collection_name

    def add(self, documents: List[VectorDocument]) -> None:
        if not documents:
            return
        if any(d.embedding is None for d in documents):
            raise ValueError("ChromaVectorStore requires precomputed embeddings for every passage")

        self._collection.upsert(
            ids=[d.id for d in documents],
            documents=[d.text for d in documents],
            embeddings=[list(d.embedding) for d in documents],
            metadatas=[_chroma_metadata(d.metadata) for d in documents],
        )
        LOG.debug("Upserted %d passage(s) into %s", len(documents), self.collection_name)

    def search(self, query_embedding: List[float], top_k: int = 10) -> List[VectorSearchResult]:
        n_results = min(top_k, self._collection.count())
        if n_results == 0:
            return []

        response = self._collection.query(
            query_embeddings=[query_embedding],
            n_results=n_results,
            include=["documents", "metadatas", "distances"],
        )
        ids = (response.get("ids") or [[]])[0]
        texts = (response.get("documents") or [[None] * len(ids)])[0]
        metadatas = (response.get("metadatas") or [[None] * len(ids)])[0]
        distances = (response.get("distances") or [[1.0] * len(ids)])[0]

        return [
            VectorSearchResult(
                id=passage_id,
                text=text or "",
                score=max(0.0, 1.0 - float(distance)),
                metadata=dict(meta or {}),
            )
            for passage_id, text, meta, distance in zip(ids, texts, metadatas, distances)
        ]

    def count(self) -> int:
        return self._collection.count()


class InMemoryVectorStore(VectorStore):
    """Brute-force cosine similarity over normalized numpy vectors."""

    def __init__(self) -> None:
        self._docs: Dict[str, VectorDocument] = {}
        self._index: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    def add(self, documents: List[VectorDocument]) -> None:
        with self._lock:
            for doc in documents:
                if doc.embedding is None:
                    raise ValueError(f"Document {doc.id!r} has no embedding")
                vec = np.asarray(doc.embedding, dtype=float)
                norm = np.linalg.norm(vec)
                self._docs[doc.id] = doc
                self._index[doc.id] = vec / norm if norm > 0 else vec

    def search(self, query_embedding: List[float], top_k: int = 10) -> List[VectorSearchResult]:
        query = np.asarray(query_embedding, dtype=float)
        norm = np.linalg.norm(query)
        with self._lock:
            if not self._index or norm == 0:
                return []
            ids = list(self._index)
            matrix = np.vstack([self._index[i] for i in ids])
            docs = [self._docs[i] for i in ids]

        if matrix.shape[1] != query.shape[0]:
            raise ValueError(f"Query has {query.shape[0]} dimensions, index has {matrix.shape[1]}")

        # Clip so floating-point noise never produces scores outside [0, 1].
        scores = np.clip(matrix @ (query / norm), 0.0, 1.0)
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            VectorSearchResult(id=docs[i].id, text=docs[i].text, score=float(scores[i]), metadata=dict(docs[i].metadata))
            for i in order
        ]

    def count(self) -> int:
        with self._lock:
            return len(self._docs)


def build_vector_store(
    backend: str = "chroma",
    **kwargs: Any,
) -> VectorStore:
    """
    Factory: create a VectorStore of the requested type.

    Args:
        backend: "chroma" or "memory"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "chroma":
        return ChromaVectorStore(**kwargs)
    elif backend == "memory":
        return InMemoryVectorStore(**kwargs)
    else:
        raise ValueError(
            f"Unknown vector store backend: {backend!r}. "
            f"Supported: 'chroma', 'memory'"
        )
