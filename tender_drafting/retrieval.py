"""
retrieval.py — Embeddings and the answer memory (similarity store).

Approved answers from earlier tenders are kept as (question embedding,
answer) pairs per company. When a new tender asks "Describe your quality
management approach", the generator gets to see what the company said
last time it was asked something that close.

Embedders:
  - OpenAIEmbedder: text-embedding-3-small, the production default.
  - SentenceTransformerEmbedder: all-MiniLM-L6-v2 on CPU, for offline use.
    Model is lazy-loaded and cached at module level.

Memories:
  - ChromaAnswerMemory: chromadb persistent collection, cosine space,
    filtered by company_id metadata. The default.
  - InMemoryAnswerMemory: numpy cosine over a list. Tests and the CLI.

Both memories return entries with a `similarity` in [0, 1] where 1 is
identical; callers apply their own threshold semantics on top.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Protocol

import numpy as np

from tender_drafting.config import LLMConfig, RetrievalConfig, config
from tender_drafting.errors import CompletionError

logger = logging.getLogger(__name__)

# ── Singleton caches ──────────────────────────────────────────────────────
_st_models: Dict[str, Any] = {}


@dataclass
class MemoryEntry:
    id: str
    company_id: str
    question: str
    answer: str
    embedding: List[float]
    confidence: float = 0.8
    usage_count: int = 1
    source_tender_id: Optional[str] = None
    similarity: float = 0.0


class Embedder(Protocol):
    def embed(self, text: str) -> List[float]: ...


class AnswerMemory(Protocol):
    def search(
        self, embedding: List[float], company_id: str, threshold: float, limit: int
    ) -> List[MemoryEntry]: ...

    def add(self, entry: MemoryEntry) -> str: ...

    def update(self, entry: MemoryEntry) -> None: ...


# ── Embedders ─────────────────────────────────────────────────────────────

class OpenAIEmbedder:
    def __init__(
        self,
        settings: Optional[RetrievalConfig] = None,
        llm_settings: Optional[LLMConfig] = None,
        client: Any = None,
    ):
        self.settings = settings or config.retrieval
        self.llm_settings = llm_settings or config.llm
        if client is None:
            from openai import OpenAI
            client = OpenAI(api_key=self.llm_settings.api_key, max_retries=0)
        self._client = client

    def embed(self, text: str) -> List[float]:
        from openai import OpenAIError

        try:
            response = self._client.embeddings.create(
                model=self.settings.openai_embedding_model,
                input=text,
                encoding_format="float",
                timeout=self.llm_settings.timeout_seconds,
            )
        except OpenAIError as exc:
            raise CompletionError(f"Embedding request failed: {exc}") from exc
        if not response.data:
            raise CompletionError("Embedding response had no data")
        return list(response.data[0].embedding)


def _get_st_model(model_name: str):
    """Lazy-load and cache a sentence-transformer model."""
    model = _st_models.get(model_name)
    if model is None:
        from sentence_transformers import SentenceTransformer

        logger.info("Loading embedding model: %s ...", model_name)
        model = SentenceTransformer(model_name)
        logger.info(
            "Embedding model loaded (dim=%d).", model.get_sentence_embedding_dimension()
        )
        _st_models[model_name] = model
    return model


class SentenceTransformerEmbedder:
    def __init__(self, settings: Optional[RetrievalConfig] = None):
        self.settings = settings or config.retrieval

    def embed(self, text: str) -> List[float]:
        model = _get_st_model(self.settings.local_embedding_model)
        vector = model.encode([text], normalize_embeddings=True, show_progress_bar=False)
        return np.asarray(vector[0], dtype="float32").tolist()


# ── Memories ──────────────────────────────────────────────────────────────

class InMemoryAnswerMemory:
    def __init__(self, entries: Optional[List[MemoryEntry]] = None):
        self._entries: Dict[str, MemoryEntry] = {e.id: e for e in (entries or [])}
        self._lock = threading.Lock()

    def search(
        self, embedding: List[float], company_id: str, threshold: float, limit: int
    ) -> List[MemoryEntry]:
        with self._lock:
            candidates = [e for e in self._entries.values() if e.company_id == company_id]
        if not candidates:
            return []

        matrix = np.asarray([e.embedding for e in candidates], dtype="float32")
        query = np.asarray(embedding, dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        scores = matrix @ query / norms

        order = np.argsort(-scores)
        matches: List[MemoryEntry] = []
        for i in order:
            score = float(scores[i])
            if score < threshold:
                break
            matches.append(replace(candidates[i], similarity=score))
            if len(matches) >= limit:
                break
        return matches

    def add(self, entry: MemoryEntry) -> str:
        entry_id = entry.id or str(uuid.uuid4())
        with self._lock:
            self._entries[entry_id] = replace(entry, id=entry_id, similarity=0.0)
        return entry_id

    def update(self, entry: MemoryEntry) -> None:
        with self._lock:
            if entry.id not in self._entries:
                raise KeyError(f"Memory entry not found: {entry.id}")
            self._entries[entry.id] = replace(entry, similarity=0.0)

    def all(self) -> List[MemoryEntry]:
        with self._lock:
            return list(self._entries.values())


class ChromaAnswerMemory:
    """
    chromadb persistent collection. Embeddings are always supplied by us,
    so the collection is created without an embedding function.
    """

    def __init__(self, settings: Optional[RetrievalConfig] = None, client: Any = None):
        self.settings = settings or config.retrieval
        if client is None:
            import chromadb
            client = chromadb.PersistentClient(path=self.settings.chroma_persist_dir)
        self._collection = client.get_or_create_collection(
            name=self.settings.chroma_collection,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )
        logger.info(
            "Answer memory: chromadb collection '%s' (%d entries)",
            self.settings.chroma_collection, self._collection.count(),
        )

    def search(
        self, embedding: List[float], company_id: str, threshold: float, limit: int
    ) -> List[MemoryEntry]:
        if self._collection.count() == 0:
            return []
        results = self._collection.query(
            query_embeddings=[embedding],
            n_results=limit,
            where={"company_id": company_id},
            include=["documents", "metadatas", "distances", "embeddings"],
        )

        matches: List[MemoryEntry] = []
        ids = results["ids"][0] if results.get("ids") else []
        for i, entry_id in enumerate(ids):
            # cosine space: distance = 1 - similarity
            similarity = 1.0 - float(results["distances"][0][i])
            if similarity < threshold:
                continue
            meta = results["metadatas"][0][i] or {}
            vectors = results.get("embeddings")
            vector = list(vectors[0][i]) if vectors is not None else []
            matches.append(_entry_from_chroma(entry_id, results["documents"][0][i], meta, vector, similarity))
        return matches

    def add(self, entry: MemoryEntry) -> str:
        entry_id = entry.id or str(uuid.uuid4())
        self._collection.add(
            ids=[entry_id],
            embeddings=[entry.embedding],
            documents=[entry.question],
            metadatas=[_chroma_metadata(entry)],
        )
        return entry_id

    def update(self, entry: MemoryEntry) -> None:
        self._collection.update(
            ids=[entry.id],
            embeddings=[entry.embedding] if entry.embedding else None,
            documents=[entry.question],
            metadatas=[_chroma_metadata(entry)],
        )


def _chroma_metadata(entry: MemoryEntry) -> Dict[str, Any]:
    # chromadb metadata values must be str/int/float/bool, never None
    return {
        "company_id": entry.company_id,
        "answer": entry.answer,
        "confidence": float(entry.confidence),
        "usage_count": int(entry.usage_count),
        "source_tender_id": entry.source_tender_id or "",
    }


def _entry_from_chroma(
    entry_id: str, document: str, meta: Dict[str, Any], vector: List[float], similarity: float
) -> MemoryEntry:
    return MemoryEntry(
        id=entry_id,
        company_id=str(meta.get("company_id", "")),
        question=document or "",
        answer=str(meta.get("answer", "")),
        embedding=vector,
        confidence=float(meta.get("confidence", 0.0)),
        usage_count=int(meta.get("usage_count", 0)),
        source_tender_id=meta.get("source_tender_id") or None,
        similarity=similarity,
    )


# ── Factories ─────────────────────────────────────────────────────────────

def get_embedder(settings: Optional[RetrievalConfig] = None) -> Optional[Embedder]:
    """Configured embedder, or None when retrieval can't run (no API key)."""
    settings = settings or config.retrieval
    provider = settings.embedding_provider.strip().lower()

    if provider == "openai":
        if not config.llm.api_key:
            logger.warning("OPENAI_API_KEY not set; prior-answer retrieval disabled")
            return None
        return OpenAIEmbedder(settings)
    if provider in ("sentence_transformers", "sentence-transformers", "local"):
        return SentenceTransformerEmbedder(settings)
    if provider in ("", "none", "off"):
        return None
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")


def get_answer_memory(settings: Optional[RetrievalConfig] = None) -> AnswerMemory:
    settings = settings or config.retrieval
    backend = settings.memory_backend.strip().lower()
    if backend == "chroma":
        return ChromaAnswerMemory(settings)
    if backend in ("memory", "in_memory", "inmemory"):
        return InMemoryAnswerMemory()
    raise ValueError(f"Unknown memory backend: {settings.memory_backend}")
