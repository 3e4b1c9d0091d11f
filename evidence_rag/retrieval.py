"""Base retrieval, relevance scoring and chunk-set merging."""

from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

from evidence_rag.config import EMBED_MODEL_NAME, EMBED_PROVIDER, HASH_EMBED_DIM, OFFLINE_MODE
from evidence_rag.models import Chunk, QueryIntent
from evidence_rag.text import normalize_concept

log = logging.getLogger(__name__)

ENTITY_HIT_WEIGHT = 0.15
CONCEPT_HIT_WEIGHT = 0.1


class BaseRetriever(Protocol):
    def search(
        self,
        query: str,
        top_k: int,
        options: dict[str, Any] | None = None,
    ) -> list[Chunk]: ...


class RelevanceScorer(Protocol):
    def __call__(
        self,
        chunk: Chunk,
        query: str,
        tokens: Sequence[str],
        entities: Sequence[str],
        concepts: Sequence[str],
    ) -> float: ...


def lexical_relevance(
    chunk: Chunk,
    query: str,
    tokens: Sequence[str],
    entities: Sequence[str],
    concepts: Sequence[str],
) -> float:
    """Share of query tokens present in the chunk plus entity/concept bonuses."""
    del query
    text = normalize_concept(chunk.text)
    if not text:
        return 0.0
    words = set(text.split(" "))
    unique_tokens = set(tokens)
    token_share = (
        sum(1 for token in unique_tokens if token in words) / len(unique_tokens)
        if unique_tokens
        else 0.0
    )
    entity_hits = sum(1 for entity in set(entities) if entity and entity in text)
    concept_hits = sum(1 for concept in set(concepts) if concept and concept in text)
    return round(
        token_share
        + ENTITY_HIT_WEIGHT * min(entity_hits, 4)
        + CONCEPT_HIT_WEIGHT * min(concept_hits, 5),
        6,
    )


def _dot(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b, strict=False))


def _l2_norm(v: list[float]) -> float:
    return (_dot(v, v) + 1e-12) ** 0.5


def _normalize(vectors: list[list[float]]) -> list[list[float]]:
    normalized: list[list[float]] = []
    for row in vectors:
        n = _l2_norm(row)
        normalized.append([value / n for value in row])
    return normalized


class HashEmbedder:
    """Deterministic offline embedder that requires no network or model downloads."""

    def __init__(self, dim: int = HASH_EMBED_DIM) -> None:
        self._dim = max(64, dim)

    def encode(
        self,
        texts: list[str],
        convert_to_numpy: bool = True,
        normalize_embeddings: bool = False,
    ) -> list[list[float]]:
        del convert_to_numpy
        matrix = [[0.0 for _ in range(self._dim)] for _ in texts]
        for row, text in enumerate(texts):
            for token in normalize_concept(text).split():
                digest = hashlib.sha256(token.encode("utf-8")).digest()
                idx = int.from_bytes(digest[:2], "big") % self._dim
                sign = 1.0 if digest[2] % 2 == 0 else -1.0
                matrix[row][idx] += sign
        if normalize_embeddings:
            matrix = _normalize(matrix)
        return matrix


class EmbeddingRetriever:
    """Default base retriever: cosine similarity over chunk embeddings."""

    def __init__(self, chunks: list[Chunk]) -> None:
        self._chunks = chunks
        provider = os.getenv("EMBED_PROVIDER", EMBED_PROVIDER).strip().lower()
        offline = os.getenv("OFFLINE_MODE", "1" if OFFLINE_MODE else "0").strip().lower() in {
            "1",
            "true",
            "yes",
        }
        if offline or provider == "hash":
            self._embedder = HashEmbedder()
        else:
            try:
                from sentence_transformers import SentenceTransformer

                self._embedder = SentenceTransformer(
                    os.getenv("EMBED_MODEL_NAME", EMBED_MODEL_NAME)
                )
            except Exception as exc:
                # Falls back to deterministic hash embeddings when local binary deps are broken.
                log.warning(
                    "Falling back to hash embedder because sentence-transformers failed: %s",
                    exc,
                )
                self._embedder = HashEmbedder()
        self._matrix: list[list[float]] = []
        if chunks:
            matrix = self._embedder.encode(
                [chunk.text for chunk in chunks],
                convert_to_numpy=True,
                normalize_embeddings=False,
            )
            if hasattr(matrix, "tolist"):
                matrix = matrix.tolist()
            self._matrix = _normalize(matrix)

    def search(
        self,
        query: str,
        top_k: int,
        options: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        del options
        if not self._chunks or top_k <= 0:
            return []
        q = self._embedder.encode([query], convert_to_numpy=True, normalize_embeddings=False)
        if hasattr(q, "tolist"):
            q = q.tolist()
        q_vec = _normalize(q)[0]
        scores = [_dot(row, q_vec) for row in self._matrix]
        best_idx = sorted(range(len(scores)), key=lambda idx: (-scores[idx], idx))[:top_k]
        return [
            self._chunks[idx].model_copy(update={"score": float(scores[idx])})
            for idx in best_idx
        ]


def chunk_lookup(chunks: Iterable[Chunk]) -> dict[str, Chunk]:
    return {chunk.id: chunk for chunk in chunks}


def distinct_documents(chunks: Iterable[Chunk]) -> set[str]:
    return {chunk.filename for chunk in chunks if chunk.filename}


def merge_unique_chunks(
    primary: Iterable[Chunk],
    secondary: Iterable[Chunk],
    limit: int | None = None,
) -> list[Chunk]:
    """Merge two chunk sets by id, order-stable by first occurrence.

    A repeated id keeps its first position and the higher of the two scores,
    so merging a set with itself returns the same set.
    """
    merged: dict[str, Chunk] = {}
    for chunk in [*primary, *secondary]:
        existing = merged.get(chunk.id)
        if existing is None:
            merged[chunk.id] = chunk
        elif chunk.score > existing.score:
            merged[chunk.id] = existing.model_copy(update={"score": chunk.score})
    out = list(merged.values())
    return out if limit is None else out[: max(0, limit)]


def rank_by_score(chunks: Iterable[Chunk]) -> list[Chunk]:
    """Descending score; ties keep their incoming order."""
    return sorted(chunks, key=lambda chunk: -chunk.score)


class Reranker(Protocol):
    def rerank(
        self,
        query: str,
        chunks: list[Chunk],
        top_k: int,
        intent: QueryIntent,
    ) -> list[Chunk]: ...


class Diversifier(Protocol):
    def diversify(self, ranked: list[Chunk], top_k: int) -> list[Chunk]: ...


class ScoreReranker:
    """Default reranker: order by the score each stage assigned."""

    def rerank(
        self,
        query: str,
        chunks: list[Chunk],
        top_k: int,
        intent: QueryIntent,
    ) -> list[Chunk]:
        del query, top_k, intent
        return rank_by_score(chunks)


class NoopDiversifier:
    def diversify(self, ranked: list[Chunk], top_k: int) -> list[Chunk]:
        return ranked[:top_k]


class PerDocumentCapDiversifier:
    """Caps chunks per document, then back-fills from the overflow in rank order."""

    def __init__(self, max_per_document: int = 4) -> None:
        self._max = max(1, max_per_document)

    def diversify(self, ranked: list[Chunk], top_k: int) -> list[Chunk]:
        picked: list[Chunk] = []
        overflow: list[Chunk] = []
        per_doc: dict[str, int] = {}
        for chunk in ranked:
            count = per_doc.get(chunk.filename, 0)
            if count < self._max:
                picked.append(chunk)
                per_doc[chunk.filename] = count + 1
            else:
                overflow.append(chunk)
        return (picked + overflow)[:top_k]
