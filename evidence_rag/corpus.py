"""Immutable corpus snapshots shared read-only by concurrent queries."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from evidence_rag.concepts import ConceptGraph, build_concept_graph
from evidence_rag.models import Chunk, Document
from evidence_rag.retrieval import BaseRetriever, EmbeddingRetriever, chunk_lookup

RetrieverFactory = Callable[[list[Chunk]], BaseRetriever]


@dataclass(frozen=True)
class CorpusSnapshot:
    generation: int = 0
    documents: tuple[Document, ...] = ()
    chunks: tuple[Chunk, ...] = ()
    lookup: dict[str, Chunk] = field(default_factory=dict)
    graph: ConceptGraph = field(default_factory=ConceptGraph)
    retriever: BaseRetriever | None = None

    @property
    def is_empty(self) -> bool:
        return not self.chunks


def documents_from_chunks(chunks: Sequence[Chunk]) -> list[Document]:
    """Group chunks by filename, in first-seen document order and index order."""
    grouped: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        grouped.setdefault(chunk.filename, []).append(chunk)
    return [
        Document(
            filename=filename,
            chunk_ids=[c.id for c in sorted(members, key=lambda c: c.index)],
        )
        for filename, members in grouped.items()
    ]


def build_snapshot(
    chunks: Sequence[Chunk],
    *,
    generation: int,
    documents: Sequence[Document] | None = None,
    retriever_factory: RetrieverFactory = EmbeddingRetriever,
) -> CorpusSnapshot:
    unique = list(chunk_lookup(chunks).values())
    if len(unique) != len(chunks):
        raise ValueError("Chunk ids must be unique within a corpus.")
    docs = list(documents) if documents is not None else documents_from_chunks(unique)
    return CorpusSnapshot(
        generation=generation,
        documents=tuple(docs),
        chunks=tuple(unique),
        lookup=chunk_lookup(unique),
        graph=build_concept_graph(unique),
        retriever=retriever_factory(unique) if unique else None,
    )
