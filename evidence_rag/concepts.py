"""Concept extraction and the corpus-wide concept co-occurrence graph."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from evidence_rag.models import BridgeConcept, Chunk
from evidence_rag.text import NAMED_PHRASE, TECH_TERM, normalize_concept, tokenize

log = logging.getLogger(__name__)

MAX_CONCEPTS_PER_TEXT = 28
MAX_CONCEPTS_PER_CHUNK = 18
MAX_FREQUENT_TOKENS = 18
MIN_CONCEPT_LENGTH = 3

_QUOTED = re.compile(r'"([^"]{3,90})"')


def extract_rich_concepts(
    text: str,
    tokenizer: Callable[[str], list[str]] = tokenize,
) -> list[str]:
    """Return up to 28 normalized concepts in extraction order.

    Order: capitalized phrases, quoted terms, hyphen/underscore technical
    terms, then tokens (len >= 4) seen at least twice, most frequent first.
    """
    if not text:
        return []

    concepts: dict[str, None] = {}

    def add(raw: str) -> None:
        value = normalize_concept(raw)
        if len(value) >= MIN_CONCEPT_LENGTH:
            concepts.setdefault(value, None)

    for phrase in NAMED_PHRASE.findall(text):
        add(phrase)
    for quoted in _QUOTED.findall(text):
        add(quoted)
    for term in TECH_TERM.findall(text):
        add(term)

    freq = Counter(token for token in tokenizer(text) if len(token) >= 4)
    frequent = [token for token, count in freq.most_common() if count >= 2]
    for token in frequent[:MAX_FREQUENT_TOKENS]:
        add(token)

    return list(concepts)[:MAX_CONCEPTS_PER_TEXT]


@dataclass(frozen=True)
class ConceptGraph:
    """Concept adjacency plus the indexes built alongside it.

    Instances are never patched; a corpus change builds a new one.
    """

    adjacency: dict[str, dict[str, float]] = field(default_factory=dict)
    concept_to_chunk_ids: dict[str, frozenset[str]] = field(default_factory=dict)
    chunk_concepts: dict[str, tuple[str, ...]] = field(default_factory=dict)
    chunk_to_document: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.adjacency or not self.concept_to_chunk_ids

    def neighbors(self, concept: str, limit: int) -> list[tuple[str, float]]:
        edges = self.adjacency.get(concept)
        if not edges:
            return []
        return sorted(edges.items(), key=lambda item: (-item[1], item[0]))[:limit]

    def concepts_for(self, chunk: Chunk) -> list[str]:
        cached = self.chunk_concepts.get(chunk.id)
        if cached is not None:
            return list(cached)
        return extract_rich_concepts(chunk.text)

    def bridge_concepts(self, limit: int = 10) -> list[BridgeConcept]:
        """Concepts spanning more than one document, widest spread first."""
        spread: list[tuple[str, int]] = []
        for concept, chunk_ids in self.concept_to_chunk_ids.items():
            docs = {self.chunk_to_document[cid] for cid in chunk_ids if cid in self.chunk_to_document}
            if len(docs) > 1:
                spread.append((concept, len(docs)))
        spread.sort(key=lambda item: (-item[1], item[0]))
        return [BridgeConcept(concept=concept, docs=docs) for concept, docs in spread[:limit]]


def build_concept_graph(chunks: Iterable[Chunk]) -> ConceptGraph:
    adjacency: dict[str, dict[str, float]] = {}
    concept_to_chunk_ids: dict[str, set[str]] = {}
    chunk_concepts: dict[str, tuple[str, ...]] = {}
    chunk_to_document: dict[str, str] = {}

    def add_edge(a: str, b: str, weight: float) -> None:
        if not a or not b or a == b:
            return
        neighbors = adjacency.setdefault(a, {})
        neighbors[b] = neighbors.get(b, 0.0) + weight

    for chunk in chunks:
        concept_list = extract_rich_concepts(chunk.text)[:MAX_CONCEPTS_PER_CHUNK]
        chunk_concepts[chunk.id] = tuple(concept_list)
        chunk_to_document[chunk.id] = chunk.filename
        for concept in concept_list:
            concept_to_chunk_ids.setdefault(concept, set()).add(chunk.id)
        for i in range(len(concept_list)):
            for j in range(i + 1, len(concept_list)):
                weight = 1.0 / (abs(i - j) + 1)
                add_edge(concept_list[i], concept_list[j], weight)
                add_edge(concept_list[j], concept_list[i], weight)

    log.debug(
        "Built concept graph: %d concepts, %d chunks",
        len(concept_to_chunk_ids),
        len(chunk_concepts),
    )
    return ConceptGraph(
        adjacency=adjacency,
        concept_to_chunk_ids={k: frozenset(v) for k, v in concept_to_chunk_ids.items()},
        chunk_concepts=chunk_concepts,
        chunk_to_document=chunk_to_document,
    )
