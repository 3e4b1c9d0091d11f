"""Concept-bridge expansion over the corpus concept graph."""

from __future__ import annotations

from collections.abc import Sequence

from evidence_rag.concepts import ConceptGraph
from evidence_rag.models import Chunk
from evidence_rag.retrieval import RelevanceScorer, lexical_relevance
from evidence_rag.text import extract_concepts, extract_entities, tokenize

MAX_SEED_CONCEPTS = 14
NEIGHBORS_PER_CONCEPT = 5
SEED_SCORE_FALLBACK = 0.2
SEED_SCORE_BONUS = 0.25
SEED_SHARE = 0.65
EDGE_SHARE = 0.35
LEXICAL_WEIGHT = 0.72
BRIDGE_WEIGHT = 0.08
BRIDGE_WEIGHT_CAP = 5.0


def seed_concept_weights(seeds: Sequence[Chunk], graph: ConceptGraph) -> list[tuple[str, float]]:
    """Score-weighted concept votes from the seed chunks, strongest first."""
    votes: dict[str, float] = {}
    for chunk in seeds:
        base = (chunk.score or SEED_SCORE_FALLBACK) + SEED_SCORE_BONUS
        for concept in graph.concepts_for(chunk):
            votes[concept] = votes.get(concept, 0.0) + base
    return sorted(votes.items(), key=lambda item: (-item[1], item[0]))[:MAX_SEED_CONCEPTS]


def expand_concept_links(
    seeds: Sequence[Chunk],
    query: str,
    graph: ConceptGraph,
    lookup: dict[str, Chunk],
    limit: int,
    scorer: RelevanceScorer = lexical_relevance,
) -> list[Chunk]:
    """Chunks reachable one concept hop away from the seeds.

    Seed chunks are never returned. Results carry the bridging concept in
    ``bridge_concept`` and are ordered by combined lexical and bridge score.
    """
    if graph.is_empty or not seeds or limit <= 0:
        return []

    tokens = tokenize(query)
    entities = extract_entities(query)
    concepts = extract_concepts(query)
    seed_ids = {chunk.id for chunk in seeds}

    candidate_concepts: dict[str, float] = {}
    for concept, weight in seed_concept_weights(seeds, graph):
        candidate_concepts[concept] = max(candidate_concepts.get(concept, 0.0), weight)
        for neighbor, edge_weight in graph.neighbors(concept, NEIGHBORS_PER_CONCEPT):
            combined = weight * SEED_SHARE + edge_weight * EDGE_SHARE
            candidate_concepts[neighbor] = max(candidate_concepts.get(neighbor, 0.0), combined)

    best: dict[str, Chunk] = {}
    lexical_cache: dict[str, float] = {}
    for concept, bridge_weight in candidate_concepts.items():
        for chunk_id in sorted(graph.concept_to_chunk_ids.get(concept, ())):
            if chunk_id in seed_ids:
                continue
            chunk = lookup.get(chunk_id)
            if chunk is None:
                continue
            if chunk_id not in lexical_cache:
                lexical_cache[chunk_id] = scorer(chunk, query, tokens, entities, concepts)
            score = (
                lexical_cache[chunk_id] * LEXICAL_WEIGHT
                + min(bridge_weight, BRIDGE_WEIGHT_CAP) * BRIDGE_WEIGHT
            )
            current = best.get(chunk_id)
            if current is None or score > current.score:
                best[chunk_id] = chunk.model_copy(update={"score": score, "bridge_concept": concept})

    ranked = sorted(best.values(), key=lambda chunk: (-chunk.score, chunk.id))
    return ranked[:limit]
