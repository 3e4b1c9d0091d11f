"""Per-document anchor sampling and document-coverage enforcement."""

from __future__ import annotations

import math
from collections.abc import Sequence

from evidence_rag.models import Chunk, Document, QueryIntent
from evidence_rag.retrieval import RelevanceScorer, lexical_relevance
from evidence_rag.text import extract_concepts, extract_entities, tokenize

MIN_ANCHORS_PER_DOC = 2
COVERAGE_DOC_SHARE = 0.7
DEEP_SCAN_MIN_CHUNKS = 4


def pick_evenly_distributed(ordered: Sequence[Chunk], count: int) -> list[Chunk]:
    """Evenly spaced picks over an index-ordered list, first and last included."""
    if count <= 0 or not ordered:
        return []
    if count >= len(ordered):
        return list(ordered)
    if count == 1:
        return [ordered[0]]
    step = (len(ordered) - 1) / (count - 1)
    positions = sorted({round(i * step) for i in range(count)})
    return [ordered[pos] for pos in positions]


def score_chunks(
    chunks: Sequence[Chunk],
    query: str,
    scorer: RelevanceScorer = lexical_relevance,
) -> list[Chunk]:
    tokens = tokenize(query)
    entities = extract_entities(query)
    concepts = extract_concepts(query)
    return [
        chunk.model_copy(update={"score": scorer(chunk, query, tokens, entities, concepts)})
        for chunk in chunks
    ]


def document_anchors(
    query: str,
    intent: QueryIntent,
    documents: Sequence[Document],
    lookup: dict[str, Chunk],
    scorer: RelevanceScorer = lexical_relevance,
) -> list[Chunk]:
    """Top-relevance plus evenly distributed chunks from every document."""
    anchors: list[Chunk] = []
    seen: set[str] = set()
    top_relevant = 2 if intent.broad_coverage else 1
    coverage_count = max(MIN_ANCHORS_PER_DOC, 3 if intent.broad_coverage else 2)

    for doc in documents:
        chunks = [lookup[cid] for cid in doc.chunk_ids if cid in lookup]
        if not chunks:
            continue
        scored = sorted(score_chunks(chunks, query, scorer), key=lambda c: -c.score)
        scores = {chunk.id: chunk.score for chunk in scored}
        ordered = sorted(chunks, key=lambda c: c.index)
        distributed = [
            chunk.model_copy(update={"score": scores[chunk.id]})
            for chunk in pick_evenly_distributed(ordered, coverage_count)
        ]
        for chunk in [*scored[:top_relevant], *distributed]:
            if chunk.id not in seen:
                seen.add(chunk.id)
                anchors.append(chunk)
    return anchors


def enforce_document_coverage(
    results: Sequence[Chunk],
    anchors: Sequence[Chunk],
    top_k: int,
    total_documents: int,
) -> list[Chunk]:
    """Swap in anchors from unseen documents until enough documents are present."""
    out: list[Chunk] = []
    ids: set[str] = set()
    for chunk in results:
        if chunk.id not in ids:
            ids.add(chunk.id)
            out.append(chunk)
    if top_k <= 0:
        return []

    seen_docs = {chunk.filename for chunk in out}
    target_docs = min(total_documents, max(1, math.ceil(top_k * COVERAGE_DOC_SHARE)))
    missing = [a for a in anchors if a.filename not in seen_docs]

    for anchor in missing:
        if len(seen_docs) >= target_docs:
            break
        if anchor.filename in seen_docs or anchor.id in ids:
            continue
        if len(out) >= top_k:
            victim = _replaceable_index(out)
            if victim is None:
                break
            ids.discard(out[victim].id)
            del out[victim]
        out.append(anchor)
        ids.add(anchor.id)
        seen_docs.add(anchor.filename)

    for anchor in anchors:
        if len(out) >= top_k:
            break
        if anchor.id not in ids:
            out.append(anchor)
            ids.add(anchor.id)

    return out[:top_k]


def _replaceable_index(out: list[Chunk]) -> int | None:
    """Last chunk whose document is represented more than once."""
    counts: dict[str, int] = {}
    for chunk in out:
        counts[chunk.filename] = counts.get(chunk.filename, 0) + 1
    for idx in range(len(out) - 1, -1, -1):
        if counts[out[idx].filename] > 1:
            return idx
    return None


def deep_scan_augment(
    query: str,
    selected: Sequence[Chunk],
    all_chunks: Sequence[Chunk],
    top_k: int,
    scorer: RelevanceScorer = lexical_relevance,
) -> list[Chunk]:
    """Add mid/late sections of already-selected documents while slots remain."""
    out = list(selected)
    seen = {chunk.id for chunk in out}
    doc_names: list[str] = []
    for chunk in out:
        if chunk.filename and chunk.filename not in doc_names:
            doc_names.append(chunk.filename)

    by_doc: dict[str, list[Chunk]] = {}
    for chunk in all_chunks:
        by_doc.setdefault(chunk.filename, []).append(chunk)

    for filename in doc_names:
        if len(out) >= top_k:
            break
        doc_chunks = sorted(by_doc.get(filename, []), key=lambda c: c.index)
        if len(doc_chunks) < DEEP_SCAN_MIN_CHUNKS:
            continue
        picks = [
            doc_chunks[len(doc_chunks) // 2],
            doc_chunks[int(len(doc_chunks) * 0.8)],
            doc_chunks[-1],
        ]
        candidates = sorted(score_chunks(picks, query, scorer), key=lambda c: -c.score)
        for candidate in candidates:
            if len(out) >= top_k:
                break
            if candidate.id in seen:
                continue
            out.append(candidate)
            seen.add(candidate.id)
    return out[:top_k]


def cross_source_corroborate(
    selected: Sequence[Chunk],
    anchors: Sequence[Chunk],
    top_k: int,
    required_docs: int,
) -> list[Chunk]:
    """Append anchors from new documents until ``required_docs`` are represented."""
    out = list(selected)
    ids = {chunk.id for chunk in out}
    docs = {chunk.filename for chunk in out}
    for anchor in anchors:
        if len(docs) >= required_docs:
            break
        if anchor.id in ids or anchor.filename in docs:
            continue
        if len(out) >= top_k:
            victim = _replaceable_index(out)
            if victim is None:
                break
            ids.discard(out[victim].id)
            del out[victim]
        out.append(anchor)
        ids.add(anchor.id)
        docs.add(anchor.filename)
    return out
