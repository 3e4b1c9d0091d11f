"""Iterative multi-probe retrieval refinement with a stabilization stop."""

from __future__ import annotations

import logging
import math
import threading
from typing import Any

from evidence_rag.anchors import document_anchors
from evidence_rag.bridge import expand_concept_links
from evidence_rag.config import DEFAULT_SETTINGS, EngineSettings
from evidence_rag.corpus import CorpusSnapshot
from evidence_rag.dispatch import dispatch_probes
from evidence_rag.intent import build_intent_graph, is_predictive
from evidence_rag.models import Chunk, IntentGraph, QueryIntent, RefinementResult
from evidence_rag.retrieval import (
    RelevanceScorer,
    distinct_documents,
    lexical_relevance,
    merge_unique_chunks,
)
from evidence_rag.text import collapse_whitespace, normalize_concept, uniq_by

log = logging.getLogger(__name__)


def probe_top_k(top_k: int) -> int:
    return max(18, math.ceil(top_k * 0.8))


def build_probe_queries(
    query: str,
    intent_graph: IntentGraph,
    intent: QueryIntent,
    max_probes: int,
) -> list[str]:
    probes = [f"{query} semantic evidence relationships constraints"]
    if intent_graph.entities:
        probes.append(f"{query} {' '.join(intent_graph.entities[:4])} evidence across documents")
    if intent_graph.concepts:
        probes.append(f"{query} {' '.join(intent_graph.concepts[:5])} implicit links")
    if intent_graph.constraints:
        probes.append(f"{query} constraints exceptions conflicts")
    if intent_graph.relations or intent.comparative:
        probes.append(f"{query} compare trade-offs and dependencies")
    if intent.timeline:
        probes.append(f"{query} chronology sequence and milestones")
    if intent_graph.unknowns:
        probes.append(f"{query} missing evidence validation")
    if is_predictive(query):
        probes.append(f"{query} predicted outcome validating and refuting evidence")
    cleaned = [collapse_whitespace(probe) for probe in probes]
    return uniq_by(cleaned, lambda item: normalize_concept(item) or None)[:max_probes]


def run_retrieval_refinement(
    query: str,
    seeds: list[Chunk],
    top_k: int,
    snapshot: CorpusSnapshot,
    *,
    intent: QueryIntent,
    options: dict[str, Any] | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
    scorer: RelevanceScorer = lexical_relevance,
    cancel_event: threading.Event | None = None,
) -> RefinementResult:
    """Re-run retrieval per probe until growth stabilizes or the pass budget ends.

    The seed retrieval is pass 1. Probe retrievals run concurrently but are
    merged in probe order. A failed probe counts as a pass but not toward
    stabilization; its anchors are merged with an empty base result.
    """
    retriever = snapshot.retriever
    if retriever is None:
        return RefinementResult(chunks=list(seeds), passes=1, stabilized=True)

    probes = build_probe_queries(
        query,
        build_intent_graph(query),
        intent,
        max_probes=settings.max_retrieval_passes * 2,
    )
    # Pass 1 is the seed retrieval, so at most budget - 1 probes are consumed.
    probes = probes[: max(0, settings.max_retrieval_passes - 1)]

    broad_intent = intent.model_copy(update={"broad_coverage": True})
    probe_options = {**(options or {}), "intent": broad_intent}
    k = probe_top_k(top_k)
    link_limit = max(8, math.floor(settings.max_link_expansion * 0.8))

    merged = merge_unique_chunks(seeds, [])
    passes = 1
    stable_hits = 0
    failed = 0
    prev_chunks = len(merged)
    prev_docs = len(distinct_documents(merged))

    def search(probe: str) -> list[Chunk]:
        return retriever.search(probe, k, probe_options)

    outcomes = dispatch_probes(
        probes,
        search,
        workers=settings.probe_workers,
        timeout_s=settings.probe_timeout_s,
        cancel_event=cancel_event,
    )
    try:
        for outcome in outcomes:
            if passes >= settings.max_retrieval_passes:
                break
            base = outcome.value or []
            if outcome.failed:
                failed += 1
            anchors = document_anchors(
                outcome.probe, broad_intent, snapshot.documents, snapshot.lookup, scorer
            )
            links = expand_concept_links(
                base, outcome.probe, snapshot.graph, snapshot.lookup, link_limit, scorer
            )
            probe_set = merge_unique_chunks(
                merge_unique_chunks(base, anchors, max(top_k * 2, 90)),
                links,
                max(top_k * 3, 120),
            )
            merged = merge_unique_chunks(merged, probe_set, max(top_k * 4, 170))

            chunk_count = len(merged)
            doc_count = len(distinct_documents(merged))
            chunk_delta = chunk_count - prev_chunks
            doc_delta = doc_count - prev_docs
            # A failed probe says nothing about growth, so it leaves the counter alone.
            if not outcome.failed:
                if doc_delta <= 0 and chunk_delta < settings.stable_chunk_delta:
                    stable_hits += 1
                else:
                    stable_hits = 0
            prev_chunks, prev_docs = chunk_count, doc_count
            passes += 1
            log.debug(
                "Refinement pass %d: probe=%r chunks=%d (+%d) docs=%d (+%d) stable=%d",
                passes,
                outcome.probe,
                chunk_count,
                chunk_delta,
                doc_count,
                doc_delta,
                stable_hits,
            )
            if stable_hits >= settings.stable_passes_required:
                break
    finally:
        outcomes.close()

    stabilized = stable_hits >= settings.stable_passes_required
    log.info(
        "Retrieval refinement finished: passes=%d stabilized=%s failed_probes=%d chunks=%d",
        passes,
        stabilized,
        failed,
        len(merged),
    )
    return RefinementResult(
        chunks=merged,
        passes=passes,
        stabilized=stabilized,
        failed_probes=failed,
    )
