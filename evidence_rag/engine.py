"""Retrieval engine: composes the refinement stages over a corpus snapshot."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Sequence
from typing import Any

from evidence_rag.adversarial import merge_adversarial, run_adversarial_pass
from evidence_rag.anchors import (
    cross_source_corroborate,
    deep_scan_augment,
    document_anchors,
    enforce_document_coverage,
)
from evidence_rag.bridge import expand_concept_links
from evidence_rag.config import DEFAULT_SETTINGS, EngineSettings
from evidence_rag.corpus import CorpusSnapshot, RetrieverFactory, build_snapshot
from evidence_rag.dispatch import raise_if_cancelled
from evidence_rag.intent import (
    BROAD_QUESTION,
    detect_query_intent,
    required_cross_source_docs,
    resolve_query_from_history,
)
from evidence_rag.models import (
    ActivationReport,
    Chunk,
    Document,
    QueryIntent,
    RefinementResult,
    RetrievalResult,
)
from evidence_rag.refinement import probe_top_k, run_retrieval_refinement
from evidence_rag.retrieval import (
    Diversifier,
    EmbeddingRetriever,
    NoopDiversifier,
    RelevanceScorer,
    Reranker,
    ScoreReranker,
    distinct_documents,
    lexical_relevance,
    merge_unique_chunks,
)
from evidence_rag.security import sanitize_query

log = logging.getLogger(__name__)

MAX_BRIDGE_CONCEPTS = 10


class RetrievalEngine:
    """Owns the corpus snapshot and runs the full retrieval flow per query.

    ``load_corpus`` swaps in a new snapshot under a writer lock; queries
    capture the snapshot once, so a rebuild never changes an in-flight query.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings = DEFAULT_SETTINGS,
        retriever_factory: RetrieverFactory = EmbeddingRetriever,
        scorer: RelevanceScorer = lexical_relevance,
        reranker: Reranker | None = None,
        diversifier: Diversifier | None = None,
    ) -> None:
        self.settings = settings
        self._retriever_factory = retriever_factory
        self._scorer = scorer
        self._reranker = reranker or ScoreReranker()
        self._diversifier = diversifier or NoopDiversifier()
        self._write_lock = threading.Lock()
        self._snapshot = CorpusSnapshot()

    @property
    def snapshot(self) -> CorpusSnapshot:
        return self._snapshot

    def load_corpus(
        self,
        chunks: Sequence[Chunk],
        documents: Sequence[Document] | None = None,
    ) -> CorpusSnapshot:
        with self._write_lock:
            snapshot = build_snapshot(
                chunks,
                generation=self._snapshot.generation + 1,
                documents=documents,
                retriever_factory=self._retriever_factory,
            )
            self._snapshot = snapshot
        log.info(
            "Corpus generation %d loaded: %d documents, %d chunks, %d concepts",
            snapshot.generation,
            len(snapshot.documents),
            len(snapshot.chunks),
            len(snapshot.graph.concept_to_chunk_ids),
        )
        return snapshot

    def target_top_k(self, snapshot: CorpusSnapshot, top_k: int | None) -> int:
        if top_k:
            return top_k
        size = len(snapshot.chunks)
        if size <= self.settings.small_corpus_chunks:
            return self.settings.target_k_small
        if size <= self.settings.medium_corpus_chunks:
            return self.settings.target_k_medium
        return self.settings.target_k_large

    def _base_search(
        self,
        snapshot: CorpusSnapshot,
        query: str,
        k: int,
        options: dict[str, Any],
    ) -> list[Chunk]:
        if snapshot.retriever is None:
            return []
        try:
            return snapshot.retriever.search(query, k, options)
        except Exception as exc:
            log.warning("Base retrieval failed for %r: %s", query, exc)
            return []

    def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        options: dict[str, Any] | None = None,
        *,
        history: Sequence[dict[str, Any]] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RetrievalResult:
        query = sanitize_query(query)
        snapshot = self._snapshot
        if snapshot.is_empty or not query:
            return RetrievalResult(
                activation_report=self.activation_report(query, [], snapshot),
            )

        settings = self.settings
        options = dict(options or {})
        retrieval_query = resolve_query_from_history(query, history)
        base_intent = options.get("intent")
        if not isinstance(base_intent, QueryIntent):
            base_intent = detect_query_intent(query)
        intent = base_intent
        if settings.full_corpus_sweep:
            intent = base_intent.model_copy(update={"broad_coverage": True})
        options["intent"] = intent
        k = self.target_top_k(snapshot, top_k)

        base = self._base_search(snapshot, retrieval_query, probe_top_k(k), options)
        anchors = document_anchors(
            retrieval_query, intent, snapshot.documents, snapshot.lookup, self._scorer
        )
        merged = merge_unique_chunks(base, anchors, max(k * 2, 70))
        linked = expand_concept_links(
            merged,
            retrieval_query,
            snapshot.graph,
            snapshot.lookup,
            max(10, math.ceil(k * 0.65)),
            self._scorer,
        )
        merged = merge_unique_chunks(merged, linked, max(k * 3, 110))
        raise_if_cancelled(cancel_event)

        refinement: RefinementResult = run_retrieval_refinement(
            retrieval_query,
            merged,
            k,
            snapshot,
            intent=intent,
            options=options,
            settings=settings,
            scorer=self._scorer,
            cancel_event=cancel_event,
        )
        ranked = self._reranker.rerank(retrieval_query, refinement.chunks, k, intent)
        ranked = self._diversifier.diversify(ranked, k)

        out = enforce_document_coverage(ranked, anchors, k, len(snapshot.documents))
        out = deep_scan_augment(retrieval_query, out, snapshot.chunks, k, self._scorer)

        broad = (
            intent.broad_coverage
            or intent.comparative
            or intent.timeline
            or bool(BROAD_QUESTION.search(query or ""))
        )
        required = required_cross_source_docs(
            broad,
            len(snapshot.documents),
            min_cross_source_docs=settings.min_cross_source_docs,
            large_corpus_docs=settings.large_corpus_docs,
            large_corpus_required_docs=settings.large_corpus_required_docs,
        )
        if (
            broad
            and len(snapshot.documents) >= settings.min_cross_source_docs
            and len(distinct_documents(out)) < required
        ):
            cross_anchors = document_anchors(
                f"{retrieval_query} cross-source corroboration",
                intent,
                snapshot.documents,
                snapshot.lookup,
                self._scorer,
            )
            out = cross_source_corroborate(out, cross_anchors, k, required)

        raise_if_cancelled(cancel_event)
        adversarial = run_adversarial_pass(
            retrieval_query,
            out,
            k,
            snapshot,
            options=options,
            settings=settings,
            scorer=self._scorer,
            cancel_event=cancel_event,
        )
        out = merge_adversarial(out, adversarial, k, max(2, k // 6))
        out = merge_unique_chunks(out, [])

        report = self.activation_report(query, out, snapshot)
        report = report.model_copy(
            update={
                "retrieval_passes": refinement.passes,
                "retrieval_stabilized": refinement.stabilized,
                "required_cross_source_docs": required if broad else 1,
                "adversarial_chunks": sum(1 for c in out if c.adversarial_signal is not None),
                "failed_probes": refinement.failed_probes,
            }
        )
        return RetrievalResult(chunks=out, activation_report=report)

    def activation_report(
        self,
        query: str,
        selected: Sequence[Chunk],
        snapshot: CorpusSnapshot | None = None,
    ) -> ActivationReport:
        snapshot = snapshot or self._snapshot
        total_docs = len(snapshot.documents)
        activated_docs = distinct_documents(selected)
        coverage = round(len(activated_docs) / total_docs * 100) if total_docs else 0
        return ActivationReport(
            query=query or "",
            total_documents=total_docs,
            total_chunks=len(snapshot.chunks),
            activated_documents=len(activated_docs),
            activated_chunks=len(selected),
            activation_coverage_pct=coverage,
            bridge_concepts=snapshot.graph.bridge_concepts(MAX_BRIDGE_CONCEPTS),
            current_cross_source_docs=len(activated_docs),
            corpus_generation=snapshot.generation,
        )
