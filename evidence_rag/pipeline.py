"""End-to-end pipeline: retrieval, model refinement, grounded answer and repair."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from evidence_rag.completeness import (
    assess_completeness,
    build_gap_driven_queries,
    build_mental_model,
    build_missing_evidence_response,
    should_request_more_evidence,
)
from evidence_rag.config import DEFAULT_SETTINGS, REPAIR_CONTEXT_CHARS, EngineSettings
from evidence_rag.dispatch import RetrievalCancelled
from evidence_rag.engine import RetrievalEngine
from evidence_rag.gate import evaluate_gate, min_citation_target
from evidence_rag.grounding import build_claim_diagnostics, count_citations, normalize_citation_syntax
from evidence_rag.ingest import chunk_documents, load_documents
from evidence_rag.intent import build_instruction_profile, detect_query_intent, is_broad_or_decision
from evidence_rag.llm_client import LLMClient, LLMServiceError, get_llm_client
from evidence_rag.models import (
    ActivationReport,
    AnswerOutcome,
    Chunk,
    CompletenessVerdict,
    Document,
    GateResult,
    InstructionProfile,
    MentalModel,
)
from evidence_rag.prompts import (
    SYSTEM_PROMPT,
    build_answer_prompt,
    build_context_blocks,
    build_repair_instruction,
    build_repair_prompt,
    build_rewrite_instruction,
)
from evidence_rag.retrieval import merge_unique_chunks
from evidence_rag.security import sanitize_query

log = logging.getLogger(__name__)

GENERATION_FAILED_REASON = "Answer generation failed; showing the retrieved evidence only."


@dataclass
class CorpusIndex:
    engine: RetrievalEngine
    documents: list[Document]
    chunks: list[Chunk]
    injection_lines_filtered: int = 0


@dataclass
class ModelRefinement:
    chunks: list[Chunk]
    model: MentalModel
    completeness: CompletenessVerdict
    activation_report: ActivationReport
    passes: int = 1
    stabilized: bool = False


def build_index(
    documents: list[Document],
    chunks: list[Chunk],
    *,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> CorpusIndex:
    engine = RetrievalEngine(settings=settings)
    engine.load_corpus(chunks, documents)
    return CorpusIndex(engine=engine, documents=documents, chunks=chunks)


def build_index_from_paths(
    document_paths: list[str],
    *,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> CorpusIndex:
    files = load_documents(document_paths)
    documents, chunks = chunk_documents(files)
    if not chunks:
        raise ValueError("No text chunks were created from the provided documents.")
    index = build_index(documents, chunks, settings=settings)
    index.injection_lines_filtered = sum(loaded.filtered_lines for loaded in files)
    return index


def _refreshed_report(
    engine: RetrievalEngine,
    query: str,
    chunks: Sequence[Chunk],
    previous: ActivationReport,
) -> ActivationReport:
    """Activation counts for the widened chunk set; retrieval fields are kept."""
    current = engine.activation_report(query, chunks)
    return previous.model_copy(
        update={
            "activated_documents": current.activated_documents,
            "activated_chunks": current.activated_chunks,
            "activation_coverage_pct": current.activation_coverage_pct,
            "current_cross_source_docs": current.current_cross_source_docs,
        }
    )


def run_model_refinement(
    index: CorpusIndex,
    query: str,
    chunks: Sequence[Chunk],
    activation_report: ActivationReport,
    profile: InstructionProfile,
    *,
    llm: LLMClient | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
    cancel_event: threading.Event | None = None,
) -> ModelRefinement:
    """Alternate model building and gap-driven re-retrieval until gaps settle.

    A cycle counts as stable when the gap count moved by at most one, or when
    re-retrieval added at most one new chunk. Only broad or decision queries
    re-retrieve.
    """
    broad = is_broad_or_decision(query, profile)
    current = merge_unique_chunks(chunks, [])
    report = activation_report
    passes = 1
    stable_hits = 0
    previous_gaps: int | None = None
    model = MentalModel()
    completeness: CompletenessVerdict | None = None

    for cycle in range(max(1, settings.max_model_refinement_passes)):
        passes = cycle + 1
        model = build_mental_model(query, current, llm, report)
        completeness = assess_completeness(query, current, model, report, profile, settings)

        gap_count = len(model.gaps)
        if previous_gaps is not None and abs(gap_count - previous_gaps) <= 1:
            stable_hits += 1
        else:
            stable_hits = 0
        previous_gaps = gap_count

        if not (completeness.needs_more_evidence and broad and stable_hits < 1):
            break

        expanded: list[Chunk] = []
        gap_queries = build_gap_driven_queries(query, model, settings.max_gap_refinement_queries)
        for gap_query in gap_queries[: settings.max_gap_refinement_queries]:
            intent = detect_query_intent(gap_query).model_copy(
                update={"broad_coverage": True, "comparative": True}
            )
            try:
                result = index.engine.retrieve(
                    gap_query, options={"intent": intent}, cancel_event=cancel_event
                )
            except RetrievalCancelled:
                raise
            except Exception as exc:
                log.warning("Gap-driven retrieval failed for %r: %s", gap_query, exc)
                continue
            expanded.extend(result.chunks)
        if not expanded:
            break

        merged = merge_unique_chunks(current, expanded)
        log.debug("Model refinement cycle %d: %d -> %d chunks", passes, len(current), len(merged))
        if len(merged) <= len(current) + 1:
            stable_hits += 1
            break
        current = merged
        report = _refreshed_report(index.engine, query, current, report)

    if completeness is None:
        completeness = assess_completeness(query, current, model, report, profile, settings)
    return ModelRefinement(
        chunks=current,
        model=model,
        completeness=completeness,
        activation_report=report,
        passes=passes,
        stabilized=stable_hits >= 1,
    )


def _generate(llm: LLMClient, prompt: str) -> str:
    return llm.generate(prompt=prompt, system=SYSTEM_PROMPT, max_tokens=2200).text.strip()


def answer_question(
    index: CorpusIndex,
    question: str,
    *,
    top_k: int | None = None,
    history: Sequence[dict[str, Any]] | None = None,
    llm: LLMClient | None = None,
    settings: EngineSettings | None = None,
    output_json_path: str | None = None,
    profile: InstructionProfile | None = None,
    cancel_event: threading.Event | None = None,
) -> AnswerOutcome:
    """Answer ``question`` from the index, or say precisely what evidence is missing.

    Flow: retrieve, refine the mental model, check completeness, draft,
    then gate the draft and run at most ``max_repair_attempts`` repairs.
    """
    settings = settings or index.engine.settings
    question = sanitize_query(question)
    profile = profile or build_instruction_profile(question)
    retrieval = index.engine.retrieve(
        question, top_k, history=history, cancel_event=cancel_event
    )
    llm = llm or get_llm_client()
    refinement = run_model_refinement(
        index,
        question,
        retrieval.chunks,
        retrieval.activation_report,
        profile,
        llm=llm,
        settings=settings,
        cancel_event=cancel_event,
    )
    sources = refinement.chunks
    model = refinement.model
    report = refinement.activation_report

    outcome_fields: dict[str, Any] = {
        "question": question,
        "sources": sources,
        "activation_report": report,
        "mental_model": model,
        "model_refinement_passes": refinement.passes,
        "model_refinement_stabilized": refinement.stabilized,
    }

    if should_request_more_evidence(refinement.completeness, sources, model, settings):
        log.info("Requesting more evidence before answering: %s", refinement.completeness.reasons)
        answer = build_missing_evidence_response(question, refinement.completeness, sources, model)
        outcome = AnswerOutcome(
            answer=answer,
            status="missing_evidence",
            completeness=refinement.completeness,
            diagnostics=build_claim_diagnostics(answer, sources, settings),
            citation_count=count_citations(answer),
            **outcome_fields,
        )
        _write_output(outcome, output_json_path)
        return outcome

    prompt = build_answer_prompt(question, build_context_blocks(sources), profile, report, model)
    try:
        draft = _generate(llm, prompt)
    except LLMServiceError as exc:
        log.warning("Answer generation failed: %s", exc)
        answer = build_missing_evidence_response(question, refinement.completeness, sources, model)
        outcome = AnswerOutcome(
            answer=answer,
            status="degraded",
            completeness=refinement.completeness,
            gate=GateResult(passed=False, reasons=[GENERATION_FAILED_REASON]),
            diagnostics=build_claim_diagnostics(answer, sources, settings),
            citation_count=count_citations(answer),
            **outcome_fields,
        )
        _write_output(outcome, output_json_path)
        return outcome
    answer = normalize_citation_syntax(draft)
    diagnostics = build_claim_diagnostics(answer, sources, settings)
    gate = evaluate_gate(
        question,
        answer,
        diagnostics,
        profile,
        sources=sources,
        activation_report=report,
        settings=settings,
    )

    attempts = 0
    repair_contexts = build_context_blocks(sources, REPAIR_CONTEXT_CHARS)
    while not gate.passed and attempts < settings.max_repair_attempts:
        if attempts == 0:
            instruction = build_repair_instruction(gate)
        else:
            instruction = build_rewrite_instruction(
                question, profile, gate, sources, min_citation_target(len(sources), settings)
            )
        attempts += 1
        try:
            repaired = _generate(llm, build_repair_prompt(question, answer, instruction, repair_contexts))
        except LLMServiceError as exc:
            log.warning("Repair attempt %d failed: %s", attempts, exc)
            break
        if not repaired:
            log.warning("Repair attempt %d returned an empty answer.", attempts)
            break
        answer = normalize_citation_syntax(repaired)
        diagnostics = build_claim_diagnostics(answer, sources, settings)
        gate = evaluate_gate(
            question,
            answer,
            diagnostics,
            profile,
            sources=sources,
            activation_report=report,
            settings=settings,
        )

    completeness = assess_completeness(question, sources, model, report, profile, settings)
    if should_request_more_evidence(completeness, sources, model, settings):
        answer = build_missing_evidence_response(question, completeness, sources, model)
        diagnostics = build_claim_diagnostics(answer, sources, settings)
        status = "missing_evidence"
    else:
        status = "final" if gate.passed else "degraded"

    log.info(
        "Answer status=%s repairs=%d citations=%d gate_reasons=%d",
        status,
        attempts,
        count_citations(answer),
        len(gate.reasons),
    )
    outcome = AnswerOutcome(
        answer=answer,
        status=status,
        completeness=completeness,
        gate=gate,
        diagnostics=diagnostics,
        citation_count=count_citations(answer),
        repair_attempts=attempts,
        **outcome_fields,
    )
    _write_output(outcome, output_json_path)
    return outcome


def _write_output(outcome: AnswerOutcome, output_json_path: str | None) -> None:
    if not output_json_path:
        return
    out_path = Path(output_json_path).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(
        json.dumps(outcome.model_dump(), indent=2, ensure_ascii=True),
        encoding="utf-8",
    )


def run_rag(
    question: str,
    document_paths: list[str],
    *,
    top_k: int | None = None,
    output_json_path: str | None = None,
) -> AnswerOutcome:
    index = build_index_from_paths(document_paths)
    return answer_question(index, question, top_k=top_k, output_json_path=output_json_path)
