"""Mental-model construction and the evidence-completeness verdict."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Sequence
from typing import Any

from evidence_rag.config import (
    DEFAULT_SETTINGS,
    MAX_EVIDENCE_DIGEST_CHARS,
    MAX_MENTAL_MODEL_SOURCES,
    MODEL_EXTRACTION_TEMPERATURE,
    EngineSettings,
)
from evidence_rag.intent import is_broad_or_decision, required_cross_source_docs
from evidence_rag.llm_client import LLMClient, LLMServiceError
from evidence_rag.models import (
    ActivationReport,
    Chunk,
    CompletenessVerdict,
    InstructionProfile,
    MentalModel,
    Relationship,
)
from evidence_rag.prompts import MODEL_EXTRACTION_SYSTEM_PROMPT, build_model_extraction_prompt
from evidence_rag.text import (
    NAMED_PHRASE,
    collapse_whitespace,
    normalize_concept,
    tokenize,
    uniq_by,
)

log = logging.getLogger(__name__)

GAP_PREFIX = "Insufficient direct evidence for concept:"
_GAP_PREFIX_RE = re.compile(r"^Insufficient direct evidence for concept:\s*", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_RELATION = re.compile(
    r"\b(causes?|leads to|results? in|depends on|requires?|blocks?|enables?|increases?|decreases?)\b",
    re.IGNORECASE,
)
_CONSTRAINT = re.compile(
    r"\b(must|required|cannot|only|at least|at most|limit|constraint)\b", re.IGNORECASE
)
_ASSUMPTION = re.compile(r"\b(assume|assuming|likely|may|might|unclear)\b", re.IGNORECASE)
SENTENCE_CHARS = 220
GAP_TOPICS_REQUESTED = 5

# Per-field caps applied to LLM-extracted models.
_MODEL_FIELD_CAPS = {
    "entities": 16,
    "concepts": 20,
    "relationships": 12,
    "constraints": 10,
    "assumptions": 10,
    "gaps": 10,
}


def strip_gap_prefix(gap: str) -> str:
    return _GAP_PREFIX_RE.sub("", str(gap)).replace('"', "").strip()


def _matching_sentences(text: str, pattern: re.Pattern[str], limit: int) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]
    return [s[:SENTENCE_CHARS] for s in sentences if pattern.search(s)][:limit]


def build_heuristic_model(query: str, sources: Sequence[Chunk]) -> MentalModel:
    """Pattern-based model: no LLM call, fully deterministic."""
    text = "\n".join(source.text for source in sources)
    entities = uniq_by(
        (normalize_concept(match) for match in NAMED_PHRASE.findall(text)),
        lambda item: item or None,
    )[:14]

    tokens = tokenize(text)
    counts = Counter(tokens)
    concepts = [token for token, count in counts.most_common() if count >= 3][:18]

    evidence_tokens = set(tokens)
    gaps = [
        f'{GAP_PREFIX} "{token}"'
        for token in uniq_by(tokenize(query), lambda t: t)
        if token not in evidence_tokens
    ][:10]

    return MentalModel(
        entities=entities,
        concepts=concepts,
        relationships=[
            Relationship(statement=sentence)
            for sentence in _matching_sentences(text, _RELATION, 8)
        ],
        constraints=_matching_sentences(text, _CONSTRAINT, 8),
        assumptions=_matching_sentences(text, _ASSUMPTION, 6),
        gaps=gaps,
    )


def _coerce_relationship(item: Any) -> Relationship | None:
    if isinstance(item, str):
        return Relationship(statement=item.strip()) if item.strip() else None
    if isinstance(item, dict):
        rel = Relationship(
            statement=str(item.get("statement") or ""),
            subject=str(item.get("subject") or ""),
            predicate=str(item.get("predicate") or ""),
            object=str(item.get("object") or ""),
        )
        return rel if rel.render() else None
    return None


def normalize_model(parsed: Any, fallback: MentalModel) -> MentalModel:
    """Take each field from ``parsed`` when it is a list, else from ``fallback``."""
    if not isinstance(parsed, dict):
        return fallback
    values: dict[str, Any] = {}
    for name, cap in _MODEL_FIELD_CAPS.items():
        raw = parsed.get(name)
        if not isinstance(raw, list):
            values[name] = getattr(fallback, name)
            continue
        if name == "relationships":
            rels = [rel for rel in (_coerce_relationship(item) for item in raw) if rel]
            values[name] = rels[:cap]
        else:
            values[name] = [str(item).strip() for item in raw if str(item).strip()][:cap]
    return MentalModel(**values)


def build_evidence_digest(sources: Sequence[Chunk]) -> str:
    lines: list[str] = []
    chars = 0
    for source in list(sources)[:MAX_MENTAL_MODEL_SOURCES]:
        page = f"page {source.page}" if source.page else "page N/A"
        excerpt = collapse_whitespace(source.text)[:320]
        line = f"- [{source.filename}, {page}] {excerpt}"
        if chars + len(line) > MAX_EVIDENCE_DIGEST_CHARS:
            break
        lines.append(line)
        chars += len(line)
    return "\n".join(lines)


def build_mental_model(
    query: str,
    sources: Sequence[Chunk],
    llm: LLMClient | None = None,
    activation_report: ActivationReport | None = None,
) -> MentalModel:
    """LLM-extracted model, normalized against the heuristic one.

    Any LLM or parsing failure falls back to the heuristic model.
    """
    heuristic = build_heuristic_model(query, sources)
    if llm is None or not sources:
        return heuristic
    prompt = build_model_extraction_prompt(
        query=query,
        evidence_digest=build_evidence_digest(sources),
        activation_report=activation_report,
    )
    try:
        parsed = llm.generate_json(
            prompt=prompt,
            system=MODEL_EXTRACTION_SYSTEM_PROMPT,
            temperature=MODEL_EXTRACTION_TEMPERATURE,
            max_tokens=900,
        )
    except (LLMServiceError, ValueError) as exc:
        log.warning("Mental model extraction fell back to heuristics: %s", exc)
        return heuristic
    return normalize_model(parsed, heuristic)


def build_gap_driven_queries(
    query: str,
    model: MentalModel | None,
    max_gap_queries: int = DEFAULT_SETTINGS.max_gap_refinement_queries,
) -> list[str]:
    out = [f"{query} cross-source supporting evidence", f"{query} constraints exceptions conflicts"]
    for gap in (model.gaps if model else [])[:max_gap_queries]:
        topic = strip_gap_prefix(gap)
        if topic:
            out.append(f"{query} {topic} validating evidence")
    cleaned = [collapse_whitespace(item) for item in out]
    return uniq_by(cleaned, lambda item: normalize_concept(item) or None)[: max_gap_queries + 2]


def _source_key(chunk: Chunk) -> str:
    return chunk.id or f"{chunk.filename}:{chunk.index}:{chunk.page or 'na'}"


def assess_completeness(
    query: str,
    sources: Sequence[Chunk],
    model: MentalModel | None,
    activation_report: ActivationReport | None,
    profile: InstructionProfile | None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> CompletenessVerdict:
    """Decide whether the evidence supports a grounded answer.

    Each trigger is independent: no sources, too few distinct documents for
    the query's scope, low activation coverage on a broad query over a
    sizeable corpus, or many open gaps while document coverage stays low.
    """
    report = activation_report or ActivationReport()
    deduped = uniq_by(sources, _source_key)
    source_count = len(deduped)
    doc_count = len({chunk.filename for chunk in deduped if chunk.filename})
    total_docs = report.total_documents or doc_count
    broad = is_broad_or_decision(query, profile)
    required = required_cross_source_docs(
        broad,
        total_docs,
        min_cross_source_docs=settings.min_cross_source_docs,
        large_corpus_docs=settings.large_corpus_docs,
        large_corpus_required_docs=settings.large_corpus_required_docs,
    )
    coverage = report.activation_coverage_pct
    gaps = list(model.gaps) if model else []

    reasons: list[str] = []
    if source_count == 0:
        reasons.append("No retrievable evidence was found for the question.")
    if required > 1 and doc_count < required:
        reasons.append(
            f"Cross-source coverage is insufficient ({doc_count}/{required} required documents)."
        )
    if (
        broad
        and total_docs >= settings.activation_check_min_docs
        and 0 < coverage < settings.min_activation_coverage_pct
    ):
        reasons.append(f"Activation coverage remains low for a broad query ({coverage}%).")
    if len(gaps) >= settings.model_gap_threshold and doc_count < max(2, required):
        reasons.append("Mental model still has unresolved high-priority evidence gaps.")

    requested: list[str] = []
    if source_count == 0:
        requested.append(f'Primary source documents directly addressing: "{query}"')
    if required > 1 and doc_count < required:
        requested.append(
            f"Additional relevant sources from at least {required} distinct documents are needed."
        )
    for gap in gaps[:GAP_TOPICS_REQUESTED]:
        topic = strip_gap_prefix(gap)
        if topic:
            requested.append(f"Source material that explicitly covers: {topic}")

    return CompletenessVerdict(
        needs_more_evidence=bool(reasons),
        source_count=source_count,
        doc_count=doc_count,
        total_docs=total_docs,
        required_docs=required,
        activation_coverage=coverage,
        reasons=uniq_by(reasons, lambda item: item),
        requested_documents=uniq_by(requested, lambda item: item)[: settings.max_requested_documents],
    )


def should_request_more_evidence(
    verdict: CompletenessVerdict,
    sources: Sequence[Chunk],
    model: MentalModel | None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> bool:
    """Whether the shortfall is one the answer cannot paper over."""
    if not verdict.needs_more_evidence:
        return False
    severe_gaps = model is not None and len(model.gaps) >= settings.model_gap_threshold
    return (
        not sources
        or verdict.doc_count < verdict.required_docs
        or (severe_gaps and verdict.doc_count < max(2, verdict.required_docs))
    )


def build_missing_evidence_response(
    query: str,
    verdict: CompletenessVerdict,
    sources: Sequence[Chunk],
    model: MentalModel | None,
) -> str:
    """Explicit insufficient-evidence answer listing what is needed."""
    query_tokens = tokenize(query)
    evidence_lines: list[str] = []
    for source in list(sources)[:4]:
        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(source.text or "") if s.strip()]
        sentence = next(
            (s for s in sentences if any(token in s.lower() for token in query_tokens)),
            sentences[0] if sentences else "",
        )
        if not sentence:
            continue
        cleaned = collapse_whitespace(sentence)[:210]
        quote = cleaned[:110].replace('"', "'") or "relevant quote"
        page = source.page or "N/A"
        evidence_lines.append(f'- {cleaned} [Source: {source.filename}, page {page}, "{quote}"]')

    entities = ", ".join((model.entities if model else [])[:8]) or "N/A"
    concepts = ", ".join((model.concepts if model else [])[:10]) or "N/A"
    lines = [
        "## Mental Model",
        "- Status: Incomplete for a reliable expert conclusion.",
        f"- Query focus: {query}",
        f"- Current entities: {entities}",
        f"- Current concepts: {concepts}",
        "",
        "## Evidence-Based Status",
        f"- Source chunks reviewed: {verdict.source_count}",
        f"- Distinct documents covered: {verdict.doc_count}/{verdict.required_docs} required",
        (
            f"- Activation coverage: {verdict.activation_coverage}%"
            if verdict.activation_coverage
            else "- Activation coverage: N/A"
        ),
    ]
    if evidence_lines:
        lines.append("- Current grounded evidence:")
        lines.extend(evidence_lines)
    else:
        lines.append("- No citable evidence is currently available for this question.")

    lines.extend(["", "## Uncertainties & Missing Information"])
    lines.extend(f"- {reason}" for reason in verdict.reasons)
    if not verdict.reasons:
        lines.append("- Evidence is insufficient to produce a high-confidence answer.")
    if model and model.gaps:
        lines.append("- Open evidence gaps:")
        lines.extend(f"- {gap}" for gap in model.gaps[:6])

    lines.extend(["", "## Required Documents/Data"])
    if verdict.requested_documents:
        lines.extend(f"{idx}. {item}" for idx, item in enumerate(verdict.requested_documents, start=1))
    else:
        lines.append("1. Additional source documents that directly answer unresolved parts of the question.")
    lines.extend(
        [
            "",
            "Please provide the missing documents/data so a fully grounded, cross-source answer "
            "with precise citations can be completed.",
        ]
    )
    return "\n".join(lines)
