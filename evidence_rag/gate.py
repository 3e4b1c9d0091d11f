"""Citation and structure quality gate for generated answers."""

from __future__ import annotations

import re
from collections.abc import Sequence

from evidence_rag.config import DEFAULT_SETTINGS, EngineSettings
from evidence_rag.grounding import (
    count_citations,
    extract_cited_documents,
    has_malformed_citation_patterns,
)
from evidence_rag.intent import is_broad_or_decision
from evidence_rag.models import (
    ActivationReport,
    Chunk,
    ClaimDiagnostics,
    DecisionChecks,
    GateResult,
    InstructionProfile,
)

MENTAL_MODEL_SECTION = re.compile(r"(^|\n)\s*#{1,3}\s*mental model\b", re.IGNORECASE)
EVIDENCE_SECTION = re.compile(
    r"(^|\n)\s*#{1,3}\s*(evidence-based expert analysis|evidence synthesis|"
    r"evidence-based answer|evidence-based analysis)\b",
    re.IGNORECASE,
)
UNCERTAINTY_SECTION = re.compile(
    r"(^|\n)\s*#{1,3}\s*uncertainties?\s*&\s*missing information\b", re.IGNORECASE
)
UNCERTAINTY_LANGUAGE = re.compile(
    r"uncertaint|missing information|evidence gap|cannot fully confirm", re.IGNORECASE
)
REASONING_SIGNAL = re.compile(
    r"\b(because|therefore|however|whereas|if|then|trade-?off|constraint|depends on|"
    r"due to|implies|consequently|in turn)\b",
    re.IGNORECASE,
)
OPTIONS_SECTION = re.compile(
    r"(^|\n)\s*#{1,3}\s*(options?\s*&\s*trade-?offs?|trade-?offs?|options?)\b", re.IGNORECASE
)
RECOMMENDATION_SECTION = re.compile(r"(^|\n)\s*#{1,3}\s*recommendation\b", re.IGNORECASE)
RISKS_SECTION = re.compile(r"(^|\n)\s*#{1,3}\s*risks?\b", re.IGNORECASE)
OPTION_BULLET = re.compile(
    r"^\s*(?:[-*]|\d+\.)\s+\**(?:option|approach|alternative|path|strategy)\b",
    re.IGNORECASE | re.MULTILINE,
)
OPTION_LABEL = re.compile(r"\boption\s*(?:1|2|3|a|b|c)\b", re.IGNORECASE)


def min_citation_target(source_count: int, settings: EngineSettings = DEFAULT_SETTINGS) -> int:
    if source_count >= 10:
        return settings.min_citations_for_rich_corpus
    if source_count >= 4:
        return 2
    return 1 if source_count > 0 else 0


def has_mental_model_section(text: str) -> bool:
    return bool(MENTAL_MODEL_SECTION.search(text)) or "mental model" in text.lower()


def has_evidence_section(text: str) -> bool:
    return bool(EVIDENCE_SECTION.search(text)) or bool(
        re.search(r"\bevidence[- ]based\b", text, re.IGNORECASE)
    )


def has_uncertainty_section(text: str) -> bool:
    return bool(UNCERTAINTY_SECTION.search(text)) or bool(UNCERTAINTY_LANGUAGE.search(text))


def count_reasoning_signals(text: str) -> int:
    return len(REASONING_SIGNAL.findall(text))


def evaluate_decision_checks(text: str) -> DecisionChecks:
    lower = text.lower()
    option_bullets = len(OPTION_BULLET.findall(text))
    option_labels = len(OPTION_LABEL.findall(text))
    return DecisionChecks(
        has_options_tradeoffs=bool(OPTIONS_SECTION.search(text))
        or bool(re.search(r"trade-?off|option|alternative|pros|cons", lower)),
        has_recommendation=bool(RECOMMENDATION_SECTION.search(text))
        or bool(re.search(r"\brecommend(?:ed|ation)?\b", lower)),
        has_risks=bool(RISKS_SECTION.search(text)) or bool(re.search(r"\brisks?\b", lower)),
        has_multiple_options=option_bullets >= 2 or option_labels >= 2,
    )


def evaluate_gate(
    query: str,
    answer_text: str,
    diagnostics: ClaimDiagnostics | None,
    profile: InstructionProfile | None,
    sources: Sequence[Chunk] = (),
    activation_report: ActivationReport | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> GateResult:
    """Check a draft answer against the structural and grounding predicates.

    Pure and deterministic; ``reasons`` lists failures in a fixed order so
    they can be fed back into a repair prompt verbatim.
    """
    text = answer_text or ""
    profile = profile or InstructionProfile()
    broad = is_broad_or_decision(query, profile)
    source_docs = {chunk.filename for chunk in sources if chunk.filename}
    source_doc_count = len(source_docs)
    cited_docs = extract_cited_documents(text)
    citation_count = count_citations(text)
    citation_target = min_citation_target(len(sources), settings)

    reasoning_signals = count_reasoning_signals(text)
    min_reasoning = (
        settings.min_decision_reasoning_signals
        if profile.decision_mode
        else settings.min_analysis_reasoning_signals
    )
    coverage_target = settings.claim_citation_target if broad else settings.narrow_citation_coverage
    precision_target = (
        settings.citation_precision_target if broad else settings.narrow_citation_precision
    )
    cross_expected = broad and source_doc_count >= settings.min_cross_source_docs
    cross_satisfied = not cross_expected or len(cited_docs) >= min(
        settings.min_cross_source_docs, source_doc_count
    )

    reasons: list[str] = []
    if not has_mental_model_section(text):
        reasons.append('Missing explicit "Mental Model" section.')
    if not has_evidence_section(text):
        reasons.append("Missing explicit evidence-based analysis section.")
    if profile.require_uncertainty_section and not has_uncertainty_section(text):
        reasons.append('Missing "Uncertainties & Missing Information" section.')
    if reasoning_signals < min_reasoning:
        reasons.append("Reasoning depth is weak (insufficient causal/trade-off signals).")
    if diagnostics is not None and diagnostics.claim_citation_coverage < coverage_target:
        reasons.append("Claim citation coverage is below required threshold.")
    if diagnostics is not None and diagnostics.citation_precision < precision_target:
        reasons.append("Citation precision is below required threshold.")
    if citation_count < citation_target:
        reasons.append(f"Too few citations ({citation_count}/{citation_target} required).")
    if has_malformed_citation_patterns(text):
        reasons.append('Malformed citations found; use [Source: filename, page X, "quote"].')
    if not cross_satisfied:
        reasons.append("Cross-source reasoning is weak (insufficient distinct cited documents).")

    decision = evaluate_decision_checks(text)
    if profile.decision_mode:
        if not decision.has_options_tradeoffs:
            reasons.append('Decision output missing "Options & Trade-offs".')
        if not decision.has_recommendation:
            reasons.append("Decision output missing explicit recommendation.")
        if not decision.has_risks:
            reasons.append("Decision output missing explicit risk analysis.")
        if not decision.has_multiple_options:
            reasons.append("Decision output does not compare multiple concrete options.")

    return GateResult(
        passed=not reasons,
        reasons=reasons,
        broad_or_decision=broad,
        source_doc_count=source_doc_count,
        cited_doc_count=len(cited_docs),
        cited_docs=cited_docs[:8],
        reasoning_signals=reasoning_signals,
        min_reasoning_signals=min_reasoning,
        citation_count=citation_count,
        min_citation_target=citation_target,
        cross_source_expected=cross_expected,
        cross_source_satisfied=cross_satisfied,
        decision_checks=decision,
        activation_coverage=activation_report.activation_coverage_pct if activation_report else 0,
    )
