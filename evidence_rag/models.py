"""Shared data models for the evidence engine."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Chunk(BaseModel):
    """Atomic retrieval unit.

    Corpus chunks are frozen; per-query annotations (score, bridge and
    adversarial tags) live on copies made with ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    index: int
    text: str
    page: int | None = None
    score: float = 0.0
    bridge_concept: str | None = None
    adversarial_signal: int | None = None


class Document(BaseModel):
    filename: str
    chunk_ids: list[str] = Field(default_factory=list)
    path: str = ""
    text: str = ""


class QueryIntent(BaseModel):
    broad_coverage: bool = False
    comparative: bool = False
    timeline: bool = False


class IntentGraph(BaseModel):
    raw: str
    entities: list[str] = Field(default_factory=list)
    concepts: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    relations: list[str] = Field(default_factory=list)
    unknowns: list[str] = Field(default_factory=list)


class InstructionProfile(BaseModel):
    decision_mode: bool = False
    strict_source_only: bool = True
    require_uncertainty_section: bool = True
    requested_format: str = "structured prose"


class BridgeConcept(BaseModel):
    concept: str
    docs: int


class ActivationReport(BaseModel):
    query: str = ""
    total_documents: int = 0
    total_chunks: int = 0
    activated_documents: int = 0
    activated_chunks: int = 0
    activation_coverage_pct: int = 0
    retrieval_passes: int = 1
    retrieval_stabilized: bool = False
    bridge_concepts: list[BridgeConcept] = Field(default_factory=list)
    required_cross_source_docs: int = 1
    current_cross_source_docs: int = 0
    adversarial_chunks: int = 0
    failed_probes: int = 0
    corpus_generation: int = 0


class RetrievalResult(BaseModel):
    chunks: list[Chunk] = Field(default_factory=list)
    activation_report: ActivationReport = Field(default_factory=ActivationReport)


class RefinementResult(BaseModel):
    chunks: list[Chunk]
    passes: int = 1
    stabilized: bool = False
    failed_probes: int = 0


class Relationship(BaseModel):
    statement: str = ""
    subject: str = ""
    predicate: str = ""
    object: str = ""

    def render(self) -> str:
        if self.statement:
            return self.statement
        return " ".join(part for part in (self.subject, self.predicate, self.object) if part)


class MentalModel(BaseModel):
    entities: list[str] = Field(default_factory=list)
    concepts: list[str] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)


class CompletenessVerdict(BaseModel):
    needs_more_evidence: bool
    source_count: int
    doc_count: int
    total_docs: int
    required_docs: int
    activation_coverage: int
    reasons: list[str] = Field(default_factory=list)
    requested_documents: list[str] = Field(default_factory=list)


class ClaimDiagnostics(BaseModel):
    claim_count: int = 0
    cited_claim_count: int = 0
    claim_citation_coverage: float = 0.0
    citation_support: float = 0.0
    citation_precision: float = 0.0
    needs_repair: bool = False


class DecisionChecks(BaseModel):
    has_options_tradeoffs: bool = False
    has_recommendation: bool = False
    has_risks: bool = False
    has_multiple_options: bool = False


class GateResult(BaseModel):
    passed: bool
    reasons: list[str] = Field(default_factory=list)
    broad_or_decision: bool = False
    source_doc_count: int = 0
    cited_doc_count: int = 0
    cited_docs: list[str] = Field(default_factory=list)
    reasoning_signals: int = 0
    min_reasoning_signals: int = 0
    citation_count: int = 0
    min_citation_target: int = 0
    cross_source_expected: bool = False
    cross_source_satisfied: bool = True
    decision_checks: DecisionChecks = Field(default_factory=DecisionChecks)
    activation_coverage: int = 0


class AnswerOutcome(BaseModel):
    question: str
    answer: str
    status: Literal["final", "degraded", "missing_evidence"] = Field(
        ...,
        description="final when the gate passed, degraded when repairs ran out.",
    )
    sources: list[Chunk] = Field(default_factory=list)
    activation_report: ActivationReport = Field(default_factory=ActivationReport)
    mental_model: MentalModel = Field(default_factory=MentalModel)
    completeness: CompletenessVerdict | None = None
    gate: GateResult | None = None
    diagnostics: ClaimDiagnostics | None = None
    citation_count: int = 0
    repair_attempts: int = 0
    model_refinement_passes: int = 1
    model_refinement_stabilized: bool = False
