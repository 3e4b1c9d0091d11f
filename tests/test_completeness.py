from dataclasses import replace

from evidence_rag.completeness import (
    GAP_PREFIX,
    assess_completeness,
    build_gap_driven_queries,
    build_heuristic_model,
    build_mental_model,
    build_missing_evidence_response,
    normalize_model,
    should_request_more_evidence,
)
from evidence_rag.config import DEFAULT_SETTINGS
from evidence_rag.intent import build_instruction_profile
from evidence_rag.llm_client import LLMServiceError
from evidence_rag.models import ActivationReport, Chunk, MentalModel

STORAGE_TEXT = (
    "Grid Operator limits storage. Storage requires permits. "
    "Storage must be metered. Storage may shrink."
)


def _chunk(filename: str, index: int, text: str, page: int | None = 1) -> Chunk:
    return Chunk(id=f"{filename}-{index}", filename=filename, index=index, page=page, text=text)


def _gaps(count: int) -> list[str]:
    return [f'{GAP_PREFIX} "topic{idx}"' for idx in range(count)]


def _assess(query: str, sources: list[Chunk], model: MentalModel, report: ActivationReport | None = None, settings=DEFAULT_SETTINGS):
    return assess_completeness(
        query, sources, model, report, build_instruction_profile(query), settings
    )


def test_heuristic_model_extracts_structure_and_gaps() -> None:
    model = build_heuristic_model("storage permits zoning rules", [_chunk("grid.txt", 0, STORAGE_TEXT)])
    assert model.entities == ["grid operator", "storage"]
    assert "storage" in model.concepts
    assert [rel.render() for rel in model.relationships] == ["Storage requires permits."]
    assert model.constraints == ["Storage must be metered."]
    assert model.assumptions == ["Storage may shrink."]
    assert model.gaps == [f'{GAP_PREFIX} "zoning"', f'{GAP_PREFIX} "rules"']


def test_normalize_model_caps_and_falls_back_per_field() -> None:
    fallback = MentalModel(concepts=["storage"], gaps=["g"])
    parsed = {
        "entities": ["Grid Operator", " ", "Regulator"],
        "relationships": [
            {"subject": "levy", "predicate": "raises", "object": "cost"},
            "plain statement",
            5,
            {},
        ],
        "gaps": "not a list",
        "constraints": [f"c{idx}" for idx in range(30)],
    }
    model = normalize_model(parsed, fallback)
    assert model.entities == ["Grid Operator", "Regulator"]
    assert [rel.render() for rel in model.relationships] == ["levy raises cost", "plain statement"]
    assert model.concepts == ["storage"]
    assert model.gaps == ["g"]
    assert len(model.constraints) == 10
    assert normalize_model(["not", "a", "dict"], fallback) is fallback


def test_build_mental_model_falls_back_when_llm_fails() -> None:
    class FailingLLM:
        def generate_json(self, **kwargs):
            raise LLMServiceError("provider down")

    class PartialLLM:
        def generate_json(self, **kwargs):
            return {"gaps": []}

    sources = [_chunk("grid.txt", 0, STORAGE_TEXT)]
    heuristic = build_heuristic_model("storage zoning", sources)
    assert build_mental_model("storage zoning", sources, FailingLLM()) == heuristic

    partial = build_mental_model("storage zoning", sources, PartialLLM())
    assert partial.gaps == []
    assert partial.entities == heuristic.entities


def test_gap_driven_queries_are_bounded() -> None:
    model = MentalModel(gaps=_gaps(10))
    queries = build_gap_driven_queries("storage policy", model, max_gap_queries=4)
    assert len(queries) == 6
    assert queries[0] == "storage policy cross-source supporting evidence"
    assert queries[2] == "storage policy topic0 validating evidence"
    assert len(build_gap_driven_queries("storage policy", None)) == 2


def test_single_document_narrow_query_is_complete() -> None:
    sources = [_chunk("policy.txt", 0, "The levy rises to 40 dollars per tonne.")]
    model = build_heuristic_model("What is the levy?", sources)
    verdict = _assess("What is the levy?", sources, model)
    assert not verdict.needs_more_evidence
    assert verdict.required_docs == 1
    assert verdict.reasons == []
    assert not should_request_more_evidence(verdict, sources, model)


def test_broad_query_with_single_document_requests_more() -> None:
    sources = [_chunk("policy.txt", 0, "The levy rises."), _chunk("policy.txt", 1, "The levy falls.")]
    report = ActivationReport(total_documents=4, activation_coverage_pct=50)
    verdict = _assess("Compare the levy across documents", sources, MentalModel(), report)
    assert verdict.needs_more_evidence
    assert verdict.required_docs == 2
    assert verdict.doc_count == 1
    assert "Cross-source coverage is insufficient (1/2 required documents)." in verdict.reasons
    assert should_request_more_evidence(verdict, sources, MentalModel())


def test_broad_query_over_one_document_corpus_is_not_a_shortfall() -> None:
    sources = [_chunk("policy.txt", 0, "The levy rises."), _chunk("policy.txt", 1, "The levy falls.")]
    report = ActivationReport(total_documents=1, activation_coverage_pct=100)
    verdict = _assess("Compare the levy across documents", sources, MentalModel(), report)
    assert verdict.required_docs == 1
    assert verdict.total_docs == 1
    assert not any(reason.startswith("Cross-source coverage") for reason in verdict.reasons)
    assert not verdict.needs_more_evidence
    assert not should_request_more_evidence(verdict, sources, MentalModel())


def test_many_gaps_over_one_document_request_more() -> None:
    sources = [_chunk("policy.txt", 0, "The levy rises.")]
    model = MentalModel(gaps=_gaps(6))
    verdict = _assess("What is the levy?", sources, model)
    assert verdict.reasons == ["Mental model still has unresolved high-priority evidence gaps."]
    assert verdict.requested_documents[0] == "Source material that explicitly covers: topic0"
    assert should_request_more_evidence(verdict, sources, model)


def test_low_activation_alone_does_not_block_answer() -> None:
    sources = [_chunk(f"doc{idx}.txt", 0, "The levy rises.") for idx in range(3)]
    report = ActivationReport(total_documents=6, activation_coverage_pct=10)
    verdict = _assess("Give an overall view of the levy", sources, MentalModel(), report)
    assert verdict.needs_more_evidence
    assert verdict.reasons == ["Activation coverage remains low for a broad query (10%)."]
    assert not should_request_more_evidence(verdict, sources, MentalModel())


def test_empty_sources_and_requested_documents_cap() -> None:
    settings = replace(DEFAULT_SETTINGS, max_requested_documents=3)
    verdict = _assess("Compare the levy across documents", [], MentalModel(gaps=_gaps(10)), None, settings)
    assert verdict.source_count == 0
    assert "No retrievable evidence was found for the question." in verdict.reasons
    assert len(verdict.requested_documents) == 3
    assert verdict.requested_documents[0].startswith("Primary source documents directly addressing")


def test_missing_evidence_response_has_all_sections() -> None:
    sources = [_chunk("policy.txt", 0, 'Intro line here. The "levy" rises to 40 dollars.', page=3)]
    model = MentalModel(entities=["levy"], gaps=_gaps(2))
    verdict = _assess("What is the levy?", sources, model)
    answer = build_missing_evidence_response("What is the levy?", verdict, sources, model)
    for heading in (
        "## Mental Model",
        "## Evidence-Based Status",
        "## Uncertainties & Missing Information",
        "## Required Documents/Data",
    ):
        assert heading in answer
    assert "[Source: policy.txt, page 3, \"The 'levy' rises to 40 dollars.\"]" in answer
    assert "1. Source material that explicitly covers: topic0" in answer
