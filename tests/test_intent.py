from evidence_rag.intent import (
    build_instruction_profile,
    build_intent_graph,
    detect_query_intent,
    is_broad_or_decision,
    required_cross_source_docs,
    resolve_query_from_history,
)
from evidence_rag.models import InstructionProfile


def _required(broad: bool, total: int) -> int:
    return required_cross_source_docs(
        broad,
        total,
        min_cross_source_docs=2,
        large_corpus_docs=7,
        large_corpus_required_docs=3,
    )


def test_required_cross_source_docs_by_scope_and_corpus_size() -> None:
    assert _required(False, 20) == 1
    assert _required(True, 1) == 1
    assert _required(True, 4) == 2
    assert _required(True, 7) == 3


def test_broad_or_decision_detection() -> None:
    assert is_broad_or_decision("Compare the two tariff designs")
    assert not is_broad_or_decision("What is the tariff in 2024?")
    assert is_broad_or_decision("tariff", InstructionProfile(decision_mode=True))


def test_detect_query_intent_flags() -> None:
    intent = detect_query_intent("Overall timeline versus the plan")
    assert intent.broad_coverage and intent.comparative and intent.timeline
    assert detect_query_intent("").model_dump() == {
        "broad_coverage": False,
        "comparative": False,
        "timeline": False,
    }


def test_instruction_profile_modes_and_format() -> None:
    profile = build_instruction_profile("Which option should we pick? Give a table.")
    assert profile.decision_mode
    assert profile.requested_format == "table"
    assert build_instruction_profile("List the dates").requested_format == "bullet list"
    assert not build_instruction_profile("Define baseline").decision_mode


def test_intent_graph_extracts_constraints_and_unknowns() -> None:
    graph = build_intent_graph("Grid Operator limits must hold; what evidence is missing?")
    assert "grid operator" in graph.entities
    assert graph.constraints and graph.constraints[0].lower().startswith("must")
    assert graph.unknowns


def test_resolve_query_from_history_adds_hint_only_for_references() -> None:
    history = [
        {"role": "user", "content": "Explain the battery storage tariff."},
        {"role": "assistant", "content": "It is a time-of-use rate."},
    ]
    resolved = resolve_query_from_history("How does it affect peak demand?", history)
    assert "battery storage tariff" in resolved
    assert resolve_query_from_history("Define peak demand", history) == "Define peak demand"
    assert resolve_query_from_history("What about it?", None) == "What about it?"
