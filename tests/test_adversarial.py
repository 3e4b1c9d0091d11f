import dataclasses

from evidence_rag.adversarial import (
    build_adversarial_probes,
    contradiction_signal,
    merge_adversarial,
    run_adversarial_pass,
    score_adversarial,
)
from evidence_rag.config import DEFAULT_SETTINGS
from evidence_rag.corpus import build_snapshot
from evidence_rag.models import Chunk


class EverythingRetriever:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def search(self, query, top_k, options=None):
        assert options and options.get("adversarial") is True
        return self._chunks[:top_k]


def _chunk(cid: str, filename: str, text: str, **extra) -> Chunk:
    return Chunk(id=cid, filename=filename, index=0, text=text, **extra)


def test_contradiction_signal_counts_markers_with_cap() -> None:
    assert contradiction_signal("Costs fell, however risks remain unless limits apply.") == 4
    assert contradiction_signal("but " * 20) == 8
    assert contradiction_signal("") == 0


def test_build_adversarial_probes_adds_concept_probes_and_caps() -> None:
    probes = build_adversarial_probes("storage policy", ["battery", "tariff", "grid"], 10)
    assert probes[:3] == [
        "storage policy contradictory evidence",
        "storage policy limitations and exceptions",
        "storage policy counterexamples and failure modes",
    ]
    assert "storage policy battery risks and constraints" in probes
    assert all("grid" not in p for p in probes)
    assert len(build_adversarial_probes("q", [], 2)) == 2


def test_score_adversarial_weights_lexical_and_signal() -> None:
    chunk = _chunk("a", "a.txt", "Storage policy works, however it may fail in winter.")
    [(annotated, lexical)] = score_adversarial([chunk, chunk], "storage policy")
    assert annotated.adversarial_signal == 2
    assert annotated.score == lexical * 0.72 + 2 * 0.09


def test_run_adversarial_pass_prefers_signalled_chunks() -> None:
    chunks = [
        _chunk("plain", "a.txt", "Storage policy is popular."),
        _chunk("contra", "b.txt", "Storage policy fails, however, when tariffs change."),
    ]
    snapshot = build_snapshot(chunks, generation=1, retriever_factory=EverythingRetriever)
    result = run_adversarial_pass("storage policy", chunks, 10, snapshot)
    assert [c.id for c in result] == ["contra"]
    assert result[0].adversarial_signal == 2


def test_run_adversarial_pass_falls_back_to_lexical_matches() -> None:
    chunks = [_chunk(f"c{i}", "a.txt", f"storage note {i}") for i in range(10)]
    snapshot = build_snapshot(chunks, generation=1, retriever_factory=EverythingRetriever)
    settings = dataclasses.replace(DEFAULT_SETTINGS, adversarial_fallback_results=6)
    result = run_adversarial_pass("storage", chunks, 10, snapshot, settings=settings)
    assert len(result) == 6
    assert all(c.adversarial_signal == 0 for c in result)


def test_merge_adversarial_keeps_document_coverage() -> None:
    selected = [
        _chunk("a1", "a.txt", "x"),
        _chunk("a2", "a.txt", "x"),
        _chunk("b1", "b.txt", "x"),
    ]
    adversarial = [
        _chunk("z1", "z.txt", "x", adversarial_signal=3),
        _chunk("z2", "z.txt", "x", adversarial_signal=2),
    ]
    merged = merge_adversarial(selected, adversarial, top_k=3, max_replacements=2)
    assert [c.id for c in merged] == ["a1", "b1", "z1"]
    assert {"a.txt", "b.txt"} <= {c.filename for c in merged}

    roomy = merge_adversarial(selected, adversarial, top_k=5, max_replacements=0)
    assert [c.id for c in roomy] == ["a1", "a2", "b1", "z1", "z2"]
