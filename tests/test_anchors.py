from evidence_rag.anchors import (
    cross_source_corroborate,
    deep_scan_augment,
    document_anchors,
    enforce_document_coverage,
    pick_evenly_distributed,
)
from evidence_rag.corpus import documents_from_chunks
from evidence_rag.models import Chunk, QueryIntent
from evidence_rag.retrieval import chunk_lookup, distinct_documents


def _doc_chunks(filename: str, count: int, text: str = "general notes") -> list[Chunk]:
    return [
        Chunk(id=f"{filename}-{i}", filename=filename, index=i, text=f"{text} part {i}")
        for i in range(count)
    ]


def test_pick_evenly_distributed_includes_first_and_last() -> None:
    chunks = _doc_chunks("a.txt", 9)
    picks = pick_evenly_distributed(chunks, 3)
    assert [c.index for c in picks] == [0, 4, 8]
    assert pick_evenly_distributed(chunks, 0) == []
    assert len(pick_evenly_distributed(chunks[:2], 5)) == 2


def test_document_anchors_cover_every_document() -> None:
    chunks = _doc_chunks("a.txt", 6) + _doc_chunks("b.txt", 6, "tariff schedule")
    docs = documents_from_chunks(chunks)
    anchors = document_anchors("tariff schedule", QueryIntent(), docs, chunk_lookup(chunks))

    assert distinct_documents(anchors) == {"a.txt", "b.txt"}
    assert len({c.id for c in anchors}) == len(anchors)
    b_anchors = [c for c in anchors if c.filename == "b.txt"]
    assert b_anchors[0].score > 0


def test_enforce_document_coverage_replaces_redundant_chunks() -> None:
    dominant = _doc_chunks("big.txt", 10)
    others = [Chunk(id=f"d{i}", filename=f"doc{i}.txt", index=0, text="x") for i in range(5)]
    out = enforce_document_coverage(dominant, others, top_k=10, total_documents=6)

    assert len(out) == 10
    assert len(distinct_documents(out)) == 6
    assert out[0].id == "big.txt-0"


def test_enforce_document_coverage_fills_free_slots_with_anchors() -> None:
    results = _doc_chunks("a.txt", 2)
    anchors = _doc_chunks("a.txt", 4)
    out = enforce_document_coverage(results, anchors, top_k=4, total_documents=1)
    assert [c.id for c in out] == ["a.txt-0", "a.txt-1", "a.txt-2", "a.txt-3"]
    assert enforce_document_coverage(results, anchors, top_k=0, total_documents=1) == []


def test_deep_scan_adds_mid_and_late_sections() -> None:
    chunks = _doc_chunks("long.txt", 10)
    out = deep_scan_augment("notes", chunks[:1], chunks, top_k=4)
    assert {c.index for c in out} == {0, 5, 8, 9}


def test_cross_source_corroborate_reaches_required_documents() -> None:
    selected = _doc_chunks("a.txt", 3)
    anchors = _doc_chunks("b.txt", 2) + _doc_chunks("c.txt", 2)
    out = cross_source_corroborate(selected, anchors, top_k=3, required_docs=3)
    assert distinct_documents(out) == {"a.txt", "b.txt", "c.txt"}
    assert len(out) == 3
