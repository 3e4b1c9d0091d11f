from evidence_rag.models import Chunk, QueryIntent
from evidence_rag.retrieval import (
    EmbeddingRetriever,
    HashEmbedder,
    NoopDiversifier,
    PerDocumentCapDiversifier,
    ScoreReranker,
    lexical_relevance,
    merge_unique_chunks,
)
from evidence_rag.text import extract_concepts, extract_entities, tokenize


def _chunk(cid: str, filename: str, text: str = "text", score: float = 0.0) -> Chunk:
    return Chunk(id=cid, filename=filename, index=0, text=text, score=score)


def test_hash_embedder_is_deterministic() -> None:
    embedder = HashEmbedder(dim=128)
    a = embedder.encode(["alpha beta gamma"], convert_to_numpy=True)
    b = embedder.encode(["alpha beta gamma"], convert_to_numpy=True)
    assert len(a) == 1
    assert len(a[0]) == 128
    assert a == b


def test_retriever_search_returns_scored_copies(monkeypatch) -> None:
    monkeypatch.setenv("OFFLINE_MODE", "1")
    monkeypatch.setenv("EMBED_PROVIDER", "hash")

    chunks = [
        _chunk("c1", "doc1.txt", "carbon accounting baseline emissions"),
        _chunk("c2", "doc2.txt", "biodiversity protection and habitat restoration"),
    ]
    retriever = EmbeddingRetriever(chunks)
    results = retriever.search("carbon emissions baseline", top_k=1)
    assert len(results) == 1
    assert results[0].id == "c1"
    assert results[0].score > 0
    assert chunks[0].score == 0.0


def test_retriever_handles_empty_corpus(monkeypatch) -> None:
    monkeypatch.setenv("EMBED_PROVIDER", "hash")
    assert EmbeddingRetriever([]).search("anything", top_k=5) == []


def test_lexical_relevance_rewards_token_entity_and_concept_hits() -> None:
    query = "How does Carbon Pricing affect baseline emissions?"
    args = (tokenize(query), extract_entities(query), extract_concepts(query))
    strong = _chunk("a", "a.txt", "Carbon Pricing changes baseline emissions across sectors.")
    weak = _chunk("b", "b.txt", "Habitat restoration requires long term funding.")
    assert lexical_relevance(strong, query, *args) > lexical_relevance(weak, query, *args)
    assert lexical_relevance(weak, query, *args) == 0.0


def test_merge_unique_chunks_is_idempotent_and_order_stable() -> None:
    a = _chunk("a", "x.txt", score=0.2)
    b = _chunk("b", "x.txt", score=0.5)
    a_higher = _chunk("a", "x.txt", score=0.9)

    merged = merge_unique_chunks([a, b], [a_higher])
    assert [c.id for c in merged] == ["a", "b"]
    assert merged[0].score == 0.9
    assert merge_unique_chunks(merged, merged) == merged
    assert merge_unique_chunks([a, b], [], limit=1) == [a]


def test_score_reranker_and_diversifiers() -> None:
    ranked = ScoreReranker().rerank(
        "q",
        [_chunk("a", "x.txt", score=0.1), _chunk("b", "x.txt", score=0.8), _chunk("c", "y.txt", score=0.5)],
        3,
        QueryIntent(),
    )
    assert [c.id for c in ranked] == ["b", "c", "a"]
    assert [c.id for c in NoopDiversifier().diversify(ranked, 2)] == ["b", "c"]

    capped = PerDocumentCapDiversifier(max_per_document=1).diversify(
        [_chunk("a", "x.txt"), _chunk("b", "x.txt"), _chunk("c", "y.txt")], 3
    )
    assert [c.id for c in capped] == ["a", "c", "b"]
