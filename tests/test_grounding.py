from dataclasses import replace

from evidence_rag.config import DEFAULT_SETTINGS
from evidence_rag.grounding import (
    build_claim_diagnostics,
    claim_sentences,
    count_citations,
    extract_cited_documents,
    has_malformed_citation_patterns,
    normalize_citation_syntax,
)
from evidence_rag.models import Chunk

SOURCES = [
    Chunk(id="a", filename="policy.pdf", index=0, page=2, text="The levy rises to 40 dollars per tonne in 2026."),
    Chunk(id="b", filename="grid.pdf", index=0, page=5, text="Storage capacity doubled after the   tariff reform."),
]


def test_normalize_citation_syntax_repairs_near_misses() -> None:
    assert normalize_citation_syntax('[source: a.pdf, "quote"]') == '[Source: a.pdf, page N/A, "quote"]'
    assert normalize_citation_syntax("(Source: a.pdf, page 3)") == (
        '[Source: a.pdf, page 3, "citation excerpt unavailable"]'
    )
    assert normalize_citation_syntax("") == ""


def test_count_and_extract_cited_documents() -> None:
    text = (
        'Claim one [Source: policy.pdf, page 2, "levy rises"]. '
        'Claim two [Source: Policy.pdf, page 2, "40 dollars"] and '
        '[Source: grid.pdf, page 5, "Storage capacity doubled"].'
    )
    assert count_citations(text) == 3
    assert extract_cited_documents(text) == ["policy.pdf", "grid.pdf"]


def test_malformed_citation_patterns() -> None:
    assert has_malformed_citation_patterns("Citations:\n- policy.pdf")
    assert has_malformed_citation_patterns("See report.pdf ... for details")
    assert has_malformed_citation_patterns('Claim [Source: policy.pdf, page 2, "open')
    assert not has_malformed_citation_patterns('Claim [Source: policy.pdf, page 2, "levy"].')
    assert not has_malformed_citation_patterns("")


def test_claim_sentences_skip_headings_and_short_lines() -> None:
    text = "## Evidence-Based Expert Analysis\n- Too short.\n- The levy rises sharply next year. Storage doubled after reform overall."
    assert claim_sentences(text) == [
        "The levy rises sharply next year.",
        "Storage doubled after reform overall.",
    ]


def test_claim_diagnostics_measure_coverage_support_and_precision() -> None:
    answer = "\n".join(
        [
            '- The levy rises to forty dollars soon [Source: policy.pdf, page 2, "rises to 40 dollars"].',
            '- Storage capacity grew after reform [Source: grid.pdf, page 5, "after the tariff reform"].',
            '- Storage also got cheaper overall [Source: grid.pdf, page 5, "prices fell"].',
            '- Unknown documents are cited here [Source: other.pdf, page 1, "anything"].',
            "- This sentence has no citation at all.",
        ]
    )
    diagnostics = build_claim_diagnostics(answer, SOURCES)
    assert diagnostics.claim_count == 5
    assert diagnostics.cited_claim_count == 4
    assert diagnostics.claim_citation_coverage == 0.8
    assert diagnostics.citation_support == 0.75
    assert diagnostics.citation_precision == 0.5
    assert not diagnostics.needs_repair


def test_claim_diagnostics_for_empty_answer_needs_repair() -> None:
    diagnostics = build_claim_diagnostics("", SOURCES)
    assert diagnostics.claim_count == 0
    assert diagnostics.needs_repair


def test_citation_after_sentence_end_counts_for_that_sentence() -> None:
    sources = [Chunk(id="r", filename="a.pdf", index=0, page=1, text="Revenue grew by five percent in the year.")]
    text = 'Revenue grew by five percent in the year. [Source: a.pdf, page 1, "Revenue grew by five percent"]'
    assert claim_sentences(text) == [text]
    diagnostics = build_claim_diagnostics(text, sources)
    assert diagnostics.cited_claim_count == 1
    assert diagnostics.claim_citation_coverage == 1.0
    assert not diagnostics.needs_repair


def test_quote_with_sentence_end_stays_with_its_claim() -> None:
    sources = [Chunk(id="r", filename="a.pdf", index=0, page=1, text="Revenue rose. It fell later in the year.")]
    text = 'Revenue moved in both directions this year [Source: a.pdf, page 1, "Revenue rose. It fell"].'
    diagnostics = build_claim_diagnostics(text, sources)
    assert diagnostics.claim_count == 1
    assert diagnostics.claim_citation_coverage == 1.0
    assert diagnostics.citation_precision == 1.0


def test_trailing_citations_do_not_cover_the_next_sentence() -> None:
    text = (
        'The levy rises to forty dollars soon. [Source: policy.pdf, page 2, "rises to 40 dollars"] '
        '[Source: policy.pdf, page 2, "40 dollars per tonne"] Storage capacity grew after the reform.'
    )
    claims = claim_sentences(text)
    assert len(claims) == 2
    assert claims[0].endswith('"40 dollars per tonne"]')
    assert claims[1] == "Storage capacity grew after the reform."
    assert build_claim_diagnostics(text, SOURCES).cited_claim_count == 1


def test_needs_repair_follows_engine_settings() -> None:
    answer = "\n".join(
        [
            '- The levy rises to forty dollars soon [Source: policy.pdf, page 2, "rises to 40 dollars"].',
            '- Storage capacity grew after reform [Source: grid.pdf, page 5, "after the tariff reform"].',
            "- This sentence has no citation at all.",
        ]
    )
    assert not build_claim_diagnostics(answer, SOURCES).needs_repair
    strict = replace(DEFAULT_SETTINGS, claim_citation_target=0.9)
    assert build_claim_diagnostics(answer, SOURCES, strict).needs_repair
