"""Citation parsing, normalization and claim-level grounding diagnostics."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from evidence_rag.config import DEFAULT_SETTINGS, EngineSettings
from evidence_rag.models import Chunk, ClaimDiagnostics
from evidence_rag.security import quote_supported_by_chunk
from evidence_rag.text import normalize_concept, uniq_by

CITATION = re.compile(
    r'\[Source:\s*([^,\]]+),\s*(?:page\s*)?([^,\]]+),\s*"([^"]+)"\]',
    re.IGNORECASE,
)
_HEADING = re.compile(r"^\s*#{1,6}\s")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MIN_CLAIM_WORDS = 5
_CITATION_SLOT = re.compile(r"\x00(\d+)\x00")
_LEADING_SLOTS = re.compile(r"^(?:\x00\d+\x00[\s.,;:]*)+")
UNAVAILABLE_EXCERPT = "citation excerpt unavailable"


@dataclass(frozen=True)
class Citation:
    filename: str
    page: str
    quote: str


def extract_citations(text: str) -> list[Citation]:
    return [
        Citation(filename=m.group(1).strip(), page=m.group(2).strip(), quote=m.group(3).strip())
        for m in CITATION.finditer(text or "")
    ]


def count_citations(text: str) -> int:
    return len(CITATION.findall(text or ""))


def extract_cited_documents(text: str) -> list[str]:
    names = [citation.filename for citation in extract_citations(text) if citation.filename]
    return uniq_by(names, lambda name: normalize_concept(name) or None)


def normalize_citation_syntax(text: str) -> str:
    """Rewrite common near-miss citation forms into ``[Source: f, page p, "q"]``."""
    out = text or ""
    if not out:
        return out
    out = re.sub(r"\[(source)\s*:", "[Source:", out, flags=re.IGNORECASE)
    out = re.sub(r"\(Source:\s*([^)]+)\)", r"[Source: \1]", out, flags=re.IGNORECASE)
    out = re.sub(
        r'\[Source:\s*([^,\]\n]+)\s*,\s*"([^"]+)"\]',
        r'[Source: \1, page N/A, "\2"]',
        out,
        flags=re.IGNORECASE,
    )
    out = re.sub(
        r"\[Source:\s*([^,\]\n]+)\s*,\s*(?:page\s*)?([^,\]\n]+)\s*\]",
        rf'[Source: \1, page \2, "{UNAVAILABLE_EXCERPT}"]',
        out,
        flags=re.IGNORECASE,
    )
    return out


def has_malformed_citation_patterns(text: str) -> bool:
    value = text or ""
    if not value:
        return False
    if re.search(r"\bCitations?:\s*\n", value, re.IGNORECASE) and not CITATION.search(value):
        return True
    if re.search(r"\b[A-Za-z0-9._ -]+\.(?:pdf|docx|md)\s*\.\.\.", value, re.IGNORECASE):
        return True
    return bool(re.search(r"\[Source:\s*[^\]]*$", value, re.MULTILINE | re.IGNORECASE))


def _split_line(body: str) -> list[str]:
    """Sentences of one line with citations kept whole.

    Citations are masked before splitting so quoted sentence ends do not
    split a claim; a citation that opens a piece belongs to the sentence
    before it (``Claim. [Source: ...]``).
    """
    citations: list[str] = []

    def _mask(match: re.Match[str]) -> str:
        citations.append(match.group(0))
        return f"\x00{len(citations) - 1}\x00"

    pieces: list[str] = []
    for piece in _SENTENCE_SPLIT.split(CITATION.sub(_mask, body)):
        lead = _LEADING_SLOTS.match(piece)
        if lead and pieces:
            pieces[-1] = f"{pieces[-1]} {lead.group(0).strip()}"
            piece = piece[lead.end():]
        if piece.strip():
            pieces.append(piece.strip())
    return [_CITATION_SLOT.sub(lambda m: citations[int(m.group(1))], piece) for piece in pieces]


def _claim_words(sentence: str) -> int:
    return sum(1 for word in CITATION.sub(" ", sentence).split() if any(ch.isalnum() for ch in word))


def claim_sentences(text: str) -> list[str]:
    """Factual-looking sentences: non-heading lines split on sentence ends."""
    claims: list[str] = []
    for line in (text or "").splitlines():
        if not line.strip() or _HEADING.match(line):
            continue
        body = re.sub(r"^\s*(?:[-*]|\d+\.)\s+", "", line)
        claims.extend(s for s in _split_line(body) if _claim_words(s) >= _MIN_CLAIM_WORDS)
    return claims


def build_claim_diagnostics(
    text: str,
    sources: Sequence[Chunk],
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> ClaimDiagnostics:
    """Coverage of claims by citations, and support/precision of those citations."""
    claims = claim_sentences(text)
    cited = sum(1 for claim in claims if CITATION.search(claim))
    citations = extract_citations(text)

    by_doc: dict[str, list[Chunk]] = {}
    for chunk in sources:
        by_doc.setdefault(normalize_concept(chunk.filename), []).append(chunk)

    supported = 0
    precise = 0
    for citation in citations:
        doc_chunks = by_doc.get(normalize_concept(citation.filename))
        if not doc_chunks:
            continue
        supported += 1
        if any(quote_supported_by_chunk(citation.quote, chunk.text) for chunk in doc_chunks):
            precise += 1

    coverage = cited / len(claims) if claims else 0.0
    support = supported / len(citations) if citations else 0.0
    precision = precise / len(citations) if citations else 0.0
    return ClaimDiagnostics(
        claim_count=len(claims),
        cited_claim_count=cited,
        claim_citation_coverage=round(coverage, 4),
        citation_support=round(support, 4),
        citation_precision=round(precision, 4),
        needs_repair=coverage < settings.claim_citation_target
        or precision < settings.citation_precision_target,
    )
