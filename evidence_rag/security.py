"""Input hygiene for corpus files, user questions and cited quotes.

Retrieved text is untrusted evidence: lines that read like instructions to
the model are dropped at ingestion, and quotes are only accepted when they
appear verbatim (modulo case and whitespace) in a retrieved chunk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from evidence_rag.config import MAX_UPLOAD_FILE_MB

CORPUS_EXTENSIONS = frozenset({".pdf", ".txt", ".md", ".rst", ".json", ".csv"})
MAX_QUERY_CHARS = 4000

INJECTION_LINE = re.compile(
    "|".join(
        [
            r"ignore\s+(?:all\s+)?previous\s+instructions",
            r"ignore\s+the\s+above",
            r"system\s+prompt",
            r"developer\s+message",
            r"you\s+are\s+chatgpt",
            r"reveal\s+(?:your\s+)?instructions",
            r"jailbreak",
            r"do\s+not\s+follow",
            r"tool\s+call",
        ]
    ),
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class ScrubbedText:
    text: str
    filtered_lines: int = 0


def corpus_extension(filename: str) -> str:
    """Lower-cased suffix of ``filename``; ValueError when it cannot be ingested."""
    ext = Path(filename).suffix.lower()
    if ext not in CORPUS_EXTENSIONS:
        allowed = ", ".join(sorted(CORPUS_EXTENSIONS))
        raise ValueError(f"Unsupported file extension '{ext}'. Allowed: {allowed}.")
    return ext


def check_file_size(size_bytes: int) -> None:
    if size_bytes > MAX_UPLOAD_FILE_MB * 1024 * 1024:
        raise ValueError(f"File exceeds size limit ({MAX_UPLOAD_FILE_MB} MB).")


def check_corpus_file(path: Path) -> str:
    ext = corpus_extension(path.name)
    check_file_size(path.stat().st_size)
    return ext


def is_injection_line(line: str) -> bool:
    return bool(INJECTION_LINE.search(line))


def scrub_document_text(text: str) -> ScrubbedText:
    kept = [line for line in text.splitlines() if not is_injection_line(line)]
    filtered = len(text.splitlines()) - len(kept)
    return ScrubbedText(text="\n".join(kept).replace("\x00", " ").strip(), filtered_lines=filtered)


def sanitize_query(query: str) -> str:
    """Strip control characters and bound the length of a user question."""
    cleaned = _CONTROL_CHARS.sub(" ", query or "")
    return " ".join(cleaned.split())[:MAX_QUERY_CHARS]


def match_form(text: str) -> str:
    return " ".join((text or "").lower().split())


def quote_supported_by_chunk(quote: str, chunk_text: str) -> bool:
    needle = match_form(quote)
    return bool(needle) and needle in match_form(chunk_text)
