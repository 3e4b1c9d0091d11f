"""Document loading and page-aware chunking utilities."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import fitz

from evidence_rag.config import (
    CHUNK_OVERLAP_TOKENS,
    CHUNK_SIZE_TOKENS,
    MAX_DOCUMENTS,
    WORDS_PER_TOKEN,
)
from evidence_rag.models import Chunk, Document
from evidence_rag.security import check_corpus_file, scrub_document_text

log = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".rst", ".json", ".csv"}


@dataclass(frozen=True)
class PageText:
    page: int | None
    text: str


@dataclass
class LoadedFile:
    filename: str
    path: str
    pages: list[PageText] = field(default_factory=list)
    filtered_lines: int = 0

    @property
    def text(self) -> str:
        return "\n".join(page.text for page in self.pages)


def _read_pdf(path: Path) -> list[PageText]:
    with fitz.open(path) as pdf:
        return [
            PageText(page=number, text=page.get_text("text"))
            for number, page in enumerate(pdf, start=1)
        ]


def _read_text(path: Path) -> list[PageText]:
    return [PageText(page=None, text=path.read_text(encoding="utf-8", errors="ignore"))]


def _extract_pages(ext: str, path: Path) -> list[PageText]:
    if ext == ".pdf":
        return _read_pdf(path)
    if ext in TEXT_EXTENSIONS:
        return _read_text(path)
    raise ValueError(f"Unsupported extension: {ext}")


def load_documents(paths: list[str]) -> list[LoadedFile]:
    if len(paths) > MAX_DOCUMENTS:
        raise ValueError(f"Expected at most {MAX_DOCUMENTS} documents, got {len(paths)}.")

    files: list[LoadedFile] = []
    seen: set[str] = set()
    for raw_path in paths:
        path = Path(raw_path).expanduser().resolve()
        if not path.exists() or not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        if path.name in seen:
            raise ValueError(f"Duplicate document name: {path.name}")
        seen.add(path.name)

        ext = check_corpus_file(path)
        pages: list[PageText] = []
        filtered_total = 0
        for page in _extract_pages(ext, path):
            scrubbed = scrub_document_text(page.text)
            filtered_total += scrubbed.filtered_lines
            pages.append(PageText(page=page.page, text=scrubbed.text))
        if filtered_total:
            log.warning("Filtered %d suspicious lines from %s", filtered_total, path.name)
        files.append(
            LoadedFile(filename=path.name, path=str(path), pages=pages, filtered_lines=filtered_total)
        )
    return files


def chunk_documents(files: list[LoadedFile]) -> tuple[list[Document], list[Chunk]]:
    """Overlapping word windows per document; a chunk's page is that of its first word."""
    words_per_chunk = max(100, int(CHUNK_SIZE_TOKENS * WORDS_PER_TOKEN))
    overlap_words = max(20, int(CHUNK_OVERLAP_TOKENS * WORDS_PER_TOKEN))
    step = max(1, words_per_chunk - overlap_words)

    documents: list[Document] = []
    all_chunks: list[Chunk] = []
    chunk_counter = 1
    for loaded in files:
        words: list[str] = []
        word_pages: list[int | None] = []
        for page in loaded.pages:
            page_words = page.text.split()
            words.extend(page_words)
            word_pages.extend([page.page] * len(page_words))
        if not words:
            continue

        doc_chunks: list[Chunk] = []
        for start in range(0, len(words), step):
            end = min(len(words), start + words_per_chunk)
            if start >= end:
                continue
            chunk_text = " ".join(words[start:end]).strip()
            if not chunk_text:
                continue
            doc_chunks.append(
                Chunk(
                    id=f"CHUNK-{chunk_counter:04d}",
                    filename=loaded.filename,
                    index=len(doc_chunks),
                    text=chunk_text,
                    page=word_pages[start],
                )
            )
            chunk_counter += 1
            if end == len(words):
                break

        all_chunks.extend(doc_chunks)
        documents.append(
            Document(
                filename=loaded.filename,
                chunk_ids=[chunk.id for chunk in doc_chunks],
                path=loaded.path,
                text=loaded.text,
            )
        )
    return documents, all_chunks
