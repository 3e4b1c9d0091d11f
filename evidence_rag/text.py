"""Text-analysis primitives shared by the retrieval stages."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable, Hashable, Iterable
from typing import TypeVar

T = TypeVar("T")

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "from", "as", "is", "are", "was", "were", "be", "been", "it",
        "this", "that", "these", "those", "can", "could", "should", "would", "may",
        "might", "will", "also", "than", "then", "into", "over", "under", "what",
        "which", "who", "how", "why", "when", "where", "does", "did", "do", "has",
        "have", "had", "its", "their", "there", "about",
    }
)

_NON_CONCEPT_CHARS = re.compile(r"[^\w\s-]")
_WHITESPACE = re.compile(r"\s+")
NAMED_PHRASE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2}\b")
TECH_TERM = re.compile(r"\b[a-z]+(?:[-_][a-z0-9]+)+\b", re.IGNORECASE)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def normalize_concept(text: str) -> str:
    lowered = (text or "").strip().lower()
    return collapse_whitespace(_NON_CONCEPT_CHARS.sub(" ", lowered))


def uniq_by(items: Iterable[T], key: Callable[[T], Hashable | None]) -> list[T]:
    """Keep the first item per key; items whose key is None are dropped."""
    seen: set[Hashable] = set()
    out: list[T] = []
    for item in items:
        k = key(item)
        if k is None or k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out


def tokenize(text: str) -> list[str]:
    return [
        token
        for token in normalize_concept(text).split(" ")
        if len(token) > 2 and token not in STOPWORDS
    ]


def extract_entities(text: str) -> list[str]:
    return uniq_by(
        (normalize_concept(match) for match in NAMED_PHRASE.findall(text or "")),
        lambda item: item or None,
    )


def extract_concepts(text: str) -> list[str]:
    """Query-level concepts: technical terms first, then content tokens by frequency."""
    tech = [normalize_concept(match) for match in TECH_TERM.findall(text or "")]
    counts = Counter(token for token in tokenize(text) if len(token) >= 4)
    frequent = [token for token, _ in counts.most_common()]
    return uniq_by(tech + frequent, lambda item: item or None)
