"""Query interpretation: intent flags, intent graph, instruction profile."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from evidence_rag.models import InstructionProfile, IntentGraph, QueryIntent
from evidence_rag.text import collapse_whitespace, extract_concepts, extract_entities

BROAD_OR_DECISION = re.compile(
    r"\b(overall|across|entire|comprehensive|compare|contrast|decision|recommend|trade-?off)\b",
    re.IGNORECASE,
)
BROAD_QUESTION = re.compile(
    r"\b(overall|across|entire|comprehensive|strategy|decision|recommend|trade-?off|all documents|summar(?:y|ise|ize))\b",
    re.IGNORECASE,
)
COMPARATIVE = re.compile(
    r"\b(compare|comparison|contrast|versus|vs\.?|difference|differences|better|worse)\b",
    re.IGNORECASE,
)
TIMELINE = re.compile(
    r"\b(timeline|chronolog\w*|history|sequence|milestones?|before|after|when|evolution)\b",
    re.IGNORECASE,
)
DECISION_MODE = re.compile(
    r"\b(recommend|recommendation|decision|should|best approach|manage|strategy|trade-?off|"
    r"pros|cons|options?|what should|how to handle|policy approach)\b",
    re.IGNORECASE,
)
PREDICTIVE = re.compile(
    r"\b(predict\w*|forecast\w*|will|would|impact|effect|outcome|expect\w*|likely)\b",
    re.IGNORECASE,
)
BULLET_REQUEST = re.compile(r"\b(bullet(?:s| points?| list)?|list)\b", re.IGNORECASE)
TABLE_REQUEST = re.compile(r"\btable\b", re.IGNORECASE)

_CONSTRAINT_PHRASE = re.compile(
    r"\b(must|cannot|only|required|unless|except|without|at least|at most)\b[^.?!;]{0,80}",
    re.IGNORECASE,
)
_RELATION_PHRASE = re.compile(
    r"\b(cause|impact|depends on|related to|trade[- ]?off|compare|versus|vs)\b[^.?!;]{0,80}",
    re.IGNORECASE,
)
_UNKNOWN_PHRASE = re.compile(
    r"\b(uncertain|unknown|missing|need|evidence|prove|validate)\b[^.?!;]{0,80}",
    re.IGNORECASE,
)
_CONTINUITY_REFERENCE = re.compile(
    r"\b(it|this|that|those|these|they|them|previous|same one|compare it|what about)\b",
    re.IGNORECASE,
)
CONTINUITY_HINT_CHARS = 240


def is_broad_or_decision(query: str, profile: InstructionProfile | None = None) -> bool:
    if profile is not None and profile.decision_mode:
        return True
    return bool(BROAD_OR_DECISION.search(query or ""))


def detect_query_intent(query: str) -> QueryIntent:
    text = query or ""
    return QueryIntent(
        broad_coverage=bool(BROAD_QUESTION.search(text)),
        comparative=bool(COMPARATIVE.search(text)),
        timeline=bool(TIMELINE.search(text)),
    )


def is_predictive(query: str) -> bool:
    return bool(PREDICTIVE.search(query or ""))


def _phrases(pattern: re.Pattern[str], text: str, limit: int = 10) -> list[str]:
    return [match.group(0).strip() for match in pattern.finditer(text)][:limit]


def build_intent_graph(query: str) -> IntentGraph:
    normalized = collapse_whitespace(query)
    return IntentGraph(
        raw=normalized,
        entities=extract_entities(normalized)[:20],
        concepts=extract_concepts(normalized)[:24],
        constraints=_phrases(_CONSTRAINT_PHRASE, normalized),
        relations=_phrases(_RELATION_PHRASE, normalized),
        unknowns=_phrases(_UNKNOWN_PHRASE, normalized),
    )


def build_instruction_profile(query: str) -> InstructionProfile:
    text = query or ""
    if TABLE_REQUEST.search(text):
        requested_format = "table"
    elif BULLET_REQUEST.search(text):
        requested_format = "bullet list"
    else:
        requested_format = "structured prose"
    return InstructionProfile(
        decision_mode=bool(DECISION_MODE.search(text)),
        requested_format=requested_format,
    )


def required_cross_source_docs(
    broad: bool,
    total_docs: int,
    *,
    min_cross_source_docs: int,
    large_corpus_docs: int,
    large_corpus_required_docs: int,
) -> int:
    if not broad:
        return 1
    if total_docs >= large_corpus_docs:
        return large_corpus_required_docs
    return max(1, min(total_docs, min_cross_source_docs))


def resolve_query_from_history(query: str, history: Sequence[dict[str, Any]] | None) -> str:
    """Append the latest user turn as a hint when the query leans on co-reference."""
    raw = (query or "").strip()
    if not raw or not history or not _CONTINUITY_REFERENCE.search(raw):
        return raw
    for turn in reversed(history):
        content = str(turn.get("content") or "").strip()
        if turn.get("role") == "user" and content:
            hint = collapse_whitespace(content)[:CONTINUITY_HINT_CHARS]
            return f"{raw}\n\n[Continuity hint from prior user turn: {hint}]"
    return raw
