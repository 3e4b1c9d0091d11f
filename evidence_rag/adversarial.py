"""Devil's-advocate retrieval: search for evidence that limits the expected answer."""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Sequence
from typing import Any

from evidence_rag.bridge import seed_concept_weights
from evidence_rag.config import DEFAULT_SETTINGS, EngineSettings
from evidence_rag.corpus import CorpusSnapshot
from evidence_rag.dispatch import dispatch_probes
from evidence_rag.models import Chunk
from evidence_rag.retrieval import RelevanceScorer, lexical_relevance
from evidence_rag.text import (
    collapse_whitespace,
    extract_concepts,
    extract_entities,
    normalize_concept,
    tokenize,
    uniq_by,
)

log = logging.getLogger(__name__)

CONTRADICTION_MARKERS = re.compile(
    r"\b(however|but|except|unless|despite|limit\w*|constraint\w*|risk\w*|contradict\w*|fail\w*)\b",
    re.IGNORECASE,
)
MAX_SIGNAL_COUNT = 8
SIGNAL_WEIGHT_CAP = 5
LEXICAL_WEIGHT = 0.72
SIGNAL_WEIGHT = 0.09
SEED_CONCEPT_PROBES = 2


def contradiction_signal(text: str) -> int:
    """Count of contrast/limitation markers, capped."""
    return min(MAX_SIGNAL_COUNT, len(CONTRADICTION_MARKERS.findall(text or "")))


def build_adversarial_probes(query: str, seed_concepts: Sequence[str], max_probes: int) -> list[str]:
    probes = [
        f"{query} contradictory evidence",
        f"{query} limitations and exceptions",
        f"{query} counterexamples and failure modes",
    ]
    for concept in seed_concepts[:SEED_CONCEPT_PROBES]:
        probes.append(f"{query} {concept} risks and constraints")
    cleaned = [collapse_whitespace(probe) for probe in probes]
    return uniq_by(cleaned, lambda item: normalize_concept(item) or None)[:max_probes]


def score_adversarial(
    candidates: Sequence[Chunk],
    query: str,
    scorer: RelevanceScorer = lexical_relevance,
) -> list[tuple[Chunk, float]]:
    """Pairs of (annotated chunk, lexical score), one per chunk id."""
    tokens = tokenize(query)
    entities = extract_entities(query)
    concepts = extract_concepts(query)
    scored: dict[str, tuple[Chunk, float]] = {}
    for chunk in candidates:
        if chunk.id in scored:
            continue
        lexical = scorer(chunk, query, tokens, entities, concepts)
        signal = contradiction_signal(chunk.text)
        score = lexical * LEXICAL_WEIGHT + min(signal, SIGNAL_WEIGHT_CAP) * SIGNAL_WEIGHT
        annotated = chunk.model_copy(update={"score": score, "adversarial_signal": signal})
        scored[chunk.id] = (annotated, lexical)
    return list(scored.values())


def run_adversarial_pass(
    query: str,
    seeds: Sequence[Chunk],
    top_k: int,
    snapshot: CorpusSnapshot,
    *,
    options: dict[str, Any] | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
    scorer: RelevanceScorer = lexical_relevance,
    cancel_event: threading.Event | None = None,
) -> list[Chunk]:
    """Bounded set of disconfirming chunks.

    Chunks carrying contrast markers come first; when none do, the best
    lexical matches are returned instead so the pass is never empty while
    candidates exist.
    """
    retriever = snapshot.retriever
    if retriever is None or settings.adversarial_max_passes <= 0:
        return []

    seed_concepts = [concept for concept, _ in seed_concept_weights(seeds, snapshot.graph)]
    probes = build_adversarial_probes(query, seed_concepts, settings.adversarial_max_passes)
    k = max(12, math.ceil(top_k * 0.6))
    probe_options = {**(options or {}), "adversarial": True}

    def search(probe: str) -> list[Chunk]:
        return retriever.search(probe, k, probe_options)

    candidates: list[Chunk] = []
    for outcome in dispatch_probes(
        probes,
        search,
        workers=settings.probe_workers,
        timeout_s=settings.probe_timeout_s,
        cancel_event=cancel_event,
    ):
        candidates.extend(outcome.value or [])

    scored = score_adversarial(candidates, query, scorer)
    signalled = [chunk for chunk, _ in scored if (chunk.adversarial_signal or 0) > 0]
    if signalled:
        ranked = sorted(signalled, key=lambda chunk: (-chunk.score, chunk.id))
        result = ranked[: settings.adversarial_max_results]
    else:
        by_lexical = sorted(scored, key=lambda pair: (-pair[1], pair[0].id))
        result = [chunk for chunk, _ in by_lexical[: settings.adversarial_fallback_results]]
    log.info(
        "Adversarial pass: probes=%d candidates=%d returned=%d",
        len(probes),
        len(scored),
        len(result),
    )
    return result


def merge_adversarial(
    selected: Sequence[Chunk],
    adversarial: Sequence[Chunk],
    top_k: int,
    max_replacements: int,
) -> list[Chunk]:
    """Fold disconfirming chunks into the final set without losing a document.

    Free slots are filled first; after that a chunk is only replaced when
    its document is still represented by another chunk.
    """
    out = list(selected)
    ids = {chunk.id for chunk in out}
    replacements = 0
    for chunk in adversarial:
        if chunk.id in ids:
            continue
        if len(out) < top_k:
            out.append(chunk)
            ids.add(chunk.id)
            continue
        if replacements >= max_replacements:
            break
        victim = _last_redundant(out)
        if victim is None:
            break
        ids.discard(out[victim].id)
        del out[victim]
        out.append(chunk)
        ids.add(chunk.id)
        replacements += 1
    return out


def _last_redundant(out: list[Chunk]) -> int | None:
    counts: dict[str, int] = {}
    for chunk in out:
        counts[chunk.filename] = counts.get(chunk.filename, 0) + 1
    for idx in range(len(out) - 1, -1, -1):
        chunk = out[idx]
        if chunk.adversarial_signal is None and counts[chunk.filename] > 1:
            return idx
    return None
