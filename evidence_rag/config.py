"""Centralized configuration for the evidence engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

DATA_DIR = PROJECT_ROOT / "data"
OUTPUTS_DIR = PROJECT_ROOT / "outputs"


def bootstrap_runtime_dirs() -> None:
    for path in (DATA_DIR, OUTPUTS_DIR):
        path.mkdir(parents=True, exist_ok=True)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# LLM provider configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "grok")
OFFLINE_MODE = os.getenv("OFFLINE_MODE", "0").strip().lower() in {"1", "true", "yes"}

GROK_API_KEY = os.getenv("GROK_API_KEY", "")
GROK_ENDPOINT = os.getenv(
    "GROK_ENDPOINT",
    "https://cmu-llm-api-resource.services.ai.azure.com/openai/v1/",
)
GROK_MODEL = os.getenv("GROK_MODEL", "grok-3")

AZURE_ENDPOINT = os.getenv("AZURE_ENDPOINT", "")
AZURE_API_KEY = os.getenv("AZURE_API_KEY", "")
AZURE_API_VERSION = os.getenv("AZURE_API_VERSION", "2024-12-01-preview")
AZURE_MODEL = os.getenv("AZURE_MODEL", "o4-mini")

# Generation and reliability
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.2"))
MODEL_EXTRACTION_TEMPERATURE = float(os.getenv("MODEL_EXTRACTION_TEMPERATURE", "0.1"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "4"))
LLM_BACKOFF_BASE_S = float(os.getenv("LLM_BACKOFF_BASE_S", "1.0"))
LLM_BACKOFF_MAX_S = float(os.getenv("LLM_BACKOFF_MAX_S", "15.0"))
LLM_MIN_CALL_INTERVAL_S = float(os.getenv("LLM_MIN_CALL_INTERVAL_S", "0.5"))

# Ingestion
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "sentence_transformer")
HASH_EMBED_DIM = int(os.getenv("HASH_EMBED_DIM", "384"))
CHUNK_SIZE_TOKENS = int(os.getenv("CHUNK_SIZE_TOKENS", "450"))
CHUNK_OVERLAP_TOKENS = int(os.getenv("CHUNK_OVERLAP_TOKENS", "100"))
WORDS_PER_TOKEN = float(os.getenv("WORDS_PER_TOKEN", "0.75"))
MAX_DOCUMENTS = int(os.getenv("MAX_DOCUMENTS", "50"))
MAX_UPLOAD_FILE_MB = int(os.getenv("MAX_UPLOAD_FILE_MB", "25"))

# Retrieval sizing. Target K grows with the corpus so larger corpora still
# leave room for anchors from every document.
TARGET_K_SMALL = int(os.getenv("TARGET_K_SMALL", "22"))
TARGET_K_MEDIUM = int(os.getenv("TARGET_K_MEDIUM", "30"))
TARGET_K_LARGE = int(os.getenv("TARGET_K_LARGE", "42"))
SMALL_CORPUS_CHUNKS = int(os.getenv("SMALL_CORPUS_CHUNKS", "60"))
MEDIUM_CORPUS_CHUNKS = int(os.getenv("MEDIUM_CORPUS_CHUNKS", "240"))
MAX_LINK_EXPANSION = int(os.getenv("MAX_LINK_EXPANSION", "28"))
FULL_CORPUS_SWEEP = os.getenv("FULL_CORPUS_SWEEP", "1").strip().lower() in {"1", "true", "yes"}

# Refinement loop. A pass is "stable" when it adds no document and fewer
# than STABLE_CHUNK_DELTA chunks.
MAX_RETRIEVAL_PASSES = int(os.getenv("MAX_RETRIEVAL_PASSES", "4"))
STABLE_CHUNK_DELTA = int(os.getenv("STABLE_CHUNK_DELTA", "4"))
STABLE_PASSES_REQUIRED = int(os.getenv("STABLE_PASSES_REQUIRED", "1"))
PROBE_WORKERS = int(os.getenv("PROBE_WORKERS", "3"))
PROBE_TIMEOUT_S = float(os.getenv("PROBE_TIMEOUT_S", "30"))

# Adversarial pass
ADVERSARIAL_MAX_PASSES = int(os.getenv("ADVERSARIAL_MAX_PASSES", "3"))
ADVERSARIAL_MAX_RESULTS = int(os.getenv("ADVERSARIAL_MAX_RESULTS", "16"))
ADVERSARIAL_FALLBACK_RESULTS = int(os.getenv("ADVERSARIAL_FALLBACK_RESULTS", "6"))

# Evidence completeness. Below 22% activation a broad answer is drawing on
# less than a quarter of the corpus.
MIN_CROSS_SOURCE_DOCS = int(os.getenv("MIN_CROSS_SOURCE_DOCS", "2"))
LARGE_CORPUS_DOCS = int(os.getenv("LARGE_CORPUS_DOCS", "7"))
LARGE_CORPUS_REQUIRED_DOCS = int(os.getenv("LARGE_CORPUS_REQUIRED_DOCS", "3"))
MIN_ACTIVATION_COVERAGE_PCT = int(os.getenv("MIN_ACTIVATION_COVERAGE_PCT", "22"))
ACTIVATION_CHECK_MIN_DOCS = int(os.getenv("ACTIVATION_CHECK_MIN_DOCS", "5"))
MODEL_GAP_THRESHOLD = int(os.getenv("MODEL_GAP_THRESHOLD", "6"))
MAX_REQUESTED_DOCUMENTS = int(os.getenv("MAX_REQUESTED_DOCUMENTS", "8"))
MAX_MODEL_REFINEMENT_PASSES = int(os.getenv("MAX_MODEL_REFINEMENT_PASSES", "3"))
MAX_GAP_REFINEMENT_QUERIES = int(os.getenv("MAX_GAP_REFINEMENT_QUERIES", "4"))
MAX_MENTAL_MODEL_SOURCES = int(os.getenv("MAX_MENTAL_MODEL_SOURCES", "36"))
MAX_EVIDENCE_DIGEST_CHARS = int(os.getenv("MAX_EVIDENCE_DIGEST_CHARS", "14000"))

# Citation/structure gate
CLAIM_CITATION_TARGET = float(os.getenv("CLAIM_CITATION_TARGET", "0.55"))
CITATION_PRECISION_TARGET = float(os.getenv("CITATION_PRECISION_TARGET", "0.5"))
NARROW_CITATION_COVERAGE = float(os.getenv("NARROW_CITATION_COVERAGE", "0.5"))
NARROW_CITATION_PRECISION = float(os.getenv("NARROW_CITATION_PRECISION", "0.45"))
MIN_DECISION_REASONING_SIGNALS = int(os.getenv("MIN_DECISION_REASONING_SIGNALS", "4"))
MIN_ANALYSIS_REASONING_SIGNALS = int(os.getenv("MIN_ANALYSIS_REASONING_SIGNALS", "2"))
MIN_CITATIONS_FOR_RICH_CORPUS = int(os.getenv("MIN_CITATIONS_FOR_RICH_CORPUS", "4"))
MAX_REPAIR_ATTEMPTS = int(os.getenv("MAX_REPAIR_ATTEMPTS", "3"))
REPAIR_CONTEXT_CHARS = int(os.getenv("REPAIR_CONTEXT_CHARS", "12000"))


@dataclass(frozen=True)
class EngineSettings:
    """Tunable thresholds for one engine instance.

    Defaults come from the environment-driven constants above; override per
    instance with ``dataclasses.replace``.
    """

    target_k_small: int = TARGET_K_SMALL
    target_k_medium: int = TARGET_K_MEDIUM
    target_k_large: int = TARGET_K_LARGE
    small_corpus_chunks: int = SMALL_CORPUS_CHUNKS
    medium_corpus_chunks: int = MEDIUM_CORPUS_CHUNKS
    max_link_expansion: int = MAX_LINK_EXPANSION
    full_corpus_sweep: bool = FULL_CORPUS_SWEEP

    max_retrieval_passes: int = MAX_RETRIEVAL_PASSES
    stable_chunk_delta: int = STABLE_CHUNK_DELTA
    stable_passes_required: int = STABLE_PASSES_REQUIRED
    probe_workers: int = PROBE_WORKERS
    probe_timeout_s: float = PROBE_TIMEOUT_S

    adversarial_max_passes: int = ADVERSARIAL_MAX_PASSES
    adversarial_max_results: int = ADVERSARIAL_MAX_RESULTS
    adversarial_fallback_results: int = ADVERSARIAL_FALLBACK_RESULTS

    min_cross_source_docs: int = MIN_CROSS_SOURCE_DOCS
    large_corpus_docs: int = LARGE_CORPUS_DOCS
    large_corpus_required_docs: int = LARGE_CORPUS_REQUIRED_DOCS
    min_activation_coverage_pct: int = MIN_ACTIVATION_COVERAGE_PCT
    activation_check_min_docs: int = ACTIVATION_CHECK_MIN_DOCS
    model_gap_threshold: int = MODEL_GAP_THRESHOLD
    max_requested_documents: int = MAX_REQUESTED_DOCUMENTS
    max_model_refinement_passes: int = MAX_MODEL_REFINEMENT_PASSES
    max_gap_refinement_queries: int = MAX_GAP_REFINEMENT_QUERIES

    claim_citation_target: float = CLAIM_CITATION_TARGET
    citation_precision_target: float = CITATION_PRECISION_TARGET
    narrow_citation_coverage: float = NARROW_CITATION_COVERAGE
    narrow_citation_precision: float = NARROW_CITATION_PRECISION
    min_decision_reasoning_signals: int = MIN_DECISION_REASONING_SIGNALS
    min_analysis_reasoning_signals: int = MIN_ANALYSIS_REASONING_SIGNALS
    min_citations_for_rich_corpus: int = MIN_CITATIONS_FOR_RICH_CORPUS
    max_repair_attempts: int = MAX_REPAIR_ATTEMPTS


DEFAULT_SETTINGS = EngineSettings()
