"""CLI entrypoint for evidence-grounded question answering."""

from __future__ import annotations

import argparse
import logging
import os

from evidence_rag.config import LOG_LEVEL, MAX_DOCUMENTS, bootstrap_runtime_dirs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"Answer a question from up to {MAX_DOCUMENTS} documents with grounded citations."
    )
    parser.add_argument(
        "--question",
        required=True,
        help="Question to answer from the documents.",
    )
    parser.add_argument(
        "--docs",
        nargs="+",
        required=True,
        help=f"Document paths (pdf/txt/md/rst/json/csv), max {MAX_DOCUMENTS}.",
    )
    parser.add_argument(
        "--output",
        default="outputs/answer_result.json",
        help="Path for JSON result output.",
    )
    parser.add_argument(
        "--top-k",
        type=int,
        default=None,
        help="Final evidence set size (defaults scale with corpus size).",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run deterministic offline mode (no API keys or external model calls).",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    bootstrap_runtime_dirs()
    if args.offline:
        os.environ["OFFLINE_MODE"] = "1"
        os.environ["LLM_PROVIDER"] = "mock"
        os.environ["EMBED_PROVIDER"] = "hash"

    from evidence_rag.pipeline import run_rag

    outcome = run_rag(
        question=args.question,
        document_paths=args.docs,
        top_k=args.top_k,
        output_json_path=args.output,
    )
    print(outcome.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
