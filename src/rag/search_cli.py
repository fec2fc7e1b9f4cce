"""
Index a JSONL corpus and run one hybrid query against it.

Usage (from repo root):

    python -m src.rag.search_cli data/corpus.jsonl "how does rrf fusion work"
    python -m src.rag.search_cli data/corpus.jsonl "tcp handshake" --top-k 3 --vector-weight 0.3
"""

from __future__ import annotations

import argparse
import logging
from typing import List

from src.embeddings import EmbeddingConfig, EmbeddingPipeline

from .config import RAGConfig
from .hybrid import HybridRetriever, RetrievalOutcome
from .index import load_documents


def _print_outcome(outcome: RetrievalOutcome, show_context: bool) -> None:
    if not outcome.groups:
        print("No results.")
    for i, group in enumerate(outcome.groups, 1):
        print(f"\n[{i}] {group.parent_id}  score={group.max_score:.4f}  chunks={len(group.chunks)}")
        preview = group.text.replace("\n", " ")
        print(f"    {preview[:200]}{'...' if len(preview) > 200 else ''}")

    m = outcome.metrics
    print(
        f"\nmethod={m['fusion_method']} vector={m['vector_count']} bm25={m['bm25_count']} "
        f"fused={m['fused_count']} parents={m['parent_count']}"
    )
    if show_context:
        ctx = outcome.context
        print(f"\n--- context ({ctx.tokens_used}/{ctx.max_tokens} tokens{', limited' if ctx.limited else ''}) ---")
        print(ctx.context)


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run a hybrid (vector + BM25) query over a JSONL corpus.")
    parser.add_argument("corpus", help="Path to a JSONL file of {id, text, metadata} documents.")
    parser.add_argument("query", help="Query string.")
    parser.add_argument("--top-k", type=int, default=None, help="Parent documents to return (default: 5)")
    parser.add_argument(
        "--vector-weight",
        type=float,
        default=None,
        help="Weight of vector ranks in fusion, 0..1 (default: 0.6)",
    )
    parser.add_argument("--threshold", type=float, default=None, help="Minimum cosine score for vector hits.")
    parser.add_argument("--doc", action="append", dest="doc_ids", help="Restrict to this document id (repeatable).")
    parser.add_argument("--no-context", action="store_true", help="Do not print the assembled context.")
    parser.add_argument("--in-process", action="store_true", help="Run the model in the calling thread.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    embedding_config = EmbeddingConfig.from_env()
    if args.in_process:
        embedding_config.use_worker = False

    with EmbeddingPipeline.from_config(embedding_config) as pipeline:
        retriever = HybridRetriever(pipeline, RAGConfig.from_env())
        retriever.index(load_documents(args.corpus))
        outcome = retriever.retrieve(
            args.query,
            num_results=args.top_k,
            vector_weight=args.vector_weight,
            similarity_threshold=args.threshold,
            allowed_doc_ids=args.doc_ids,
        )
    _print_outcome(outcome, show_context=not args.no_context)


if __name__ == "__main__":
    main()
