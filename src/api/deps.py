"""
Build the embedding pipeline and hybrid retriever for the API (used in lifespan).
"""

from __future__ import annotations

import logging
import os

from src.embeddings import EmbeddingConfig, EmbeddingPipeline
from src.rag import HybridRetriever, RAGConfig, load_documents

logger = logging.getLogger(__name__)


def build_retriever() -> HybridRetriever:
    """
    Build a HybridRetriever from environment settings.

    When ``RAG_CORPUS_PATH`` points at a JSONL corpus it is indexed right away;
    otherwise the retriever starts empty and waits for POST /api/index.
    """
    pipeline = EmbeddingPipeline.from_config(EmbeddingConfig.from_env())
    retriever = HybridRetriever(pipeline, RAGConfig.from_env())

    corpus_path = os.getenv("RAG_CORPUS_PATH")
    if corpus_path:
        retriever.index(load_documents(corpus_path))
    else:
        logger.info("RAG_CORPUS_PATH not set, starting with an empty index")
    return retriever
