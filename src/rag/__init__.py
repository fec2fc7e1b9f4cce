"""
RAG (Retrieval-Augmented Generation) module.

Provides retrieval components for hybrid search over chunked documents:
- Exact cosine vector store with snapshot serialization
- BM25 sparse retrieval over posting lists
- Weighted RRF fusion
- Grouping of chunk hits under parent documents
- Token-budgeted context assembly
"""

from .bm25 import BM25Index
from .config import RAGConfig
from .context_builder import (
    ContextResult,
    assemble_context,
    build_chunked_context,
    build_context,
    dynamic_chunk,
    estimate_context_budget,
    estimate_tokens,
)
from .errors import (
    DimensionMismatch,
    EmptyCorpusError,
    IndexNotBuiltError,
    LengthMismatch,
    SnapshotFormatError,
    ValidationError,
)
from .grouping import ParentGroup, group_by_parent
from .hybrid import HybridRetriever, IndexSnapshot, RetrievalOutcome
from .index import ChunkRecord, DocumentRecord, chunk_document, chunk_documents, load_documents
from .retriever import Retriever, SearchHit
from .rrf_merger import FusedResult, fuse, rrf_merge, rrf_score
from .vector_store import StoredDocument, VectorStore, cosine_similarity

__all__ = [
    "BM25Index",
    "RAGConfig",
    "ContextResult",
    "assemble_context",
    "build_chunked_context",
    "build_context",
    "dynamic_chunk",
    "estimate_context_budget",
    "estimate_tokens",
    "DimensionMismatch",
    "EmptyCorpusError",
    "IndexNotBuiltError",
    "LengthMismatch",
    "SnapshotFormatError",
    "ValidationError",
    "ParentGroup",
    "group_by_parent",
    "HybridRetriever",
    "IndexSnapshot",
    "RetrievalOutcome",
    "ChunkRecord",
    "DocumentRecord",
    "chunk_document",
    "chunk_documents",
    "load_documents",
    "Retriever",
    "SearchHit",
    "FusedResult",
    "fuse",
    "rrf_merge",
    "rrf_score",
    "StoredDocument",
    "VectorStore",
    "cosine_similarity",
]
