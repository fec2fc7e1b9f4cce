"""
Hybrid retriever combining dense chunk search and BM25 with RRF fusion.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from src.embeddings import EmbeddingPipeline

from .bm25 import BM25Index
from .config import RAGConfig
from .context_builder import ContextResult, build_chunked_context, build_context
from .errors import EmptyCorpusError, IndexNotBuiltError
from .grouping import ParentGroup, group_by_parent
from .index import DocumentRecord, chunk_documents
from .retriever import SearchHit
from .rrf_merger import fuse
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexSnapshot:
    """Chunk store, parent store and BM25 index built from one corpus."""

    chunk_store: VectorStore
    parent_store: VectorStore
    bm25: BM25Index
    num_documents: int
    num_chunks: int


@dataclass
class RetrievalOutcome:
    groups: List[ParentGroup]
    context: ContextResult
    metrics: Dict[str, Any] = field(default_factory=dict)
    chunk_based: bool = True


def _as_document(doc: Union[DocumentRecord, Mapping[str, Any]]) -> DocumentRecord:
    if isinstance(doc, DocumentRecord):
        return doc
    return DocumentRecord.from_dict(doc)


def _fusion_method(vector_weight: float) -> str:
    if vector_weight >= 1.0:
        return "vector-only"
    if vector_weight <= 0.0:
        return "bm25-only"
    return "RRF"


class HybridRetriever:
    """
    Indexes a corpus as chunks and answers queries with grouped parent
    documents plus a token-bounded context.

    Searches always run against one complete snapshot; ``index`` builds a new
    snapshot off to the side and swaps it in only once every part is built.
    """

    def __init__(self, pipeline: EmbeddingPipeline, config: Optional[RAGConfig] = None):
        self.pipeline = pipeline
        self.config = config or RAGConfig()
        self._snapshot: Optional[IndexSnapshot] = None
        self._write_lock = threading.Lock()

    @property
    def is_indexed(self) -> bool:
        return self._snapshot is not None

    def _new_store(self) -> VectorStore:
        return VectorStore(
            self.pipeline.dimension,
            strict_legacy_dimension=self.config.strict_legacy_dimension,
        )

    def index(self, documents: Iterable[Union[DocumentRecord, Mapping[str, Any]]]) -> Dict[str, Any]:
        """Chunk, embed and index ``documents``, replacing the current corpus."""
        cfg = self.config
        docs = [_as_document(d) for d in documents]
        if not docs:
            raise EmptyCorpusError("Cannot index an empty corpus")

        start = time.perf_counter()
        chunks = chunk_documents(docs, cfg.chunk_size, cfg.chunk_overlap, cfg.min_chunk_size)
        if not chunks:
            raise EmptyCorpusError("Corpus produced no chunks")

        chunk_vectors = self.pipeline.embed([c.text for c in chunks], mode="passage")
        parent_vectors = self.pipeline.embed([d.text for d in docs], mode="passage")

        chunk_ids = [c.id for c in chunks]
        chunk_meta = [c.as_metadata() for c in chunks]

        chunk_store = self._new_store()
        chunk_store.build(chunk_vectors, chunk_ids, chunk_meta)
        parent_store = self._new_store()
        parent_store.build(parent_vectors, [d.id for d in docs], [d.as_metadata() for d in docs])
        bm25 = BM25Index.from_documents(chunk_meta, chunk_ids)

        snapshot = IndexSnapshot(
            chunk_store=chunk_store,
            parent_store=parent_store,
            bm25=bm25,
            num_documents=len(docs),
            num_chunks=len(chunks),
        )
        with self._write_lock:
            self._snapshot = snapshot

        elapsed = time.perf_counter() - start
        logger.info("Indexed %s documents as %s chunks in %.2fs", len(docs), len(chunks), elapsed)
        return {"documents": len(docs), "chunks": len(chunks), "elapsed": elapsed}

    def retrieve(
        self,
        query: str,
        *,
        num_results: Optional[int] = None,
        vector_weight: Optional[float] = None,
        similarity_threshold: Optional[float] = None,
        retrieval_k: Optional[int] = None,
        allowed_doc_ids: Optional[Iterable[str]] = None,
    ) -> RetrievalOutcome:
        """
        Run hybrid retrieval for ``query``.

        Args:
            query: User query.
            num_results: Parent documents to return.
            vector_weight: Share of the fused score given to vector ranks.
            similarity_threshold: Minimum cosine score for vector hits.
            retrieval_k: Candidates pulled from each retriever.
            allowed_doc_ids: Restrict results to these parent documents.

        Returns:
            RetrievalOutcome with grouped documents, the assembled context and
            retrieval metrics.
        """
        snap = self._snapshot
        if snap is None:
            raise IndexNotBuiltError("No corpus indexed. Call index() first.")

        cfg = self.config
        num_results = cfg.num_results if num_results is None else num_results
        vector_weight = cfg.vector_weight if vector_weight is None else vector_weight
        threshold = cfg.similarity_threshold if similarity_threshold is None else similarity_threshold
        retrieval_k = cfg.retrieval_k if retrieval_k is None else retrieval_k
        scope = set(allowed_doc_ids) if allowed_doc_ids is not None else None
        budget = cfg.context_budget()

        metrics: Dict[str, Any] = {
            "vector_count": 0,
            "bm25_count": 0,
            "fused_count": 0,
            "parent_count": 0,
            "fusion_method": _fusion_method(vector_weight),
            "scope_size": len(scope) if scope is not None else None,
            "requested_k": num_results,
        }
        if not query or not query.strip():
            return RetrievalOutcome([], ContextResult("", False, 0, budget), metrics)

        def in_scope(meta: Mapping[str, Any]) -> bool:
            return scope is None or meta.get("parent_id") in scope

        query_vector = None
        vector_hits: List[SearchHit] = []
        if vector_weight > 0:
            query_vector = self.pipeline.embed_single(query, mode="query")
            vector_hits = snap.chunk_store.search(
                query_vector,
                retrieval_k,
                filter=in_scope if scope is not None else None,
                min_score=threshold,
            )

        bm25_hits: List[SearchHit] = []
        if vector_weight < 1:
            if scope is None:
                bm25_hits = snap.bm25.search(query, top_k=retrieval_k)
            else:
                scoped = [h for h in snap.bm25.search(query, top_k=0) if in_scope(h.metadata)]
                bm25_hits = scoped[:retrieval_k] if retrieval_k > 0 else scoped

        fused = fuse(
            vector_hits,
            bm25_hits,
            k=cfg.rrf_k,
            vector_weight=vector_weight,
            top_k=retrieval_k,
        )
        limit = num_results * cfg.max_chunks_per_parent * 2
        if limit > 0:
            fused = fused[:limit]

        groups = group_by_parent(
            fused,
            num_results,
            cfg.max_chunks_per_parent,
            parent_lookup=snap.parent_store.get_metadata,
        )
        if 0 < vector_weight < 1 and not bm25_hits:
            metrics["fusion_method"] = "vector-only"
        metrics.update(
            vector_count=len(vector_hits),
            bm25_count=len(bm25_hits),
            fused_count=len(fused),
        )

        context_kwargs = {
            "include_metadata": cfg.include_metadata,
            "metadata_fields": cfg.metadata_fields,
        }
        if groups or scope is None:
            context = build_chunked_context(
                groups,
                budget,
                dynamic_threshold=cfg.dynamic_chunk_threshold,
                dynamic_target=cfg.dynamic_chunk_target,
                dynamic_overlap=cfg.dynamic_chunk_overlap,
                **context_kwargs,
            )
            metrics["parent_count"] = len(groups)
            outcome = RetrievalOutcome(groups, context, metrics, chunk_based=True)
        else:
            logger.info("No chunk hits inside scope of %s documents, searching parents", len(scope))
            if query_vector is None:
                query_vector = self.pipeline.embed_single(query, mode="query")
            parent_hits = snap.parent_store.search(
                query_vector,
                num_results,
                filter=lambda meta: meta.get("doc_id") in scope,
                min_score=threshold,
            )
            groups = [
                ParentGroup(
                    parent_id=hit.doc_id,
                    max_score=hit.score,
                    avg_score=hit.score,
                    text=hit.text,
                    metadata=hit.metadata,
                )
                for hit in parent_hits
            ]
            context = build_context(parent_hits, budget, **context_kwargs)
            metrics["parent_count"] = len(groups)
            outcome = RetrievalOutcome(groups, context, metrics, chunk_based=False)

        logger.info(
            "Retrieved %s documents (%s vector, %s bm25, %s fused, method=%s)",
            metrics["parent_count"],
            metrics["vector_count"],
            metrics["bm25_count"],
            metrics["fused_count"],
            metrics["fusion_method"],
        )
        return outcome

    def search(self, query: str, top_k: int = 5) -> List[SearchHit]:
        """Parent-level hits for ``query``, best first."""
        outcome = self.retrieve(query, num_results=top_k)
        return [
            SearchHit(doc_id=g.parent_id, score=g.max_score, text=g.text, metadata=g.metadata)
            for g in outcome.groups
        ]

    def stats(self) -> Dict[str, Any]:
        snap = self._snapshot
        stats: Dict[str, Any] = {
            "indexed": snap is not None,
            "documents": snap.num_documents if snap is not None else 0,
            "chunks": snap.num_chunks if snap is not None else 0,
            "cache": self.pipeline.cache_stats(),
        }
        if snap is not None:
            stats["vector_store"] = snap.chunk_store.get_stats()
            stats["parent_store"] = snap.parent_store.get_stats()
            stats["bm25"] = snap.bm25.get_stats()
        return stats

    def clear(self) -> None:
        with self._write_lock:
            self._snapshot = None
