"""
API routes: health, stats, index, search, embed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.embeddings import EmbeddingError, normalize_mode
from src.rag import HybridRetriever, IndexNotBuiltError, ValidationError

from .models import (
    ContextOut,
    EmbedRequest,
    EmbedResponse,
    HealthResponse,
    IndexRequest,
    IndexResponse,
    PassageOut,
    SearchRequest,
    SearchResponse,
    SearchResult,
    StatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


def _get_retriever(request: Request) -> Optional[HybridRetriever]:
    return getattr(request.app.state, "retriever", None)


def _unavailable(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": f"Service unavailable: {detail}"})


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Health check."""
    retriever = _get_retriever(request)
    if retriever is None:
        return HealthResponse(status="starting")
    stats = retriever.stats()
    return HealthResponse(
        status="ok",
        indexed=stats["indexed"],
        documents=stats["documents"],
        chunks=stats["chunks"],
    )


@router.get("/stats", response_model=StatsResponse)
async def stats(request: Request) -> StatsResponse | JSONResponse:
    """Index and cache statistics."""
    retriever = _get_retriever(request)
    if retriever is None:
        return _unavailable("retriever not initialized.")
    return StatsResponse(**retriever.stats())


@router.post("/index", response_model=IndexResponse)
async def index_documents(request: Request, body: IndexRequest) -> IndexResponse | JSONResponse:
    """Replace the indexed corpus."""
    retriever = _get_retriever(request)
    if retriever is None:
        return _unavailable("retriever not initialized.")
    docs = [d.model_dump() for d in body.documents]
    try:
        result = await asyncio.to_thread(retriever.index, docs)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"detail": str(e)})
    except EmbeddingError as e:
        logger.error("Indexing failed: %s", e)
        return _unavailable(f"embedding failed ({e}).")
    return IndexResponse(**result)


@router.post("/search", response_model=SearchResponse)
async def search_endpoint(request: Request, body: SearchRequest) -> SearchResponse | JSONResponse:
    """Hybrid search returning grouped documents and an assembled context."""
    retriever = _get_retriever(request)
    if retriever is None or not retriever.is_indexed:
        return _unavailable("no documents indexed.")
    try:
        outcome = await asyncio.to_thread(
            retriever.retrieve,
            body.query,
            num_results=body.top_k,
            vector_weight=body.vector_weight,
            similarity_threshold=body.similarity_threshold,
            allowed_doc_ids=body.allowed_doc_ids,
        )
    except IndexNotBuiltError:
        return _unavailable("no documents indexed.")
    except EmbeddingError as e:
        logger.error("Search failed: %s", e)
        return _unavailable(f"embedding failed ({e}).")

    results = []
    for group in outcome.groups:
        results.append(
            SearchResult(
                doc_id=group.parent_id,
                score=round(group.max_score, 6),
                avg_score=round(group.avg_score, 6),
                text=group.text[:500] + "…" if len(group.text) > 500 else group.text,
                metadata={k: v for k, v in group.metadata.items() if k != "text"},
                passages=[
                    PassageOut(chunk_id=c.doc_id, chunk_index=c.position, text=c.text, score=round(c.score, 6))
                    for c in group.chunks
                ],
            )
        )
    ctx = outcome.context
    return SearchResponse(
        query=body.query,
        results=results,
        context=ContextOut(
            text=ctx.context,
            limited=ctx.limited,
            tokens_used=ctx.tokens_used,
            max_tokens=ctx.max_tokens,
        ),
        metrics=outcome.metrics,
        chunk_based=outcome.chunk_based,
    )


@router.post("/embed", response_model=EmbedResponse)
async def embed_endpoint(request: Request, body: EmbedRequest) -> EmbedResponse | JSONResponse:
    """Embed raw texts with the retriever's pipeline."""
    retriever = _get_retriever(request)
    if retriever is None:
        return _unavailable("retriever not initialized.")
    pipeline = retriever.pipeline
    mode = normalize_mode(body.mode)
    try:
        vectors = await asyncio.to_thread(pipeline.embed, body.texts, mode=mode)
    except EmbeddingError as e:
        logger.error("Embedding failed: %s", e)
        return _unavailable(f"embedding failed ({e}).")
    return EmbedResponse(mode=mode, dimension=pipeline.dimension, vectors=[v.tolist() for v in vectors])
