"""
Request and response models for the retrieval API.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DocumentIn(BaseModel):
    """A document to index."""

    id: str = Field(..., min_length=1)
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IndexRequest(BaseModel):
    """Request body for POST /api/index."""

    documents: List[DocumentIn] = Field(..., min_length=1)


class IndexResponse(BaseModel):
    """Response for POST /api/index."""

    documents: int
    chunks: int
    elapsed: float


class SearchRequest(BaseModel):
    """Request body for POST /api/search."""

    query: str = Field(..., min_length=1)
    top_k: int = Field(5, ge=1, le=50)
    vector_weight: Optional[float] = Field(None, ge=0.0, le=1.0)
    similarity_threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)
    allowed_doc_ids: Optional[List[str]] = Field(None, description="Restrict results to these documents")


class PassageOut(BaseModel):
    """A chunk that matched inside a result document."""

    chunk_id: str
    chunk_index: int
    text: str
    score: float


class SearchResult(BaseModel):
    """A parent document with its matching passages."""

    doc_id: str
    score: float
    avg_score: float
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    passages: List[PassageOut] = Field(default_factory=list)


class ContextOut(BaseModel):
    text: str
    limited: bool
    tokens_used: int
    max_tokens: int


class SearchResponse(BaseModel):
    """Response for POST /api/search."""

    query: str
    results: List[SearchResult] = Field(default_factory=list)
    context: ContextOut
    metrics: Dict[str, Any] = Field(default_factory=dict)
    chunk_based: bool = True


class EmbedRequest(BaseModel):
    """Request body for POST /api/embed."""

    texts: List[str] = Field(..., min_length=1)
    mode: str = "passage"


class EmbedResponse(BaseModel):
    """Response for POST /api/embed."""

    mode: str
    dimension: int
    vectors: List[List[float]]


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "ok"
    indexed: bool = False
    documents: int = 0
    chunks: int = 0


class StatsResponse(BaseModel):
    """Response for GET /api/stats."""

    indexed: bool = False
    documents: int = 0
    chunks: int = 0
    vector_store: Optional[Dict[str, Any]] = None
    parent_store: Optional[Dict[str, Any]] = None
    bm25: Optional[Dict[str, Any]] = None
    cache: Dict[str, Any] = Field(default_factory=dict)
