"""
Reciprocal Rank Fusion (RRF) for combining results from multiple retrievers.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .retriever import SearchHit

DEFAULT_RRF_K = 60


def rrf_score(rank: int, k_rrf: int = DEFAULT_RRF_K, weight: float = 1.0) -> float:
    """Weighted RRF contribution of a hit at 0-based ``rank``."""
    return weight / (k_rrf + rank + 1)


def rrf_merge(
    result_lists: Sequence[Sequence[Tuple[str, float]]],
    k: int = 10,
    k_rrf: int = DEFAULT_RRF_K,
    weights: Optional[Sequence[float]] = None,
) -> List[Tuple[str, float]]:
    """
    Merge multiple ranked lists using Reciprocal Rank Fusion.

    Args:
        result_lists: List of ranked lists from different retrievers.
                     Each inner list is [(doc_id, score), ...] sorted by score desc.
        k: Number of final results to return.
        k_rrf: Constant in 1 / (k_rrf + rank + 1), typically 60.
        weights: Optional per-list weight (defaults to 1.0 for every list).

    Returns:
        Merged list of (doc_id, score) tuples sorted by RRF score.
    """
    if weights is None:
        weights = [1.0] * len(result_lists)
    if len(weights) != len(result_lists):
        raise ValueError("weights must match the number of result lists")

    scores: Dict[str, float] = defaultdict(float)
    for weight, results in zip(weights, result_lists):
        for rank, (doc_id, _score) in enumerate(results):
            scores[doc_id] += rrf_score(rank, k_rrf, weight)

    merged = sorted(scores.items(), key=lambda x: x[1], reverse=True)
    return merged[:k]


@dataclass
class FusedResult(SearchHit):
    """A hit scored by RRF, remembering where it ranked in each source list."""

    vector_rank: Optional[int] = None
    vector_score: Optional[float] = None
    bm25_rank: Optional[int] = None
    bm25_score: Optional[float] = None
    fusion_method: str = "RRF"


def _hit_id(hit: SearchHit) -> Optional[str]:
    return hit.doc_id or hit.metadata.get("doc_id") or hit.metadata.get("id")


def fuse(
    vector_results: Sequence[SearchHit],
    bm25_results: Sequence[SearchHit],
    *,
    k: int = DEFAULT_RRF_K,
    vector_weight: float = 0.6,
    top_k: int = 10,
) -> List[Union[SearchHit, FusedResult]]:
    """
    Combine vector and BM25 rankings with weighted reciprocal rank fusion.

    A hit at 0-based rank r in the vector list contributes
    ``vector_weight / (k + r + 1)``; in the BM25 list it contributes
    ``(1 - vector_weight) / (k + r + 1)``. With ``vector_weight >= 1`` the
    vector list is returned as-is, and with ``vector_weight <= 0`` the BM25
    list is returned as-is when it is non-empty.
    """
    if vector_weight >= 1.0:
        return list(vector_results)
    if vector_weight <= 0.0 and bm25_results:
        return list(bm25_results)

    entries: Dict[str, FusedResult] = {}

    for rank, hit in enumerate(vector_results):
        doc_id = _hit_id(hit)
        if not doc_id:
            continue
        if doc_id in entries:
            continue
        entries[doc_id] = FusedResult(
            doc_id=doc_id,
            score=0.0,
            index=hit.index,
            text=hit.text or str(hit.metadata.get("text") or ""),
            metadata=hit.metadata,
            parent_id=hit.parent_id or hit.metadata.get("parent_id"),
            vector_rank=rank,
            vector_score=hit.score,
        )

    for rank, hit in enumerate(bm25_results):
        doc_id = _hit_id(hit)
        if not doc_id:
            continue
        entry = entries.get(doc_id)
        if entry is None:
            entries[doc_id] = FusedResult(
                doc_id=doc_id,
                score=0.0,
                index=hit.index,
                text=hit.text or str(hit.metadata.get("text") or ""),
                metadata=hit.metadata,
                parent_id=hit.parent_id or hit.metadata.get("parent_id"),
                bm25_rank=rank,
                bm25_score=hit.score,
            )
        elif entry.bm25_rank is None:
            entry.bm25_rank = rank
            entry.bm25_score = hit.score

    bm25_weight = 1.0 - vector_weight
    for entry in entries.values():
        score = 0.0
        if entry.vector_rank is not None:
            score += rrf_score(entry.vector_rank, k, vector_weight)
        if entry.bm25_rank is not None:
            score += rrf_score(entry.bm25_rank, k, bm25_weight)
        entry.score = score

    fused = sorted(entries.values(), key=lambda e: e.score, reverse=True)
    return fused[:top_k] if top_k > 0 else fused
