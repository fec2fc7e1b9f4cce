"""
Helpers for grouping retrieved chunks under their parent documents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .retriever import SearchHit

ParentLookup = Callable[[str], Optional[Mapping[str, Any]]]


@dataclass
class ParentGroup:
    """Chunks from one parent document, in reading order."""

    parent_id: str
    chunks: List[SearchHit] = field(default_factory=list)
    max_score: float = 0.0
    avg_score: float = 0.0
    text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def score(self) -> float:
        return self.max_score

    @property
    def doc_id(self) -> str:
        return self.parent_id


def _parent_of(chunk: SearchHit) -> str:
    parent = chunk.metadata.get("parent_id") or chunk.parent_id
    # Chunks without a parent stand for themselves.
    return str(parent) if parent else chunk.doc_id


def _chunk_text(chunk: SearchHit) -> str:
    return chunk.text or str(chunk.metadata.get("text") or "")


def group_by_parent(
    chunk_results: Sequence[SearchHit],
    top_k: int,
    max_chunks_per_parent: int = 5,
    *,
    parent_lookup: Optional[ParentLookup] = None,
) -> List[ParentGroup]:
    """
    Group chunk hits by parent document.

    Args:
        chunk_results: Ranked chunk hits.
        top_k: Number of parent groups to return.
        max_chunks_per_parent: Best-scoring chunks kept per parent.
        parent_lookup: Returns the parent's metadata (including ``text``) or None.

    Returns:
        Groups sorted by their best chunk score. Within a group the retained
        chunks are in reading order, and the text is the full parent text when
        the lookup resolves it, otherwise the joined chunk texts.
    """
    groups: Dict[str, ParentGroup] = {}
    for chunk in chunk_results:
        parent_id = _parent_of(chunk)
        group = groups.get(parent_id)
        if group is None:
            group = groups[parent_id] = ParentGroup(parent_id=parent_id)
        group.chunks.append(chunk)

    for group in groups.values():
        group.chunks.sort(key=lambda c: c.score, reverse=True)
        group.chunks = group.chunks[: max(1, max_chunks_per_parent)]
        group.max_score = group.chunks[0].score
        group.avg_score = sum(c.score for c in group.chunks) / len(group.chunks)
        group.chunks.sort(key=lambda c: c.position)

        first = group.chunks[0]
        group.metadata = {
            key: value
            for key, value in first.metadata.items()
            if not key.startswith("chunk_") and key != "parent_id"
        }

        parent = parent_lookup(group.parent_id) if parent_lookup is not None else None
        if parent:
            group.text = str(parent.get("text") or group.metadata.get("text") or "")
            group.metadata = {**parent, **group.metadata}
        if not group.text:
            group.text = " ".join(_chunk_text(c) for c in group.chunks)

    ranked = sorted(groups.values(), key=lambda g: g.max_score, reverse=True)
    return ranked[:top_k] if top_k > 0 else ranked
