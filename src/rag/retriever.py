"""
Search hit type shared by the dense and sparse indexes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass
class SearchHit:
    """A single ranked hit from the vector store or the BM25 index."""

    doc_id: str
    score: float
    index: int = -1
    text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None

    @property
    def position(self) -> int:
        """Reading-order position of a chunk inside its parent document."""
        value = self.metadata.get("chunk_index", self.metadata.get("position", 0))
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0


class Retriever(Protocol):
    """Protocol for text-in, hits-out search implementations."""

    def search(self, query: str, top_k: int) -> list[SearchHit]:
        """
        Search for documents matching the query.

        Args:
            query: User query string
            top_k: Number of results to return

        Returns:
            List of SearchHit objects sorted by score (descending)
        """
        ...
