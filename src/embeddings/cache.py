"""
Bounded in-memory cache for embedding vectors.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)

EVICT_FRACTION = 0.1


class EmbeddingCache:
    """
    Key -> vector store with insertion-order eviction.

    When full, the oldest 10% of entries (by first insertion, not by last
    access) are dropped before a new key is added. Reads never reorder
    entries. Stored vectors are read-only so callers can share them safely.
    """

    def __init__(self, max_size: int = 5000):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._entries: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def get(self, key: str) -> Optional[np.ndarray]:
        return self._entries.get(key)

    def set(self, key: str, vector: np.ndarray) -> np.ndarray:
        """Store ``vector`` under ``key`` and return the read-only copy kept in the cache."""
        stored = np.array(vector, dtype=np.float32, copy=True)
        stored.setflags(write=False)

        # Existing keys keep their original insertion position.
        if key in self._entries:
            self._entries[key] = stored
            return stored

        if len(self._entries) >= self.max_size:
            evict_count = max(1, int(self.max_size * EVICT_FRACTION))
            for _ in range(min(evict_count, len(self._entries))):
                self._entries.popitem(last=False)
            logger.debug("Embedding cache full; evicted %s oldest entries", evict_count)

        self._entries[key] = stored
        return stored

    def clear(self) -> None:
        self._entries.clear()

    def stats(self, dimension: int | None = None) -> Dict[str, int]:
        size = len(self._entries)
        if dimension is None:
            first = next(iter(self._entries.values()), None)
            dimension = int(first.shape[0]) if first is not None else 0
        return {
            "size": size,
            "max_size": self.max_size,
            "approx_bytes": size * dimension * 4,
        }
