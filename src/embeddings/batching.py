"""
Adaptive batch construction for embedding requests.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

from .text import estimate_tokens


@dataclass(frozen=True)
class BatchItem:
    """A unique text waiting to be embedded during one ``embed`` call."""

    index: int
    normalized: str
    prepared: str
    cache_key: str
    tokens: Optional[int] = None


def create_batches(
    items: Sequence[BatchItem],
    *,
    batch_size: int = 32,
    max_length: int = 256,
    max_tokens_per_batch: Optional[int] = None,
) -> List[List[BatchItem]]:
    """
    Group items into executor batches.

    With ``max_tokens_per_batch`` set, items are packed greedily in their
    original order and a new batch starts whenever the next item would push
    the running token estimate over the budget. An item that is larger than
    the budget on its own still gets a batch to itself.

    Otherwise items are sorted by normalized length (shortest first) and
    sliced into groups of ``batch_size``.
    """
    if not items:
        return []

    if max_tokens_per_batch and max_tokens_per_batch > 0:
        return _token_budget_batches(items, max_length, max_tokens_per_batch)

    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    ordered = sorted(items, key=lambda item: len(item.normalized))
    return [list(ordered[i : i + batch_size]) for i in range(0, len(ordered), batch_size)]


def _token_budget_batches(
    items: Sequence[BatchItem],
    max_length: int,
    budget: int,
) -> List[List[BatchItem]]:
    batches: List[List[BatchItem]] = []
    current: List[BatchItem] = []
    current_tokens = 0

    for item in items:
        est = estimate_tokens(item.normalized, max_length)
        if current and current_tokens + est > budget:
            batches.append(current)
            current = []
            current_tokens = 0
        current.append(replace(item, tokens=est))
        current_tokens += est

    if current:
        batches.append(current)
    return batches
