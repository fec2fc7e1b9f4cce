"""
Text normalization, E5 input preparation and cache keys for embeddings.
"""

from __future__ import annotations

import math
import re

_WS_RE = re.compile(r"\s+")

PASSAGE = "passage"
QUERY = "query"

_QUERY_ALIASES = {"query", "question", "user", "clustering"}
_PASSAGE_ALIASES = {"passage", "doc", "document", "retrieval", "chunk"}

SHORT_TEXT_CHARS = 100
DEFAULT_TOKEN_CAP = 256


def normalize_text(text: str | None) -> str:
    """Collapse whitespace runs to a single space and trim."""
    if not text:
        return ""
    return _WS_RE.sub(" ", str(text)).strip()


def normalize_mode(mode: str | None) -> str:
    """Map a mode alias onto ``passage`` or ``query``. Unknown values are passages."""
    if not mode:
        return PASSAGE
    value = str(mode).strip().lower()
    if value in _QUERY_ALIASES:
        return QUERY
    return PASSAGE


def prepare_input(text: str, mode: str) -> str:
    """Apply the E5-style ``query: `` / ``passage: `` prefix."""
    if not text:
        return ""
    return f"{normalize_mode(mode)}: {text}"


def cache_key(text: str, mode: str) -> str:
    """Stable cache key for (mode, normalized text), independent of the model prefix."""
    return f"{normalize_mode(mode)}::{text}"


def estimate_tokens(text: str, cap: int | None = None) -> int:
    """
    Approximate tokenizer output length for batching.

    Short texts use ~4 characters per token. Longer texts take the larger of
    the character estimate and ~1.3 tokens per word. Both are capped at ``cap``
    (the max-length setting).
    """
    if not text:
        return 0
    cap = cap or DEFAULT_TOKEN_CAP
    length = len(text)
    if length < SHORT_TEXT_CHARS:
        return min(math.ceil(length / 4), cap)
    words = len(text.split())
    estimated = max(math.ceil(length / 4), math.ceil(words * 1.3))
    return min(estimated, cap)
