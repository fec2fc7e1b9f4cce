"""
Deterministic stand-ins for embedding models used across the test suite.
"""

from __future__ import annotations

import hashlib
import re
import threading
from typing import List, Sequence

import numpy as np

DIM = 64
_WORD_RE = re.compile(r"\w+")
_PREFIXES = ("query: ", "passage: ")


class HashingBackend:
    """Bag-of-words vectors via stable word hashing; records every call."""

    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.calls: List[List[str]] = []

    @property
    def texts_seen(self) -> int:
        return sum(len(c) for c in self.calls)

    def encode(self, texts: Sequence[str], *, max_length: int, pooling: str, normalize: bool) -> np.ndarray:
        self.calls.append(list(texts))
        out = np.zeros((len(texts), self.dim), dtype=np.float32)
        for i, text in enumerate(texts):
            for prefix in _PREFIXES:
                if text.startswith(prefix):
                    text = text[len(prefix) :]
                    break
            for word in _WORD_RE.findall(text.lower()):
                bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dim
                out[i, bucket] += 1.0
        if normalize:
            norms = np.linalg.norm(out, axis=1, keepdims=True)
            out = out / np.maximum(norms, 1e-12)
        return out


class BlockingBackend(HashingBackend):
    """Hangs on every call until ``release`` is set."""

    def __init__(self, release: threading.Event):
        super().__init__()
        self.release = release

    def encode(self, texts, **kwargs):
        self.release.wait(timeout=10)
        return super().encode(texts, **kwargs)
