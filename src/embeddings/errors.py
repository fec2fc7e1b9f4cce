"""
Errors raised while turning texts into vectors.
"""

from __future__ import annotations


class EmbeddingError(RuntimeError):
    """Base class for embedding pipeline failures."""


class ExecutorTimeout(EmbeddingError, TimeoutError):
    """The executor did not answer a batch within its deadline."""


class ExecutorUnavailable(EmbeddingError):
    """The executor is not running (never started, stopped or restarted mid-request)."""


class ExecutorError(EmbeddingError):
    """The executor reported an explicit failure for a batch."""


class EmbeddingCancelled(EmbeddingError):
    """Cancellation was observed between batches."""
