"""
Embedding module.

Turns texts into vectors with as few model invocations as possible:
- Text normalization and (mode, text) cache keys
- Bounded embedding cache with insertion-order eviction
- Fixed-size or token-budgeted batching
- In-process and worker-thread executors with timeouts and retries
"""

from .batching import BatchItem, create_batches
from .cache import EmbeddingCache
from .config import EmbeddingConfig
from .coordinator import BatchCoordinator
from .errors import (
    EmbeddingCancelled,
    EmbeddingError,
    ExecutorError,
    ExecutorTimeout,
    ExecutorUnavailable,
)
from .executors import (
    EmbeddingBackend,
    EmbeddingExecutor,
    EmbedParams,
    EmbedRequest,
    InProcessExecutor,
    SentenceTransformerBackend,
    WorkerExecutor,
)
from .pipeline import EmbeddingPipeline, EmbeddingProgress
from .text import cache_key, estimate_tokens, normalize_mode, normalize_text, prepare_input

__all__ = [
    "BatchItem",
    "create_batches",
    "EmbeddingCache",
    "EmbeddingConfig",
    "BatchCoordinator",
    "EmbeddingError",
    "EmbeddingCancelled",
    "ExecutorError",
    "ExecutorTimeout",
    "ExecutorUnavailable",
    "EmbeddingBackend",
    "EmbeddingExecutor",
    "EmbedParams",
    "EmbedRequest",
    "InProcessExecutor",
    "SentenceTransformerBackend",
    "WorkerExecutor",
    "EmbeddingPipeline",
    "EmbeddingProgress",
    "cache_key",
    "estimate_tokens",
    "normalize_mode",
    "normalize_text",
    "prepare_input",
]
