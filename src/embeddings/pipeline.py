"""
Embedding pipeline: normalize, dedupe, cache, batch and execute.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .batching import BatchItem, create_batches
from .cache import EmbeddingCache
from .config import EmbeddingConfig
from .coordinator import BatchCoordinator
from .errors import EmbeddingCancelled, ExecutorError
from .executors import (
    EmbeddingExecutor,
    EmbedParams,
    InProcessExecutor,
    SentenceTransformerBackend,
    WorkerExecutor,
)
from .text import cache_key, normalize_mode, normalize_text, prepare_input

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingProgress:
    """Progress report sent before and after every batch."""

    status: str
    batch: int
    total_batches: int
    processed: int
    total: int
    elapsed: float
    mode: str


ProgressCallback = Callable[[EmbeddingProgress], None]


class EmbeddingPipeline:
    """
    Turns texts into vectors with as few executor calls as possible.

    Owns its cache and executor; several pipelines can live side by side.
    Batches are processed strictly one after another.
    """

    def __init__(
        self,
        executor: EmbeddingExecutor,
        config: Optional[EmbeddingConfig] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.executor = executor
        self.cache = EmbeddingCache(self.config.cache_max_size)
        self.coordinator = BatchCoordinator(
            executor,
            timeout=self.config.timeout_seconds,
            max_attempts=self.config.max_attempts,
        )

    @classmethod
    def from_config(cls, config: Optional[EmbeddingConfig] = None) -> "EmbeddingPipeline":
        """Build a pipeline backed by a sentence-transformers model."""
        config = config or EmbeddingConfig.from_env()

        def factory() -> SentenceTransformerBackend:
            return SentenceTransformerBackend(config.model_name)

        if config.use_worker:
            executor: EmbeddingExecutor = WorkerExecutor(factory)
        else:
            executor = InProcessExecutor(backend_factory=factory)
        return cls(executor, config)

    @property
    def dimension(self) -> int:
        return self.config.dimension

    def embed(
        self,
        texts: Sequence[str],
        *,
        mode: str = "passage",
        use_cache: bool = True,
        max_length: Optional[int] = None,
        max_tokens_per_batch: Optional[int] = None,
        pooling: Optional[str] = None,
        normalize: Optional[bool] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[np.ndarray]:
        """
        Embed ``texts`` and return one vector per input, in input order.

        Blank texts map to zero vectors. Texts sharing a cache key are embedded
        once per call, and cached keys skip the executor entirely. If a batch
        fails the call raises, but vectors from batches that already finished
        stay cached.

        Args:
            texts: Raw input texts.
            mode: ``passage`` or ``query`` (aliases accepted).
            use_cache: Read and write the cache.
            max_length: Truncation length forwarded to the backend.
            max_tokens_per_batch: Token budget per batch; falls back to the
                configured value, fixed-size batching when unset.
            on_progress: Called before and after each batch.
            cancel_event: When set, no further batches are started.

        Returns:
            List of float32 vectors. Vectors are read-only when they come from
            (or were written to) the cache.
        """
        cfg = self.config
        embedding_mode = normalize_mode(mode)
        max_length = max_length or cfg.max_length
        if max_tokens_per_batch is None:
            max_tokens_per_batch = cfg.tokens_per_batch
        params = EmbedParams(
            max_length=max_length,
            pooling=pooling or cfg.pooling,
            normalize=cfg.normalize if normalize is None else normalize,
        )

        results: List[Optional[np.ndarray]] = [None] * len(texts)
        positions: Dict[str, List[int]] = {}
        items: List[BatchItem] = []

        for i, raw in enumerate(texts):
            normalized = normalize_text(raw)
            if not normalized:
                results[i] = np.zeros(self.dimension, dtype=np.float32)
                continue

            key = cache_key(normalized, embedding_mode)
            if use_cache:
                cached = self.cache.get(key)
                if cached is not None:
                    results[i] = cached
                    continue

            if key in positions:
                positions[key].append(i)
                continue

            positions[key] = [i]
            items.append(
                BatchItem(
                    index=i,
                    normalized=normalized,
                    prepared=prepare_input(normalized, embedding_mode),
                    cache_key=key,
                )
            )

        if not items:
            return results  # type: ignore[return-value]

        batches = create_batches(
            items,
            batch_size=cfg.batch_size,
            max_length=max_length,
            max_tokens_per_batch=max_tokens_per_batch,
        )
        logger.debug(
            "Embedding %s unique texts (%s reused) in %s batches, mode=%s",
            len(items),
            len(texts) - len(items),
            len(batches),
            embedding_mode,
        )

        start = time.perf_counter()
        processed = 0
        total = len(items)

        def report(status: str, batch_number: int) -> None:
            if on_progress is None:
                return
            on_progress(
                EmbeddingProgress(
                    status=status,
                    batch=batch_number,
                    total_batches=len(batches),
                    processed=processed,
                    total=total,
                    elapsed=time.perf_counter() - start,
                    mode=embedding_mode,
                )
            )

        for b, group in enumerate(batches):
            if cancel_event is not None and cancel_event.is_set():
                raise EmbeddingCancelled(
                    f"cancelled after {b} of {len(batches)} batches ({processed}/{total} texts)"
                )

            report("starting_batch", b + 1)
            vectors = self.coordinator.run_batch(
                [item.prepared for item in group], params, batch_number=b
            )
            if vectors.shape[1] != self.dimension:
                raise ExecutorError(
                    f"executor returned dimension {vectors.shape[1]}, expected {self.dimension}"
                )

            for item, row in zip(group, vectors):
                if use_cache:
                    vector = self.cache.set(item.cache_key, row)
                else:
                    vector = np.array(row, dtype=np.float32, copy=True)
                for idx in positions[item.cache_key]:
                    results[idx] = vector

            processed += len(group)
            report("batch_complete", b + 1)

        logger.debug(
            "Embedded %s texts in %.2fs (cache size %s)",
            total,
            time.perf_counter() - start,
            len(self.cache),
        )
        return results  # type: ignore[return-value]

    def embed_single(self, text: str, *, mode: str = "query", **kwargs) -> np.ndarray:
        """Embed one text (query mode by default)."""
        return self.embed([text], mode=mode, **kwargs)[0]

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats(self.dimension)

    def close(self) -> None:
        self.executor.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
