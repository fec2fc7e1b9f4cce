"""
Drives embedding batches through an executor with timeouts and bounded retries.
"""

from __future__ import annotations

import itertools
import logging
from concurrent.futures import CancelledError
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Sequence

import numpy as np

from .errors import ExecutorError, ExecutorTimeout, ExecutorUnavailable
from .executors import EmbeddingExecutor, EmbedParams, EmbedRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 45.0
DEFAULT_MAX_ATTEMPTS = 2


class BatchCoordinator:
    """
    Submits one batch at a time and waits for its result.

    Timeouts and an unavailable executor restart the executor and retry the
    same batch, up to ``max_attempts`` attempts in total. Any other executor
    failure is raised immediately.
    """

    def __init__(
        self,
        executor: EmbeddingExecutor,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.executor = executor
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._request_ids = itertools.count()
        self.requests_sent = 0

    def run_batch(
        self,
        texts: Sequence[str],
        params: EmbedParams,
        *,
        batch_number: int = 0,
    ) -> np.ndarray:
        """Embed one batch, returning an array with one row per text."""
        last_error: ExecutorTimeout | ExecutorUnavailable | None = None

        for attempt in range(1, self.max_attempts + 1):
            correlation_id = f"batch_{next(self._request_ids)}_{batch_number}_try{attempt}"
            request = EmbedRequest(correlation_id=correlation_id, texts=list(texts), params=params)
            try:
                return self._round_trip(request)
            except (ExecutorTimeout, ExecutorUnavailable) as e:
                last_error = e
                logger.warning(
                    "Batch %s failed (attempt %s/%s): %s",
                    batch_number + 1,
                    attempt,
                    self.max_attempts,
                    e,
                )
                if attempt < self.max_attempts:
                    self.executor.restart()
            except ExecutorError as e:
                logger.error("Batch %s failed: %s", batch_number + 1, e)
                raise

        assert last_error is not None
        raise last_error

    def _round_trip(self, request: EmbedRequest) -> np.ndarray:
        self.requests_sent += 1
        future = self.executor.submit(request)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise ExecutorTimeout(
                f"{request.correlation_id} timed out after {self.timeout:g}s"
            ) from None
        except CancelledError:
            raise ExecutorUnavailable(f"{request.correlation_id} was cancelled") from None
