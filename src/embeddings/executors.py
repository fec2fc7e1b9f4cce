"""
Embedding executors: where prepared texts actually get turned into vectors.

Two flavours share one contract (``submit(request) -> Future``):

- ``InProcessExecutor`` runs the backend synchronously on the calling thread
  and hands back an already-completed future.
- ``WorkerExecutor`` posts each request, tagged with a correlation id, to a
  dedicated worker thread and resolves the future when the worker answers.
  A request cancelled before the worker picks it up is skipped.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np

from .errors import ExecutorError, ExecutorUnavailable

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "intfloat/multilingual-e5-small")


@dataclass(frozen=True)
class EmbedParams:
    """Parameters forwarded to the backend with every batch."""

    max_length: int = 256
    pooling: str = "mean"
    normalize: bool = True


@dataclass(frozen=True)
class EmbedRequest:
    """One batch attempt sent to an executor."""

    correlation_id: str
    texts: List[str]
    params: EmbedParams = field(default_factory=EmbedParams)


class EmbeddingBackend(Protocol):
    """Anything that can encode a list of strings into a (n, dim) array."""

    def encode(
        self,
        texts: Sequence[str],
        *,
        max_length: int,
        pooling: str,
        normalize: bool,
    ) -> np.ndarray:
        ...


class SentenceTransformerBackend:
    """Backend using a sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, device: Optional[str] = None):
        self.model_name = model_name
        self.device = device
        self._model = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    @property
    def dimension(self) -> int:
        return int(self._load().get_sentence_embedding_dimension())

    def encode(
        self,
        texts: Sequence[str],
        *,
        max_length: int,
        pooling: str,
        normalize: bool,
    ) -> np.ndarray:
        model = self._load()
        # Pooling is part of the model definition for sentence-transformers.
        if pooling != "mean":
            logger.debug("Ignoring pooling=%s; %s defines its own pooling", pooling, self.model_name)
        model.max_seq_length = max_length
        return model.encode(
            list(texts),
            batch_size=max(1, len(texts)),
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=normalize,
        )


def _run_backend(backend: EmbeddingBackend, request: EmbedRequest) -> np.ndarray:
    """Call the backend and check the shape of what comes back."""
    params = request.params
    try:
        output = backend.encode(
            request.texts,
            max_length=params.max_length,
            pooling=params.pooling,
            normalize=params.normalize,
        )
    except Exception as e:
        raise ExecutorError(f"{request.correlation_id}: {e}") from e

    vectors = np.asarray(output, dtype=np.float32)
    if vectors.ndim != 2 or vectors.shape[0] != len(request.texts):
        raise ExecutorError(
            f"{request.correlation_id}: expected {len(request.texts)} vectors, "
            f"got array of shape {vectors.shape}"
        )
    return vectors


class EmbeddingExecutor:
    """Base contract for executors."""

    def submit(self, request: EmbedRequest) -> "Future[np.ndarray]":
        raise NotImplementedError

    def restart(self) -> None:
        """Tear down and reinitialize the executor."""

    def close(self) -> None:
        """Release resources held by the executor."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class InProcessExecutor(EmbeddingExecutor):
    """Synchronous executor running the backend on the caller's thread."""

    def __init__(
        self,
        backend: Optional[EmbeddingBackend] = None,
        *,
        backend_factory: Optional[Callable[[], EmbeddingBackend]] = None,
    ):
        if backend is None and backend_factory is None:
            raise ValueError("InProcessExecutor needs a backend or a backend_factory")
        self._factory = backend_factory
        self.backend = backend if backend is not None else backend_factory()

    def submit(self, request: EmbedRequest) -> "Future[np.ndarray]":
        future: Future = Future()
        future.set_running_or_notify_cancel()
        try:
            future.set_result(_run_backend(self.backend, request))
        except ExecutorError as e:
            future.set_exception(e)
        return future

    def restart(self) -> None:
        if self._factory is not None:
            logger.info("Reinitializing in-process embedding backend")
            self.backend = self._factory()


_STOP = object()


class _Worker:
    """A single worker thread generation with its own inbox."""

    def __init__(self, backend_factory: Callable[[], EmbeddingBackend], name: str):
        self._factory = backend_factory
        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._pending: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    @property
    def alive(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set()

    def post(self, request: EmbedRequest, future: Future) -> None:
        with self._pending_lock:
            if self._stopped.is_set():
                _fail(future, ExecutorUnavailable("worker stopped"))
                return
            self._pending[request.correlation_id] = future
        self._inbox.put((request, future))

    def stop(self, reason: str) -> None:
        self._stopped.set()
        self._inbox.put(_STOP)
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            _fail(future, ExecutorUnavailable(reason))

    def _run(self) -> None:
        try:
            backend = self._factory()
        except Exception as e:
            logger.error("Embedding worker failed to initialize: %s", e)
            self.stop(f"worker initialization failed: {e}")
            return

        while True:
            message = self._inbox.get()
            if message is _STOP:
                break
            request, future = message
            with self._pending_lock:
                self._pending.pop(request.correlation_id, None)
            if self._stopped.is_set():
                _fail(future, ExecutorUnavailable("worker stopped"))
                continue
            try:
                if not future.set_running_or_notify_cancel():
                    logger.debug("Skipping cancelled request %s", request.correlation_id)
                    continue
            except RuntimeError:
                # Already failed by stop().
                continue
            try:
                result = _run_backend(backend, request)
            except ExecutorError as e:
                _fail(future, e)
            else:
                try:
                    future.set_result(result)
                except InvalidStateError:
                    pass


def _fail(future: Future, error: BaseException) -> None:
    try:
        future.set_exception(error)
    except InvalidStateError:
        pass


class WorkerExecutor(EmbeddingExecutor):
    """Message-passing executor backed by a dedicated worker thread."""

    def __init__(
        self,
        backend_factory: Callable[[], EmbeddingBackend],
        *,
        name: str = "embedding-worker",
    ):
        self._factory = backend_factory
        self._name = name
        self._lock = threading.Lock()
        self._generation = 0
        self._worker: Optional[_Worker] = None
        self._start_locked()

    def _start_locked(self) -> None:
        self._generation += 1
        worker = _Worker(self._factory, name=f"{self._name}-{self._generation}")
        worker.start()
        self._worker = worker

    @property
    def alive(self) -> bool:
        worker = self._worker
        return worker is not None and worker.alive

    def submit(self, request: EmbedRequest) -> "Future[np.ndarray]":
        with self._lock:
            worker = self._worker
            if worker is None or not worker.alive:
                raise ExecutorUnavailable("embedding worker is not running")
            future: Future = Future()
            worker.post(request, future)
        return future

    def restart(self) -> None:
        with self._lock:
            if self._worker is not None:
                # A hung thread cannot be killed; it is abandoned as a daemon.
                self._worker.stop("worker restarted")
            logger.info("Restarting embedding worker")
            self._start_locked()

    def close(self) -> None:
        with self._lock:
            if self._worker is not None:
                self._worker.stop("worker closed")
                self._worker = None
