"""
Exact cosine-similarity vector store over a contiguous float32 matrix.

The store keeps one immutable snapshot (matrix, norms, ids, metadata) behind
a single attribute. Builds and deserialization prepare a complete new
snapshot and swap it in with one assignment, so a reader sees either the old
snapshot or the new one and never a half-built state. A failed build leaves
the previous snapshot untouched.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import (
    DimensionMismatch,
    EmptyCorpusError,
    IndexNotBuiltError,
    LengthMismatch,
    SnapshotFormatError,
)
from .retriever import SearchHit

logger = logging.getLogger(__name__)

NORM_EPSILON = 1e-12
FORMAT_VERSION = "contiguous_f32_v1"
JSON_FORMAT_VERSION = "contiguous_f32_b64_v1"
_LE_FLOAT32 = np.dtype("<f4")

MetadataFilter = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True)
class _Snapshot:
    dimension: int
    matrix: np.ndarray  # (n, dimension) float32, read-only
    norms: np.ndarray  # (n,) float32, read-only
    ids: Tuple[str, ...]
    metadata: Tuple[Dict[str, Any], ...]
    positions: Dict[str, int]

    @property
    def size(self) -> int:
        return len(self.ids)


@dataclass
class StoredDocument:
    """A stored vector with its id and metadata (copies, safe to mutate)."""

    doc_id: str
    embedding: np.ndarray
    metadata: Dict[str, Any]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero length."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatch(f"Embeddings must have the same dimension: {va.shape} vs {vb.shape}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom <= 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def _row_norms(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1).astype(np.float32)
    return np.maximum(norms, np.float32(NORM_EPSILON))


def _flatten_metadata(record: Any) -> Dict[str, Any]:
    """Hoist nested ``metadata`` keys and rename ``id`` to ``doc_id``.

    An explicit ``doc_id`` on the record wins; ``id`` is then kept as is.
    """
    if not isinstance(record, Mapping):
        return {}
    flattened: Dict[str, Any] = {}
    nested = record.get("metadata")
    if isinstance(nested, Mapping):
        flattened.update(nested)
    for key, value in record.items():
        if key == "metadata":
            continue
        if key == "text":
            flattened["text"] = value
        elif key == "doc_id":
            flattened["doc_id"] = value
        elif key == "id" and "doc_id" not in record:
            flattened["doc_id"] = value
        elif key not in flattened:
            flattened[key] = value
    return flattened


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


class VectorStore:
    """
    Flat vector index with exact cosine search.

    Args:
        dimension: Expected vector length.
        options: Extra store configuration carried through serialization.
        strict_legacy_dimension: When loading a legacy row-array snapshot whose
            rows disagree with ``dimension``, raise instead of adopting the
            data's dimension.
    """

    def __init__(
        self,
        dimension: int = 384,
        options: Optional[Mapping[str, Any]] = None,
        *,
        strict_legacy_dimension: bool = False,
    ):
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self.dimension = dimension
        self.options: Dict[str, Any] = {"index_type": "flat", "metric": "cosine"}
        if options:
            self.options.update(options)
        self.strict_legacy_dimension = strict_legacy_dimension
        self._snapshot: Optional[_Snapshot] = None
        self._write_lock = threading.Lock()

    @property
    def is_built(self) -> bool:
        return self._snapshot is not None

    def __len__(self) -> int:
        snap = self._snapshot
        return snap.size if snap is not None else 0

    def build(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[str],
        metadata: Optional[Sequence[Any]] = None,
    ) -> Dict[str, Any]:
        """
        Replace the store contents with ``vectors``.

        Raises:
            EmptyCorpusError: No vectors given.
            LengthMismatch: vectors, ids and metadata differ in length.
            DimensionMismatch: A vector's length differs from ``dimension``.
        """
        n = len(vectors)
        if n == 0:
            raise EmptyCorpusError("Cannot build index with zero embeddings")
        if len(ids) != n:
            raise LengthMismatch(f"Embeddings and IDs must have same length ({n} vs {len(ids)})")
        if metadata is not None and len(metadata) != n:
            raise LengthMismatch(f"Embeddings and metadata must have same length ({n} vs {len(metadata)})")

        d = self.dimension
        matrix = np.empty((n, d), dtype=np.float32)
        for i, vector in enumerate(vectors):
            row = np.asarray(vector, dtype=np.float32)
            if row.ndim != 1 or row.shape[0] != d:
                raise DimensionMismatch(
                    f"Embedding dimension mismatch at row {i}: got {row.shape}, expected {d}"
                )
            matrix[i] = row

        if metadata is None:
            records: Tuple[Dict[str, Any], ...] = tuple({} for _ in range(n))
        else:
            records = tuple(_flatten_metadata(m) for m in metadata)

        snapshot = self._make_snapshot(d, matrix, _row_norms(matrix), [str(x) for x in ids], records)
        with self._write_lock:
            self._snapshot = snapshot
        logger.info("Built vector store: %s vectors, dimension %s", n, d)
        return {"num_vectors": n, "dimension": d, "index_type": "flat"}

    @staticmethod
    def _make_snapshot(
        dimension: int,
        matrix: np.ndarray,
        norms: np.ndarray,
        ids: List[str],
        metadata: Sequence[Dict[str, Any]],
    ) -> _Snapshot:
        positions: Dict[str, int] = {}
        for i, doc_id in enumerate(ids):
            positions.setdefault(doc_id, i)
        return _Snapshot(
            dimension=dimension,
            matrix=_freeze(matrix),
            norms=_freeze(norms),
            ids=tuple(ids),
            metadata=tuple(metadata),
            positions=positions,
        )

    def _require_snapshot(self) -> _Snapshot:
        snap = self._snapshot
        if snap is None:
            raise IndexNotBuiltError("Index not built. Call build() first.")
        return snap

    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        *,
        filter: Optional[MetadataFilter] = None,
        min_score: Optional[float] = 0.0,
        include_metadata: bool = True,
    ) -> List[SearchHit]:
        """
        Rank stored vectors by cosine similarity to ``query``.

        Hits scoring below ``min_score`` or rejected by ``filter(metadata)`` are
        dropped. Ties keep insertion order. ``k <= 0`` returns every candidate.
        """
        snap = self._require_snapshot()
        q = np.asarray(query, dtype=np.float32)
        if q.ndim != 1 or q.shape[0] != snap.dimension:
            raise DimensionMismatch(f"Query dim mismatch: got {q.shape}, expected {snap.dimension}")

        dots = snap.matrix @ q
        denom = snap.norms * np.float32(np.linalg.norm(q))
        scores = np.zeros(snap.size, dtype=np.float32)
        np.divide(dots, denom, out=scores, where=denom > 0)

        if min_score is not None:
            candidates = np.nonzero(scores >= min_score)[0]
        else:
            candidates = np.arange(snap.size)
        if filter is not None:
            candidates = np.array(
                [i for i in candidates if filter(snap.metadata[i])], dtype=np.int64
            )
        if candidates.size == 0:
            return []

        order = np.argsort(-scores[candidates], kind="stable")
        ranked = candidates[order]
        if k > 0:
            ranked = ranked[:k]

        hits: List[SearchHit] = []
        for idx in ranked:
            idx = int(idx)
            meta = snap.metadata[idx]
            if include_metadata:
                hits.append(
                    SearchHit(
                        doc_id=snap.ids[idx],
                        score=float(scores[idx]),
                        index=idx,
                        text=str(meta.get("text") or ""),
                        metadata=dict(meta),
                        parent_id=meta.get("parent_id"),
                    )
                )
            else:
                hits.append(SearchHit(doc_id=snap.ids[idx], score=float(scores[idx]), index=idx))
        return hits

    def get_document(self, doc_id: str) -> Optional[StoredDocument]:
        """Return the stored vector and metadata for ``doc_id``, or None."""
        snap = self._snapshot
        if snap is None:
            return None
        idx = snap.positions.get(doc_id)
        if idx is None:
            return None
        return StoredDocument(
            doc_id=doc_id,
            embedding=np.array(snap.matrix[idx], copy=True),
            metadata=dict(snap.metadata[idx]),
        )

    def get_metadata(self, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self.get_document(doc_id)
        return doc.metadata if doc is not None else None

    def get_all_ids(self) -> List[str]:
        snap = self._snapshot
        return list(snap.ids) if snap is not None else []

    def get_stats(self) -> Dict[str, Any]:
        snap = self._snapshot
        n = snap.size if snap is not None else 0
        d = snap.dimension if snap is not None else self.dimension
        return {
            "num_vectors": n,
            "dimension": d,
            "index_type": "flat",
            "memory_bytes": n * d * 4 + n * 4,
        }

    def clear(self) -> None:
        with self._write_lock:
            self._snapshot = None

    # --- serialization -------------------------------------------------

    def serialize(self) -> Dict[str, Any]:
        """Snapshot as a dict with raw little-endian float32 buffers."""
        snap = self._require_snapshot()
        return {
            "format_version": FORMAT_VERSION,
            "dimension": snap.dimension,
            "ids": list(snap.ids),
            "metadata": [dict(m) for m in snap.metadata],
            "vectors": snap.matrix.astype(_LE_FLOAT32).tobytes(),
            "norms": snap.norms.astype(_LE_FLOAT32).tobytes(),
            "options": dict(self.options),
        }

    def to_json(self) -> str:
        """Serialize to JSON with base64-encoded vector and norm buffers."""
        data = self.serialize()
        data["vectors_b64"] = base64.b64encode(data.pop("vectors")).decode("ascii")
        data["norms_b64"] = base64.b64encode(data.pop("norms")).decode("ascii")
        data["format_version"] = JSON_FORMAT_VERSION
        return json.dumps(data)

    @classmethod
    def from_json(cls, payload: str, **kwargs) -> "VectorStore":
        data = json.loads(payload)
        store = cls(int(data.get("dimension") or 384), **kwargs)
        store.deserialize(data)
        return store

    def deserialize(self, data: Mapping[str, Any]) -> None:
        """
        Load a snapshot produced by ``serialize``/``to_json``.

        Also accepts the legacy layout where ``vectors`` is a list of float
        lists; norms are then recomputed. If those rows disagree with the
        expected dimension the store adopts the data's dimension, or raises
        ``SnapshotFormatError`` when ``strict_legacy_dimension`` is set.
        """
        dimension = int(data.get("dimension") or self.dimension)
        raw_vectors = data.get("vectors")
        raw_norms = data.get("norms")
        if data.get("vectors_b64") is not None:
            raw_vectors = base64.b64decode(data["vectors_b64"])
            raw_norms = base64.b64decode(data["norms_b64"]) if data.get("norms_b64") else None

        if isinstance(raw_vectors, (bytes, bytearray, memoryview)):
            matrix, norms = self._from_buffers(raw_vectors, raw_norms, dimension)
        elif isinstance(raw_vectors, Sequence) and not isinstance(raw_vectors, str):
            matrix, dimension = self._from_legacy_rows(raw_vectors, dimension)
            norms = _row_norms(matrix)
        else:
            raise SnapshotFormatError("Invalid serialized data: missing vectors")

        n = matrix.shape[0]
        ids = [str(x) for x in (data.get("ids") or [])]
        metadata = [dict(m) if isinstance(m, Mapping) else {} for m in (data.get("metadata") or [])]
        if not metadata:
            metadata = [{} for _ in range(n)]
        if len(ids) != n or len(metadata) != n:
            raise SnapshotFormatError(
                f"Snapshot has {n} vectors but {len(ids)} ids and {len(metadata)} metadata records"
            )

        snapshot = self._make_snapshot(dimension, matrix, norms, ids, metadata)
        with self._write_lock:
            self.dimension = dimension
            options = data.get("options")
            if isinstance(options, Mapping):
                self.options.update(options)
            self._snapshot = snapshot

    @staticmethod
    def _from_buffers(
        raw_vectors: bytes, raw_norms: Optional[bytes], dimension: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        flat = np.frombuffer(bytes(raw_vectors), dtype=_LE_FLOAT32)
        if flat.size % dimension != 0:
            raise SnapshotFormatError(
                f"Vector buffer holds {flat.size} floats, not a multiple of dimension {dimension}"
            )
        matrix = flat.astype(np.float32).reshape(-1, dimension)
        if raw_norms is None:
            return matrix, _row_norms(matrix)
        norms = np.frombuffer(bytes(raw_norms), dtype=_LE_FLOAT32).astype(np.float32)
        if norms.shape[0] != matrix.shape[0]:
            raise SnapshotFormatError(
                f"Norm buffer holds {norms.shape[0]} values for {matrix.shape[0]} vectors"
            )
        return matrix, norms

    def _from_legacy_rows(
        self, rows: Sequence[Sequence[float]], dimension: int
    ) -> Tuple[np.ndarray, int]:
        if rows and len(rows[0]) != dimension:
            if self.strict_legacy_dimension:
                raise SnapshotFormatError(
                    f"Legacy vectors have dimension {len(rows[0])}, expected {dimension}"
                )
            logger.warning(
                "Vector dimension mismatch: expected %s, got %s. Adjusting.",
                dimension,
                len(rows[0]),
            )
            dimension = len(rows[0])

        matrix = np.empty((len(rows), dimension), dtype=np.float32)
        for i, row in enumerate(rows):
            values = np.asarray(row, dtype=np.float32)
            if values.ndim != 1 or values.shape[0] != dimension:
                raise SnapshotFormatError(
                    f"Legacy vector {i} has shape {values.shape}, expected ({dimension},)"
                )
            matrix[i] = values
        return matrix, dimension
