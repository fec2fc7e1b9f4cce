"""
Document loading and chunking for hybrid retrieval.

Documents are read from JSONL (one ``{"id", "text", "metadata"}`` object per
line) and split into overlapping character windows that keep a pointer back
to their parent document.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 512
DEFAULT_CHUNK_OVERLAP = 128
DEFAULT_MIN_CHUNK_SIZE = 50
# Documents up to this multiple of chunk_size stay whole.
SINGLE_CHUNK_SLACK = 1.2


@dataclasses.dataclass
class DocumentRecord:
    """A parent document in the corpus."""

    id: str
    text: str
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "DocumentRecord":
        if "id" not in obj:
            raise ValueError("document is missing 'id'")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValueError(f"metadata for document {obj['id']!r} must be an object")
        return cls(id=str(obj["id"]), text=str(obj.get("text") or ""), metadata=dict(metadata))

    def as_metadata(self) -> Dict[str, Any]:
        """Flat record stored alongside the parent vector."""
        return {**self.metadata, "doc_id": self.id, "text": self.text}


@dataclasses.dataclass
class ChunkRecord:
    """A passage cut from a parent document."""

    id: str
    parent_id: str
    chunk_index: int
    text: str
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)

    def as_metadata(self) -> Dict[str, Any]:
        return {
            **self.metadata,
            "doc_id": self.parent_id,
            "text": self.text,
            "parent_id": self.parent_id,
            "chunk_index": self.chunk_index,
        }


def load_documents(path: Path | str) -> List[DocumentRecord]:
    """Load documents from a JSONL file, skipping blank lines."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"corpus not found at {path}")

    documents: List[DocumentRecord] = []
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({e.msg})") from e
            documents.append(DocumentRecord.from_dict(obj))
    logger.info("Loaded %s documents from %s", len(documents), path)
    return documents


def _windows(text: str, size: int, overlap: int) -> Iterator[str]:
    step = max(1, size - overlap)
    for start in range(0, len(text), step):
        yield text[start : start + size]
        if start + size >= len(text):
            break


def chunk_document(
    doc: DocumentRecord,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> List[ChunkRecord]:
    """
    Split one document into overlapping chunks.

    Short documents (up to ``1.2 * chunk_size`` characters) become a single
    chunk. Longer ones are cut into ``chunk_size`` windows overlapping by
    ``chunk_overlap`` characters; windows shorter than ``min_chunk_size`` after
    trimming are dropped. Chunk ids are ``"<doc id>::chunk_<n>"``.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if not 0 <= chunk_overlap < chunk_size:
        raise ValueError("chunk_overlap must be in [0, chunk_size)")

    text = doc.text or ""
    if not text.strip():
        logger.warning("Empty text for document %s, no chunks produced", doc.id)
        return []

    if len(text) <= chunk_size * SINGLE_CHUNK_SLACK:
        pieces = [text.strip()]
    else:
        pieces = [w.strip() for w in _windows(text, chunk_size, chunk_overlap)]
        pieces = [p for p in pieces if len(p) >= min_chunk_size]

    total = len(pieces)
    chunks: List[ChunkRecord] = []
    for i, piece in enumerate(pieces):
        chunks.append(
            ChunkRecord(
                id=f"{doc.id}::chunk_{i}",
                parent_id=doc.id,
                chunk_index=i,
                text=piece,
                metadata={
                    **doc.metadata,
                    "chunk_position": f"{i + 1}/{total}",
                    "chunk_chars": len(piece),
                },
            )
        )
    return chunks


def chunk_documents(
    documents: Iterable[DocumentRecord],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> List[ChunkRecord]:
    """Chunk every document, preserving corpus order."""
    chunks: List[ChunkRecord] = []
    for doc in documents:
        chunks.extend(chunk_document(doc, chunk_size, chunk_overlap, min_chunk_size))
    return chunks
