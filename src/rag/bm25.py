"""
BM25 sparse retriever backed by an inverted index.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from rank_bm25 import BM25

from .errors import EmptyCorpusError, IndexNotBuiltError, LengthMismatch
from .retriever import SearchHit
from .utils import tokenize

logger = logging.getLogger(__name__)

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75

Posting = Tuple[int, int]


class PostingsBM25(BM25):
    """
    BM25 scorer that only touches documents sharing a term with the query.

    Builds on ``rank_bm25.BM25`` for per-document term frequencies, document
    lengths and document frequencies, and adds posting lists
    (term -> [(doc index, tf), ...] in document order). Uses
    ``idf = ln((N - df + 0.5) / (df + 0.5) + 1)`` and floors the average
    document length at 1.
    """

    def __init__(self, corpus: Sequence[List[str]], k1: float = DEFAULT_K1, b: float = DEFAULT_B):
        self.k1 = k1
        self.b = b
        super().__init__(corpus)
        self.avgdl = max(1.0, self.avgdl)
        self.postings: Dict[str, List[Posting]] = {}
        for doc_idx, frequencies in enumerate(self.doc_freqs):
            for term, tf in frequencies.items():
                self.postings.setdefault(term, []).append((doc_idx, tf))

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        n = self.corpus_size
        for word, df in nd.items():
            self.idf[word] = math.log((n - df + 0.5) / (df + 0.5) + 1)

    def score_postings(self, query: Sequence[str]) -> Dict[int, float]:
        """Scores for every document touched by at least one unique query term."""
        scores: Dict[int, float] = {}
        k1, b, avgdl = self.k1, self.b, self.avgdl
        for term in dict.fromkeys(query):
            plist = self.postings.get(term)
            if not plist:
                continue
            idf = self.idf[term]
            for doc, tf in plist:
                dl = self.doc_len[doc]
                denom = tf + k1 * (1 - b + b * dl / avgdl)
                scores[doc] = scores.get(doc, 0.0) + idf * tf * (k1 + 1) / denom
        return scores

    def get_scores(self, query: Sequence[str]) -> np.ndarray:
        scores = np.zeros(self.corpus_size)
        for doc, score in self.score_postings(query).items():
            scores[doc] = score
        return scores

    def get_batch_scores(self, query: Sequence[str], doc_ids: Sequence[int]) -> List[float]:
        scores = self.score_postings(query)
        return [scores.get(int(i), 0.0) for i in doc_ids]


@dataclass(frozen=True)
class _Corpus:
    scorer: PostingsBM25
    ids: Tuple[str, ...]
    documents: Tuple[Any, ...]


def _document_text(doc: Any) -> str:
    if isinstance(doc, str):
        return doc
    if isinstance(doc, Mapping):
        return str(doc.get("text") or "")
    return ""


def _document_metadata(doc: Any) -> Dict[str, Any]:
    if isinstance(doc, Mapping):
        nested = doc.get("metadata")
        return dict(nested) if isinstance(nested, Mapping) else dict(doc)
    return {}


class BM25Index:
    """BM25 sparse retrieval index, rebuilt wholesale per corpus snapshot."""

    def __init__(self, k1: float = DEFAULT_K1, b: float = DEFAULT_B):
        self.k1 = k1
        self.b = b
        self._corpus: Optional[_Corpus] = None
        self._write_lock = threading.Lock()

    @property
    def is_built(self) -> bool:
        return self._corpus is not None

    def __len__(self) -> int:
        corpus = self._corpus
        return len(corpus.ids) if corpus is not None else 0

    @classmethod
    def from_documents(
        cls,
        documents: Sequence[Any],
        ids: Sequence[str],
        *,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
    ) -> "BM25Index":
        """Build a BM25 index from documents."""
        index = cls(k1=k1, b=b)
        index.build(documents, ids)
        return index

    def build(self, documents: Sequence[Any], ids: Sequence[str]) -> None:
        """
        Index ``documents`` (strings, or mappings with ``text``/``metadata``).

        The previous corpus stays searchable until the new one is complete.
        """
        if not documents:
            raise EmptyCorpusError("Cannot build BM25 with zero documents")
        if len(documents) != len(ids):
            raise LengthMismatch(
                f"Documents and IDs must have same length ({len(documents)} vs {len(ids)})"
            )

        tokenized = [tokenize(_document_text(doc)) for doc in documents]
        corpus = _Corpus(
            scorer=PostingsBM25(tokenized, k1=self.k1, b=self.b),
            ids=tuple(str(x) for x in ids),
            documents=tuple(documents),
        )
        with self._write_lock:
            self._corpus = corpus
        logger.info(
            "Built BM25 index: %s documents, %s terms",
            len(documents),
            len(corpus.scorer.postings),
        )

    def search(self, query: str, top_k: int = 10) -> List[SearchHit]:
        """
        Score documents that share at least one term with ``query``.

        Documents without any query term are never returned. ``top_k <= 0``
        returns every touched document.
        """
        corpus = self._corpus
        if corpus is None:
            raise IndexNotBuiltError("BM25 index not built")

        terms = tokenize(query)
        if not terms:
            return []

        scores = corpus.scorer.score_postings(terms)
        ranked = sorted(scores.items(), key=lambda x: (-x[1], x[0]))
        if top_k > 0:
            ranked = ranked[:top_k]

        results: List[SearchHit] = []
        for idx, score in ranked:
            doc = corpus.documents[idx]
            metadata = _document_metadata(doc)
            parent_id = metadata.get("parent_id")
            if parent_id is None and isinstance(doc, Mapping):
                parent_id = doc.get("parent_id")
            results.append(
                SearchHit(
                    doc_id=corpus.ids[idx],
                    score=float(score),
                    index=idx,
                    text=_document_text(doc),
                    metadata=metadata,
                    parent_id=parent_id,
                )
            )
        return results

    def get_stats(self) -> Dict[str, Any]:
        corpus = self._corpus
        if corpus is None:
            return {"num_documents": 0, "num_terms": 0, "avg_doc_length": 0.0}
        return {
            "num_documents": len(corpus.ids),
            "num_terms": len(corpus.scorer.postings),
            "avg_doc_length": float(corpus.scorer.avgdl),
        }

    def clear(self) -> None:
        with self._write_lock:
            self._corpus = None
