"""
Errors raised by the vector store and BM25 index.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Invalid build or search input."""


class DimensionMismatch(ValidationError):
    """A vector does not match the store dimension."""


class LengthMismatch(ValidationError):
    """Parallel inputs (vectors, ids, metadata, documents) differ in length."""


class EmptyCorpusError(ValidationError):
    """A build was attempted with nothing to index."""


class IndexNotBuiltError(RuntimeError):
    """Search was called before any successful build."""


class SnapshotFormatError(ValueError):
    """A serialized snapshot could not be read."""
