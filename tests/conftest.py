"""
Shared fixtures: an in-process pipeline over a hashing embedder, and a small corpus.
"""

from __future__ import annotations

import pytest

from src.embeddings import EmbeddingConfig, EmbeddingPipeline, InProcessExecutor
from src.rag import DocumentRecord, HybridRetriever, RAGConfig
from tests.fakes import DIM, HashingBackend


@pytest.fixture
def backend() -> HashingBackend:
    return HashingBackend()


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(dimension=DIM, batch_size=4, use_worker=False, timeout_seconds=5.0)


@pytest.fixture
def pipeline(backend: HashingBackend, embedding_config: EmbeddingConfig) -> EmbeddingPipeline:
    with EmbeddingPipeline(InProcessExecutor(backend), embedding_config) as p:
        yield p


@pytest.fixture
def documents() -> list[DocumentRecord]:
    """A small corpus; the scheduling document is long enough to be chunked."""
    scheduling = " ".join(
        [
            "Process scheduling decides which process runs next on the CPU.",
            "Round robin scheduling gives every process a fixed time slice.",
            "Priority scheduling runs the most important process first.",
            "Shortest job first scheduling minimizes the average waiting time.",
        ]
        * 4
    )
    return [
        DocumentRecord(
            id="deadlock",
            text="A deadlock happens when two or more processes wait forever, each holding a resource another needs.",
            metadata={"topic": "os"},
        ),
        DocumentRecord(id="scheduling", text=scheduling, metadata={"topic": "os"}),
        DocumentRecord(
            id="tcp",
            text="The TCP three-way handshake opens a connection using SYN, SYN-ACK and ACK segments.",
            metadata={"topic": "networks"},
        ),
        DocumentRecord(
            id="btree",
            text="A B-tree keeps database index pages balanced so lookups touch few disk blocks.",
            metadata={"topic": "dbms"},
        ),
    ]


@pytest.fixture
def rag_config() -> RAGConfig:
    return RAGConfig(chunk_size=200, chunk_overlap=50, min_chunk_size=20)


@pytest.fixture
def retriever(pipeline: EmbeddingPipeline, rag_config: RAGConfig, documents) -> HybridRetriever:
    r = HybridRetriever(pipeline, rag_config)
    r.index(documents)
    return r
