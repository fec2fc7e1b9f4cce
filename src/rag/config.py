"""
Configuration for the hybrid retrieval pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional

from src.embeddings.config import env_bool, env_float, env_int, load_env

from .context_builder import estimate_context_budget


@dataclass
class RAGConfig:
    """Configuration for retrieval, fusion and context assembly."""

    num_results: int = 5
    retrieval_k: int = 60
    vector_weight: float = 0.6
    rrf_k: int = 60
    similarity_threshold: float = 0.0
    max_chunks_per_parent: int = 5

    # Context budget
    context_window: int = 2048
    max_answer_tokens: int = 768
    system_prompt: str = ""
    question_reserve: int = 150
    min_context_tokens: int = 500
    dynamic_chunk_threshold: float = 0.3
    dynamic_chunk_target: float = 0.15
    dynamic_chunk_overlap: float = 0.15
    include_metadata: bool = True
    metadata_fields: Optional[List[str]] = None

    strict_legacy_dimension: bool = False

    # Chunking
    chunk_size: int = 512
    chunk_overlap: int = 128
    min_chunk_size: int = 50

    def context_budget(self) -> int:
        return estimate_context_budget(
            context_window=self.context_window,
            system_prompt=self.system_prompt,
            max_answer_tokens=self.max_answer_tokens,
            question_reserve=self.question_reserve,
            min_context_tokens=self.min_context_tokens,
        )

    @classmethod
    def from_env(cls) -> "RAGConfig":
        load_env()
        d = cls()
        fields = os.getenv("RAG_METADATA_FIELDS")
        return cls(
            num_results=env_int("RAG_NUM_RESULTS", d.num_results),
            retrieval_k=env_int("RAG_RETRIEVAL_K", d.retrieval_k),
            vector_weight=env_float("RAG_VECTOR_WEIGHT", d.vector_weight),
            rrf_k=env_int("RAG_RRF_K", d.rrf_k),
            similarity_threshold=env_float("RAG_SIMILARITY_THRESHOLD", d.similarity_threshold),
            max_chunks_per_parent=env_int("RAG_MAX_CHUNKS_PER_PARENT", d.max_chunks_per_parent),
            context_window=env_int("RAG_CONTEXT_WINDOW", d.context_window),
            max_answer_tokens=env_int("RAG_MAX_ANSWER_TOKENS", d.max_answer_tokens),
            system_prompt=os.getenv("RAG_SYSTEM_PROMPT", d.system_prompt),
            include_metadata=env_bool("RAG_INCLUDE_METADATA", d.include_metadata),
            metadata_fields=[f.strip() for f in fields.split(",") if f.strip()] if fields else None,
            strict_legacy_dimension=env_bool("RAG_STRICT_LEGACY_DIMENSION", d.strict_legacy_dimension),
            chunk_size=env_int("RAG_CHUNK_SIZE", d.chunk_size),
            chunk_overlap=env_int("RAG_CHUNK_OVERLAP", d.chunk_overlap),
            min_chunk_size=env_int("RAG_MIN_CHUNK_SIZE", d.min_chunk_size),
        )
