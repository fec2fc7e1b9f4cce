"""
Configuration for the embedding pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .coordinator import DEFAULT_MAX_ATTEMPTS, DEFAULT_TIMEOUT_SECONDS
from .executors import DEFAULT_EMBEDDING_MODEL

ROOT = Path(__file__).resolve().parents[2]


def load_env() -> None:
    """Load the project .env file if there is one."""
    env_file = ROOT / ".env"
    if env_file.exists():
        load_dotenv(env_file)


def env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EmbeddingConfig:
    """Settings for embedding, caching and batching."""

    model_name: str = DEFAULT_EMBEDDING_MODEL
    dimension: int = 384
    batch_size: int = 32
    max_length: int = 256
    tokens_per_batch: Optional[int] = None
    cache_max_size: int = 5000
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    use_worker: bool = True
    pooling: str = "mean"
    normalize: bool = True

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        load_env()
        defaults = cls()
        return cls(
            model_name=os.getenv("EMBEDDING_MODEL", defaults.model_name),
            dimension=env_int("EMBEDDING_DIMENSION", defaults.dimension),
            batch_size=env_int("EMBEDDING_BATCH_SIZE", defaults.batch_size),
            max_length=env_int("EMBEDDING_MAX_LENGTH", defaults.max_length),
            tokens_per_batch=env_int("EMBEDDING_TOKENS_PER_BATCH", defaults.tokens_per_batch),
            cache_max_size=env_int("EMBEDDING_CACHE_MAX_SIZE", defaults.cache_max_size),
            timeout_seconds=env_float("EMBEDDING_TIMEOUT_SECONDS", defaults.timeout_seconds),
            max_attempts=env_int("EMBEDDING_MAX_ATTEMPTS", defaults.max_attempts),
            use_worker=env_bool("EMBEDDING_USE_WORKER", defaults.use_worker),
            pooling=os.getenv("EMBEDDING_POOLING", defaults.pooling),
            normalize=env_bool("EMBEDDING_NORMALIZE", defaults.normalize),
        )
