"""
Context builder: packs retrieved passages into a token-bounded context string.

Flat results are numbered ``[1]``, ``[2]``, ... and parent groups are laid out
as ``[Document n]`` blocks with their relevant passages, so downstream
consumers can cite sources back to ids.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from .grouping import ParentGroup
from .retriever import SearchHit

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3.5
TOKEN_SAFETY_MARGIN = 1.1

DYNAMIC_CHUNK_THRESHOLD = 0.3
DYNAMIC_CHUNK_TARGET = 0.15
DYNAMIC_CHUNK_OVERLAP = 0.15


@dataclass
class ContextResult:
    """Assembled context plus budget bookkeeping."""

    context: str
    limited: bool
    tokens_used: int
    max_tokens: int


def estimate_tokens(text: str) -> int:
    """~3.5 characters per token, plus a 10% safety margin."""
    return math.ceil(len(text) / CHARS_PER_TOKEN * TOKEN_SAFETY_MARGIN)


def estimate_context_budget(
    context_window: int = 2048,
    system_prompt: str = "",
    max_answer_tokens: int = 768,
    question_reserve: int = 150,
    min_context_tokens: int = 500,
) -> int:
    """Tokens left for context after the prompt, question and answer reserves."""
    available = context_window - estimate_tokens(system_prompt) - question_reserve - max_answer_tokens
    return max(min_context_tokens, available)


def dynamic_chunk(text: str, target_tokens: int, overlap: float = DYNAMIC_CHUNK_OVERLAP) -> List[str]:
    """Split ``text`` into character windows of ~``target_tokens`` with fractional overlap."""
    target_chars = max(1, int(target_tokens * CHARS_PER_TOKEN))
    step = max(1, target_chars - int(target_chars * overlap))
    pieces: List[str] = []
    for start in range(0, len(text), step):
        piece = text[start : start + target_chars].strip()
        if piece:
            pieces.append(piece)
        if start + target_chars >= len(text):
            break
    return pieces


def _format_metadata(
    metadata: Mapping[str, Any],
    metadata_fields: Optional[Iterable[str]],
    *,
    skip_chunk_keys: bool = False,
) -> str:
    wanted = set(metadata_fields) if metadata_fields else None
    entries = []
    for key, value in metadata.items():
        if key == "text":
            continue
        if skip_chunk_keys and (key.startswith("chunk_") or key == "parent_id"):
            continue
        if wanted is not None and key not in wanted:
            continue
        entries.append(f"{key}: {value}")
    return ", ".join(entries)


def build_context(
    results: Sequence[SearchHit],
    token_budget: int,
    *,
    include_metadata: bool = True,
    metadata_fields: Optional[Sequence[str]] = None,
) -> ContextResult:
    """
    Format flat results as ``[i] text`` entries until the budget is reached.

    The first entry that would not fit is dropped, packing stops there and the
    result is marked ``limited``.
    """
    parts: List[str] = []
    used = 0
    limited = False

    for i, result in enumerate(results, 1):
        text = result.text or str(result.metadata.get("text") or "")
        item = f"[{i}] {text}"
        if include_metadata and result.metadata:
            meta = _format_metadata(result.metadata, metadata_fields)
            if meta:
                item += f"\n   ({meta})"

        tokens = estimate_tokens(item)
        if used + tokens < token_budget:
            parts.append(item)
            used += tokens
        else:
            logger.warning("Context budget reached at %s tokens (max: %s)", used, token_budget)
            limited = True
            break

    return ContextResult(context="\n\n".join(parts), limited=limited, tokens_used=used, max_tokens=token_budget)


def build_chunked_context(
    groups: Sequence[ParentGroup],
    token_budget: int,
    *,
    include_metadata: bool = True,
    metadata_fields: Optional[Sequence[str]] = None,
    dynamic_threshold: float = DYNAMIC_CHUNK_THRESHOLD,
    dynamic_target: float = DYNAMIC_CHUNK_TARGET,
    dynamic_overlap: float = DYNAMIC_CHUNK_OVERLAP,
) -> ContextResult:
    """
    Lay out parent groups as ``[Document n]`` blocks of relevant passages.

    A passage larger than ``dynamic_threshold`` of the remaining budget is cut
    into overlapping pieces of ``dynamic_target`` of the budget, and as many
    pieces as fit are kept.
    """
    parts: List[str] = []
    used = 0
    limited = False
    piece_tokens = max(1, int(token_budget * dynamic_target))

    for i, group in enumerate(groups, 1):
        block = f"\n[Document {i}]"
        if include_metadata and group.chunks and group.chunks[0].metadata:
            meta = _format_metadata(group.chunks[0].metadata, metadata_fields, skip_chunk_keys=True)
            if meta:
                block += f"\n   Metadata: {meta}"
        block += "\n   Relevant passages:"
        block_tokens = estimate_tokens(block)
        passages = 0

        for chunk in group.chunks:
            raw = chunk.text or str(chunk.metadata.get("text") or "")
            remaining = token_budget - used - block_tokens
            if estimate_tokens(raw) > remaining * dynamic_threshold:
                candidates = dynamic_chunk(raw, piece_tokens, dynamic_overlap)
            else:
                candidates = [raw]

            for text in candidates:
                line = f"\n   » {text}"
                tokens = estimate_tokens(line)
                if used + block_tokens + tokens < token_budget:
                    block += line
                    block_tokens += tokens
                    passages += 1
                else:
                    limited = True
                    break
            if limited:
                break

        if passages:
            parts.append(block)
            used += block_tokens
        if limited:
            logger.warning("Context budget reached at %s tokens (max: %s)", used, token_budget)
            break

    return ContextResult(context="\n\n".join(parts), limited=limited, tokens_used=used, max_tokens=token_budget)


def assemble_context(
    candidates: Sequence[Union[SearchHit, ParentGroup]],
    token_budget: int,
    **kwargs,
) -> ContextResult:
    """Pack flat hits or parent groups into a context within ``token_budget``."""
    if candidates and all(isinstance(c, ParentGroup) for c in candidates):
        return build_chunked_context(candidates, token_budget, **kwargs)  # type: ignore[arg-type]
    flat_kwargs = {k: v for k, v in kwargs.items() if k in ("include_metadata", "metadata_fields")}
    return build_context(candidates, token_budget, **flat_kwargs)  # type: ignore[arg-type]
