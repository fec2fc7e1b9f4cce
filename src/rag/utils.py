"""
Utility functions for RAG module.
"""

from __future__ import annotations

import re
from typing import List

NON_WORD_RE = re.compile(r"[^\w\s]")


def tokenize(text: str | None) -> List[str]:
    """Lowercase, turn punctuation into spaces and split on whitespace."""
    return NON_WORD_RE.sub(" ", str(text or "").lower()).split()
