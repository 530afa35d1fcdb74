from __future__ import annotations

import re
from typing import AbstractSet, Set

STOPWORDS = {
    "the", "and", "is", "in", "it", "to", "of", "for", "with", "on", "at", "by", "this", "that",
    "a", "an", "which", "are", "was", "from", "your", "you", "our", "how", "what", "why",
}


def tokenize(text: str) -> Set[str]:
    cleaned = re.sub(r"[^\w\s]", "", (text or "").lower())
    return {
        word
        for word in cleaned.split()
        if len(word) > 2 and word not in STOPWORDS
    }


def relevance(tokens_a: AbstractSet[str], tokens_b: AbstractSet[str]) -> float:
    """Jaccard overlap of two token sets; 0.0 when both are empty."""
    intersection = len(tokens_a & tokens_b)
    union = len(tokens_a) + len(tokens_b) - intersection
    if union == 0:
        return 0.0
    return intersection / union
