"""Word-set (Jaccard) overlap between two text spans.

Used as the acceptance gate of chunk matches: it keeps lexical near-duplicates
(abbreviations, small phrasing drift such as "US" vs "United States") and
rejects paraphrases that an embedding alone would score as equivalent.

No stemming, no stop-word removal, no synonym handling.
"""

from __future__ import annotations

import re
from typing import List

_PUNCTUATION = re.compile(r"[^\w\s]")


def extract_words(text: str) -> List[str]:
    """Lowercase ``text``, turn punctuation into spaces and split on whitespace."""
    if not text:
        return []
    return _PUNCTUATION.sub(" ", text.lower()).split()


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Return ``|A & B| / |A | B|`` over the word sets of both texts.

    Two empty texts are identical (1.0); exactly one empty text scores 0.0.
    """
    words_a = set(extract_words(text_a))
    words_b = set(extract_words(text_b))

    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0

    return len(words_a & words_b) / len(words_a | words_b)


def meets_jaccard_threshold(text_a: str, text_b: str, threshold: float) -> bool:
    """Whether the pair reaches ``threshold``; ``threshold <= 0`` disables the check."""
    if threshold <= 0:
        return True
    return jaccard_similarity(text_a, text_b) >= threshold
