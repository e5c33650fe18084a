"""Score primitives shared by the hybrid and keyword retrievers.

1. Score normalization
   - Vector stores report raw dot products, L2 distances or cosine
     distances, and rarely say which. normalize_score maps all of them to
     a similarity in [0, 1] (higher = more relevant) using value ranges:
       value missing/NaN   -> 0.5 (neutral)
       value < 0           -> 1 / (1 + |value|)     (dot product)
       0 <= value <= 2     -> max(0, 1 - value / 2) (cosine distance)
       value > 2           -> 1 / (1 + value)       (L2 distance)

2. Keyword scoring (BM25-like)
   - Log-scaled term frequency, document length normalization and an
     optional boost for keywords that appear early in the text
   - Averaged over the query keywords and capped at 1.0
"""

import logging
import math
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Common English words ignored during keyword extraction
DEFAULT_STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
    "to", "was", "will", "with", "what", "when", "where", "who", "how",
    "this", "these", "those", "they", "their", "there", "which", "can",
    "could", "would", "should", "do", "does", "did", "have", "had", "been",
})

NEUTRAL_SCORE = 0.5
COSINE_DISTANCE_MAX = 2.0


def _is_missing(value: Optional[float]) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def normalize_score(value: Optional[float], fallback: Optional[float] = None) -> float:
    """Convert a raw distance/similarity into a similarity in [0, 1].

    Args:
        value: Raw score reported by the vector store (may be None/NaN).
        fallback: Distance stored alongside the chunk (e.g. metadata
            "_distance"), used when value is missing.

    Returns:
        Similarity in [0, 1]; 0.5 when neither input carries a value.
    """
    distance = fallback if _is_missing(value) else value

    if _is_missing(distance):
        return NEUTRAL_SCORE

    distance = float(distance)
    if distance < 0:
        return 1.0 / (1.0 + abs(distance))
    if distance <= COSINE_DISTANCE_MAX:
        return max(0.0, 1.0 - distance / COSINE_DISTANCE_MAX)
    return 1.0 / (1.0 + distance)


class KeywordScorer:
    """BM25-like keyword relevance for a single text.

    Example:
        scorer = KeywordScorer()
        keywords = scorer.extract_keywords("How does Python handle memory?")
        # -> ["python", "handle", "memory"]
        score = scorer.score("Python manages memory with reference counting", keywords)
    """

    def __init__(
        self,
        stop_words: Optional[Iterable[str]] = None,
        min_keyword_length: int = 3,
    ):
        """Initialize the keyword scorer.

        Args:
            stop_words: Stop-word set. Defaults to DEFAULT_STOP_WORDS.
            min_keyword_length: Shortest token kept as a keyword.
        """
        self.stop_words = frozenset(stop_words) if stop_words is not None else DEFAULT_STOP_WORDS
        self.min_keyword_length = min_keyword_length

    def extract_keywords(
        self,
        query: str,
        custom_stop_words: Optional[Iterable[str]] = None,
    ) -> list[str]:
        """Extract lower-cased, de-duplicated keywords from a query.

        Args:
            query: Query text.
            custom_stop_words: Extra stop words for this call only.

        Returns:
            Keywords in order of first appearance.
        """
        stop_words = self.stop_words
        if custom_stop_words:
            stop_words = stop_words | {w.lower() for w in custom_stop_words}

        cleaned = re.sub(r"[^\w\s]", " ", query.lower())
        keywords: list[str] = []
        for token in cleaned.split():
            if len(token) < self.min_keyword_length or token in stop_words:
                continue
            if token not in keywords:
                keywords.append(token)
        return keywords

    def score(self, text: str, keywords: list[str], boosting: bool = True) -> float:
        """Score a text against pre-extracted keywords.

        Args:
            text: Document text.
            keywords: Keywords from extract_keywords.
            boosting: Weight keywords that appear early in the text higher.

        Returns:
            Keyword relevance in [0, 1].
        """
        if not keywords:
            return 0.0

        text_lower = text.lower()
        word_count = len(text_lower.split())
        if word_count == 0:
            return 0.0

        length_norm = 1.0 / (1.0 + math.log(1.0 + word_count / 100.0))

        total = 0.0
        for keyword in keywords:
            matches = list(re.finditer(rf"\b{re.escape(keyword)}\b", text_lower))
            if not matches:
                continue

            tf = math.log(1.0 + len(matches))

            position_boost = 1.0
            if boosting:
                # Position is measured in words so the boost stays within (1, 2]
                first_word_index = len(text_lower[: matches[0].start()].split())
                position_boost = 1.0 + (1.0 - first_word_index / word_count)

            total += tf * length_norm * position_boost

        return min(1.0, total / len(keywords))

    def matched_keywords(self, text: str, keywords: list[str]) -> list[str]:
        """Keywords that occur in text as whole words (for explanations)."""
        text_lower = text.lower()
        return [kw for kw in keywords if re.search(rf"\b{re.escape(kw)}\b", text_lower)]
