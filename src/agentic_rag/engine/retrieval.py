"""Retrieval strategies for the agentic RAG core.

This module provides four ways to turn a query into ranked chunks:

1. Hybrid Search (vector + keyword, weighted sum)
   - Fetches max(3k, 20) vector candidates, normalizes their distances,
     scores them with the BM25-like keyword scorer and combines both
   - Scores stay in [0, 1]

2. Vector-only / keyword-only search
   - Same primitives as hybrid search with one side switched off

3. BM25 (in-memory, BM25+ over the whole corpus)
   - Needs the corpus in memory: call initialize(chunks) first

4. Ensemble Search (Reciprocal Rank Fusion)
   - Fuses the vector ranking with the BM25 ranking by rank position only
   - Score = sum(weight / (60 + rank + 1)); these are fusion scores,
     not probabilities

Usage:
    hybrid = HybridRetriever(vector_store)
    results = await hybrid.search(query, k=5)

    ensemble = EnsembleRetriever(vector_store)
    ensemble.initialize(chunks)
    results = await ensemble.search(query, k=5)
"""

import logging
import re
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

import numpy as np

from agentic_rag.core.errors import InvalidConfigurationError, NotInitializedError
from agentic_rag.engine.models import Chunk, RetrievalResult, RetrievalStrategy, dedup_key
from agentic_rag.engine.scoring import KeywordScorer, normalize_score

if TYPE_CHECKING:
    from agentic_rag.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

# Reciprocal Rank Fusion smoothing constant
RRF_K = 60

DEFAULT_K = 5

# Stores that report no score may keep the distance in chunk metadata
DISTANCE_METADATA_KEY = "_distance"


def _average_score(results: Sequence[RetrievalResult]) -> float:
    if not results:
        return 0.0
    return sum(r.score for r in results) / len(results)


class HybridRetriever:
    """Hybrid retriever combining vector similarity and keyword matching.

    Fusion strategy: weighted sum of normalized scores
    - score = vector_weight * vector_score + keyword_weight * keyword_score
    - vector_score comes from normalize_score (distance -> similarity)
    - keyword_score comes from KeywordScorer (BM25-like, [0, 1])

    Example:
        retriever = HybridRetriever(vector_store)
        results = await retriever.search("python memory model", k=5)
        for r in results:
            print(r.score, r.explanation)
    """

    DEFAULT_VECTOR_WEIGHT = 0.7
    DEFAULT_KEYWORD_WEIGHT = 0.3
    DEFAULT_MIN_SIMILARITY = 0.0

    def __init__(
        self,
        vector_store: "VectorStore",
        keyword_scorer: Optional[KeywordScorer] = None,
    ):
        """Initialize hybrid retriever.

        Args:
            vector_store: Store providing similarity_search_with_score.
            keyword_scorer: Keyword scorer (default stop words if None).
        """
        self.vector_store = vector_store
        self.keyword_scorer = keyword_scorer or KeywordScorer()

        logger.info("HybridRetriever initialized")

    def _vector_score(self, chunk: Chunk, raw: Optional[float]) -> float:
        return normalize_score(raw, chunk.metadata.get(DISTANCE_METADATA_KEY))

    async def search(
        self,
        query: str,
        k: int = DEFAULT_K,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        keyword_boosting: bool = True,
        custom_stop_words: Optional[Iterable[str]] = None,
    ) -> list[RetrievalResult]:
        """Retrieve chunks using hybrid search.

        Args:
            query: Search query
            k: Number of final results to return
            vector_weight: Weight of the semantic score (0-1)
            keyword_weight: Weight of the keyword score (0-1)
            min_similarity: Drop results scoring below this
            keyword_boosting: Boost keywords that appear early in a chunk
            custom_stop_words: Extra stop words for this search

        Returns:
            Up to k results sorted by descending hybrid score
        """
        if vector_weight < 0 or keyword_weight < 0 or vector_weight + keyword_weight > 1.0 + 1e-9:
            raise InvalidConfigurationError(
                f"Hybrid weights must be non-negative and sum to at most 1 "
                f"(vector={vector_weight}, keyword={keyword_weight})"
            )

        logger.info(
            f"Hybrid search: query='{query[:100]}', k={k}, "
            f"vector_weight={vector_weight}, keyword_weight={keyword_weight}"
        )

        # Fetch more candidates than needed for re-ranking
        candidate_count = max(k * 3, 20)
        candidates = await self.vector_store.similarity_search_with_score(query, candidate_count)

        keywords = self.keyword_scorer.extract_keywords(query, custom_stop_words)
        logger.debug(f"Keywords extracted: {keywords}")

        results = []
        for chunk, raw in candidates:
            vector_score = self._vector_score(chunk, raw)
            keyword_score = self.keyword_scorer.score(chunk.text, keywords, keyword_boosting)
            results.append(
                RetrievalResult(
                    chunk=chunk,
                    score=vector_weight * vector_score + keyword_weight * keyword_score,
                    source_strategy=RetrievalStrategy.HYBRID,
                    vector_score=vector_score,
                    keyword_score=keyword_score,
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        results = [r for r in results if r.score >= min_similarity][:k]

        self._add_explanations(results, keywords)

        logger.info(
            f"Hybrid search: {len(candidates)} candidates → {len(results)} results, "
            f"avg={_average_score(results):.3f}"
        )
        return results

    async def vector_search(self, query: str, k: int = DEFAULT_K) -> list[RetrievalResult]:
        """Vector-only search; scores are normalized similarities."""
        logger.debug(f"Vector-only search: query='{query[:100]}', k={k}")

        candidates = await self.vector_store.similarity_search_with_score(query, k)
        results = []
        for chunk, raw in candidates:
            vector_score = self._vector_score(chunk, raw)
            results.append(
                RetrievalResult(
                    chunk=chunk,
                    score=vector_score,
                    source_strategy=RetrievalStrategy.VECTOR,
                    vector_score=vector_score,
                )
            )

        # Stores usually return nearest-first already; the sort makes it a guarantee
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:k]

    async def keyword_search(self, query: str, k: int = DEFAULT_K) -> list[RetrievalResult]:
        """Keyword-only search over a superset of vector candidates."""
        logger.debug(f"Keyword-only search: query='{query[:100]}', k={k}")

        candidate_count = max(k * 5, 50)
        candidates = await self.vector_store.similarity_search_with_score(query, candidate_count)
        keywords = self.keyword_scorer.extract_keywords(query)

        results = []
        for chunk, _ in candidates:
            keyword_score = self.keyword_scorer.score(chunk.text, keywords)
            results.append(
                RetrievalResult(
                    chunk=chunk,
                    score=keyword_score,
                    source_strategy=RetrievalStrategy.BM25,
                    keyword_score=keyword_score,
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:k]

    def _add_explanations(self, results: list[RetrievalResult], keywords: list[str]) -> None:
        """Attach human-readable score breakdowns."""
        for result in results:
            parts = []
            if result.vector_score > 0:
                parts.append(f"Semantic: {result.vector_score:.1%}")
            if result.keyword_score > 0:
                matched = self.keyword_scorer.matched_keywords(result.text, keywords)
                if matched:
                    parts.append(f"Keywords: {result.keyword_score:.1%} ({', '.join(matched)})")
            parts.append(f"Overall: {result.score:.1%}")
            result.explanation = " | ".join(parts)


class BM25Index:
    """BM25 index for keyword-based retrieval.

    BM25 (Best Matching 25) is a bag-of-words retrieval function.
    Excellent for exact keyword matching, complements semantic search.

    Uses the BM25+ variant: its IDF stays positive for terms found in half
    (or all) of the corpus, where Okapi IDF drops to zero or below. A
    document matches when it shares at least one token with the query.
    """

    def __init__(self, documents: Optional[list[str]] = None):
        """Initialize BM25 index.

        Args:
            documents: List of document texts to index
        """
        self._bm25 = None
        self._documents: list[str] = []
        self._token_sets: list[set[str]] = []

        if documents:
            self.index(documents)

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        """Lowercase and split on non-alphanumeric."""
        return re.findall(r"\w+", text.lower())

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def is_built(self) -> bool:
        return self._bm25 is not None

    def index(self, documents: list[str]) -> None:
        """Index documents for BM25 search."""
        try:
            from rank_bm25 import BM25Plus
        except ImportError:
            logger.error("rank-bm25 required for BM25 indexing")
            raise

        self._documents = list(documents)
        tokenized = [self._tokenize(doc) for doc in self._documents]
        self._token_sets = [set(tokens) for tokens in tokenized]
        self._bm25 = BM25Plus(tokenized)

        logger.info(f"BM25 index built with {len(documents)} documents")

    def search(self, query: str, top_k: int = 10) -> list[tuple[int, float]]:
        """Search for relevant documents.

        Returns:
            (doc_index, score) tuples for documents sharing at least one
            term with the query, best first
        """
        if self._bm25 is None:
            raise NotInitializedError("BM25 index not built. Call index() first.")

        tokenized_query = self._tokenize(query)
        if not tokenized_query:
            return []

        query_tokens = set(tokenized_query)
        matching = np.array(
            [i for i, tokens in enumerate(self._token_sets) if tokens & query_tokens],
            dtype=np.int64,
        )
        if matching.size == 0:
            return []

        scores = np.asarray(self._bm25.get_scores(tokenized_query))[matching]

        # Stable sort so equal scores keep corpus order
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [(int(matching[i]), float(scores[i])) for i in order]


class _CorpusIndexMixin:
    """In-memory corpus + BM25 index shared by the BM25 and ensemble retrievers."""

    _name = "retriever"

    def _reset_index(self) -> None:
        self._chunks: list[Chunk] = []
        self._bm25_index: Optional[BM25Index] = None

    def initialize(self, chunks: list[Chunk]) -> None:
        """Build the keyword index over the full corpus."""
        if not chunks:
            raise NotInitializedError(f"{self._name} requires documents to initialize BM25")

        self._chunks = list(chunks)
        self._bm25_index = BM25Index([c.text for c in self._chunks])

        logger.info(f"{self._name} initialized with {len(self._chunks)} documents")

    def refresh(self, chunks: list[Chunk]) -> None:
        """Drop the current index and rebuild it from new chunks."""
        logger.info(f"Refreshing {self._name}")
        self._reset_index()
        self.initialize(chunks)

    def is_initialized(self) -> bool:
        return self._bm25_index is not None

    @property
    def document_count(self) -> int:
        return len(self._chunks)

    def _require_index(self) -> BM25Index:
        if self._bm25_index is None:
            raise NotInitializedError(f"{self._name} not initialized. Call initialize() first.")
        return self._bm25_index

    def _bm25_ranked(self, query: str, top_k: int) -> list[tuple[Chunk, float]]:
        hits = self._require_index().search(query, top_k=top_k)
        return [(self._chunks[idx], score) for idx, score in hits]


class BM25Retriever(_CorpusIndexMixin):
    """Keyword-only retriever using BM25+ over an in-memory corpus.

    Scores are divided by the best score of the returned list, so the top
    result scores 1.0 and all scores lie in [0, 1].
    """

    _name = "BM25Retriever"

    def __init__(self, chunks: Optional[list[Chunk]] = None):
        self._reset_index()
        if chunks:
            self.initialize(chunks)

    async def search(self, query: str, k: int = DEFAULT_K) -> list[RetrievalResult]:
        self._require_index()
        logger.info(f"BM25 search: query='{query[:100]}', k={k}")

        ranked = self._bm25_ranked(query, k)
        best = ranked[0][1] if ranked else 0.0

        results = []
        for chunk, score in ranked:
            # Ranked chunks all share a query term
            normalized = min(1.0, max(0.0, score / best)) if best > 0 else 1.0
            results.append(
                RetrievalResult(
                    chunk=chunk,
                    score=normalized,
                    source_strategy=RetrievalStrategy.BM25,
                    keyword_score=normalized,
                )
            )

        logger.info(f"BM25 search complete: {len(results)} results")
        return results


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[Chunk]],
    weights: Sequence[float],
) -> list[tuple[Chunk, float]]:
    """Fuse ranked chunk lists with weighted Reciprocal Rank Fusion.

    A chunk at 0-based rank r of list i contributes weights[i] / (60 + r + 1).
    Chunks are identified by dedup_key, so a chunk found by several lists
    sums its contributions. The first copy seen is the one returned.

    Returns:
        (chunk, fused_score) pairs, best first (ties keep first-seen order)
    """
    if len(weights) != len(ranked_lists):
        raise ValueError("Length of weights must match number of ranked lists")

    fused: dict[str, list] = {}
    for ranked, weight in zip(ranked_lists, weights):
        for rank, chunk in enumerate(ranked):
            contribution = weight / (RRF_K + rank + 1)
            key = dedup_key(chunk)
            if key in fused:
                fused[key][1] += contribution
            else:
                fused[key] = [chunk, contribution]

    ordered = sorted(fused.values(), key=lambda item: item[1], reverse=True)
    return [(chunk, score) for chunk, score in ordered]


class EnsembleRetriever(_CorpusIndexMixin):
    """Ensemble retriever fusing vector and BM25 rankings with RRF.

    RRF ignores raw score scales entirely, which makes it robust when the
    vector store and BM25 produce incomparable scores. BM25 needs the full
    corpus in memory, so initialize(chunks) must run before search().

    Example:
        retriever = EnsembleRetriever(vector_store)
        retriever.initialize(all_chunks)
        results = await retriever.search("python vs javascript", k=5)
    """

    _name = "EnsembleRetriever"

    DEFAULT_VECTOR_WEIGHT = 0.5
    DEFAULT_BM25_WEIGHT = 0.5

    def __init__(self, vector_store: "VectorStore", chunks: Optional[list[Chunk]] = None):
        self.vector_store = vector_store
        self._reset_index()
        if chunks:
            self.initialize(chunks)

        logger.info("EnsembleRetriever created")

    async def search(
        self,
        query: str,
        k: int = DEFAULT_K,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        bm25_weight: float = DEFAULT_BM25_WEIGHT,
    ) -> list[RetrievalResult]:
        """Retrieve chunks by fusing vector and BM25 rankings.

        Returns:
            Up to k results; score is the RRF fusion score (not in [0, 1])
        """
        self._require_index()

        logger.info(
            f"Ensemble search: query='{query[:100]}', k={k}, "
            f"vector_weight={vector_weight}, bm25_weight={bm25_weight}"
        )

        fetch_count = k * 3
        vector_ranked = await self.vector_store.similarity_search(query, fetch_count)
        bm25_ranked = [chunk for chunk, _ in self._bm25_ranked(query, fetch_count)]

        fused = reciprocal_rank_fusion([vector_ranked, bm25_ranked], [vector_weight, bm25_weight])

        results = [
            RetrievalResult(chunk=chunk, score=score, source_strategy=RetrievalStrategy.ENSEMBLE)
            for chunk, score in fused[:k]
        ]

        logger.info(
            f"Ensemble search: {len(vector_ranked)} vector + {len(bm25_ranked)} BM25 "
            f"→ {len(results)} results"
        )
        return results
