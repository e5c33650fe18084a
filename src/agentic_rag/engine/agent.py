"""RAG Agent - agentic retrieval orchestrator.

Design decisions:
- Plan first, then retrieve: complex queries are decomposed into
  sub-queries that run in parallel or in plan order
- One retriever per strategy (hybrid, vector, ensemble, bm25), chosen per call
- A failing sub-query contributes nothing; only API misuse
  (NotInitializedError, InvalidConfigurationError) reaches the caller
- Collaborators are injected; nothing is cached at module level

Query pipeline:
    1. Plan      QueryPlanner -> QueryPlan
    2. Execute   every sub-query against the chosen retriever
    3. Merge     concatenate sub-query results in plan order
    4. Iterate   while confidence < threshold and iterations < max
    5. Dedup     first occurrence of each chunk wins
    6. Rank      stable sort by score, descending
    7. Truncate  first top_k results

Iteration baseline:
    Without use_llm, a plan that misses the confidence threshold is run
    exactly once more and the loop stops. With use_llm, the LLM planner's
    refine_plan (or the LLM evaluator's suggested query) produces a new plan
    for each further round, up to max_iterations.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union

from agentic_rag.core.config import RAGSettings, settings as default_settings
from agentic_rag.core.errors import InvalidConfigurationError, NotInitializedError
from agentic_rag.engine.evaluator import (
    Evaluation,
    LLMResultEvaluator,
    ResultEvaluator,
    average_score,
)
from agentic_rag.engine.models import Chunk, RetrievalResult, RetrievalStrategy, dedup_key
from agentic_rag.engine.planner import QueryPlan, QueryPlanner, RefinementContext, SubQuery
from agentic_rag.engine.retrieval import BM25Retriever, EnsembleRetriever, HybridRetriever
from agentic_rag.engine.scoring import KeywordScorer

if TYPE_CHECKING:
    from agentic_rag.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

# API misuse: surfaced to the caller instead of degrading to empty results
FATAL_ERRORS = (NotInitializedError, InvalidConfigurationError)


# =============================================================================
# Result Dataclasses
# =============================================================================

@dataclass
class ProgressEvent:
    """Progress notification written to the optional progress queue."""

    stage: str  # planning | retrieval | evaluation | refinement | complete
    message: str
    iteration: int = 0


@dataclass
class RAGResult:
    """Outcome of one RAGAgent.query call."""

    query: str
    plan: QueryPlan
    results: list[RetrievalResult]
    iterations: int
    avg_confidence: float
    confidence_met: bool
    execution_time_ms: float = 0.0
    evaluation: Optional[Evaluation] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/display."""
        return {
            "query": self.query,
            "plan": self.plan.model_dump(),
            "results": [
                {
                    "id": r.chunk.id,
                    "score": round(r.score, 4),
                    "strategy": r.source_strategy.value,
                    "sub_query": r.sub_query,
                    "explanation": r.explanation,
                    "text_preview": r.text[:200],
                }
                for r in self.results
            ],
            "iterations": self.iterations,
            "avg_confidence": round(self.avg_confidence, 4),
            "confidence_met": self.confidence_met,
            "execution_time_ms": round(self.execution_time_ms, 1),
            "evaluation": self.evaluation.model_dump() if self.evaluation else None,
            "metadata": dict(self.metadata),
        }


# =============================================================================
# Merge helpers
# =============================================================================

def deduplicate_results(results: list[RetrievalResult]) -> list[RetrievalResult]:
    """Keep the first occurrence of every chunk (by dedup key), preserving order."""
    seen: set[str] = set()
    unique: list[RetrievalResult] = []
    for result in results:
        key = dedup_key(result.chunk)
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def rank_results(results: list[RetrievalResult]) -> list[RetrievalResult]:
    """Stable sort by score, descending."""
    return sorted(results, key=lambda r: r.score, reverse=True)


def _resolve_strategy(value: Union[str, RetrievalStrategy]) -> RetrievalStrategy:
    try:
        return RetrievalStrategy(value)
    except ValueError as e:
        valid = ", ".join(s.value for s in RetrievalStrategy)
        raise InvalidConfigurationError(
            f"Unknown retrieval strategy '{value}' (expected one of: {valid})"
        ) from e


# =============================================================================
# Agent
# =============================================================================

class RAGAgent:
    """Agentic retrieval orchestrator.

    Example:
        agent = RAGAgent(vector_store)
        await agent.initialize()            # only needed for ensemble / bm25

        result = await agent.query("Python vs JavaScript for web backends")
        for r in result.results:
            print(f"{r.score:.3f} {r.text[:80]}")

        # Fast path: no planning, no iteration
        hits = await agent.simple_query("asyncio event loop", k=5)
    """

    def __init__(
        self,
        vector_store: "VectorStore",
        settings: Optional[RAGSettings] = None,
        planner: Optional[QueryPlanner] = None,
        evaluator: Optional[ResultEvaluator] = None,
        llm_evaluator: Optional[LLMResultEvaluator] = None,
        keyword_scorer: Optional[KeywordScorer] = None,
    ):
        """Initialize the agent.

        Args:
            vector_store: Store used by the hybrid, vector and ensemble strategies.
            settings: Configuration (defaults to the module-level settings).
            planner: Query planner. Defaults to a heuristic QueryPlanner.
            evaluator: Heuristic evaluator attached to every result.
            llm_evaluator: Optional LLM evaluator used for re-planning when use_llm.
            keyword_scorer: Keyword scorer shared by the hybrid strategies.
        """
        self.settings = settings or default_settings
        self.planner = planner or QueryPlanner()
        self.evaluator = evaluator or ResultEvaluator()
        self.llm_evaluator = llm_evaluator
        self.keyword_scorer = keyword_scorer or KeywordScorer(
            min_keyword_length=self.settings.min_keyword_length
        )

        self.vector_store = vector_store
        self.hybrid_retriever = HybridRetriever(vector_store, self.keyword_scorer)
        self.ensemble_retriever = EnsembleRetriever(vector_store)
        self.bm25_retriever = BM25Retriever()

        logger.info(
            f"RAGAgent initialized: strategy={self.settings.retrieval_strategy}, "
            f"top_k={self.settings.top_k}, max_iterations={self.settings.max_iterations}"
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self, chunks: Optional[list[Chunk]] = None) -> int:
        """Build the in-memory keyword indices (ensemble and bm25 strategies).

        Args:
            chunks: Corpus to index. Loaded from the vector store when omitted.

        Returns:
            Number of indexed chunks

        Raises:
            NotInitializedError: The corpus is empty.
        """
        if chunks is None:
            chunks = await self.vector_store.all_chunks(self.settings.corpus_fetch_limit)
            logger.info(f"Loaded {len(chunks)} chunks from vector store for keyword indexing")

        self.ensemble_retriever.initialize(chunks)
        self.bm25_retriever.initialize(chunks)
        return len(chunks)

    def is_initialized(self) -> bool:
        return self.ensemble_retriever.is_initialized() and self.bm25_retriever.is_initialized()

    def set_vector_store(self, vector_store: "VectorStore") -> None:
        """Swap the vector store. Keyword indices must be rebuilt afterwards."""
        self.vector_store = vector_store
        self.hybrid_retriever = HybridRetriever(vector_store, self.keyword_scorer)
        self.ensemble_retriever = EnsembleRetriever(vector_store)
        self.bm25_retriever = BM25Retriever()
        logger.info("RAGAgent vector store replaced; keyword indices cleared")

    # =========================================================================
    # Public API
    # =========================================================================

    async def query(
        self,
        query: str,
        top_k: Optional[int] = None,
        retrieval_strategy: Optional[Union[str, RetrievalStrategy]] = None,
        enable_iterative_refinement: Optional[bool] = None,
        max_iterations: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        use_llm: Optional[bool] = None,
        topic_name: str = "",
        workspace_context: str = "",
        progress: Optional[asyncio.Queue] = None,
    ) -> RAGResult:
        """Plan, retrieve, iterate and rank results for a query.

        Any argument left as None falls back to the agent's settings.

        Raises:
            NotInitializedError: ensemble/bm25 requested before initialize().
            InvalidConfigurationError: Unknown strategy or invalid weights.
        """
        start_time = time.perf_counter()

        top_k = top_k if top_k is not None else self.settings.top_k
        strategy = _resolve_strategy(
            retrieval_strategy if retrieval_strategy is not None else self.settings.retrieval_strategy
        )
        refine = (
            enable_iterative_refinement
            if enable_iterative_refinement is not None
            else self.settings.enable_iterative_refinement
        )
        max_iterations = max_iterations if max_iterations is not None else self.settings.max_iterations
        threshold = (
            confidence_threshold if confidence_threshold is not None else self.settings.confidence_threshold
        )
        use_llm = use_llm if use_llm is not None else self.settings.use_llm

        if top_k < 1:
            raise InvalidConfigurationError(f"top_k must be >= 1 (got {top_k})")
        if max_iterations < 1:
            raise InvalidConfigurationError(f"max_iterations must be >= 1 (got {max_iterations})")
        self._require_strategy(strategy)

        logger.info(
            f"RAG query: '{query[:100]}' (strategy={strategy.value}, top_k={top_k}, "
            f"refine={refine}, max_iterations={max_iterations}, use_llm={use_llm})"
        )

        # Step 1: Plan
        self._emit(progress, "planning", "Analyzing query and creating search plan")
        plan = await self.planner.plan(
            query,
            max_sub_queries=self.settings.max_sub_queries,
            default_top_k=top_k,
            use_llm=use_llm,
            topic_name=topic_name,
            workspace_context=workspace_context,
        )
        self._emit(
            progress, "planning",
            f"Plan: {plan.complexity} query, {len(plan.sub_queries)} sub-queries ({plan.strategy})",
        )

        # Steps 2-4: Execute, merge, iterate
        accumulated: list[RetrievalResult] = []
        executed: list[str] = []
        current_plan = plan
        plan_reused = False
        iterations = 0
        avg_confidence = 0.0

        while True:
            iterations += 1
            self._emit(
                progress, "retrieval",
                f"Executing {len(current_plan.sub_queries)} sub-queries", iterations,
            )

            accumulated.extend(await self._execute_plan(current_plan, strategy))
            executed.extend(sq.query for sq in current_plan.sub_queries)
            avg_confidence = average_score(accumulated)

            logger.info(
                f"Iteration {iterations}: {len(accumulated)} accumulated results, "
                f"avg_confidence={avg_confidence:.3f}"
            )

            if not refine or plan.complexity == "simple":
                break
            if avg_confidence >= threshold:
                logger.info(f"Confidence threshold met ({avg_confidence:.3f} >= {threshold})")
                break
            if iterations >= max_iterations:
                logger.info(f"Max iterations reached ({max_iterations})")
                break

            self._emit(
                progress, "evaluation",
                f"Confidence {avg_confidence:.3f} below threshold {threshold}", iterations,
            )

            next_plan = None
            if use_llm:
                next_plan = await self._refine_plan(
                    query, current_plan, accumulated, executed, avg_confidence, threshold,
                    iterations, max_iterations, topic_name, workspace_context,
                )
            if next_plan is None:
                if plan_reused:
                    break
                plan_reused = True
                next_plan = current_plan

            self._emit(progress, "refinement", next_plan.explanation or "Refining search", iterations)
            current_plan = next_plan

        # Steps 5-7: Dedup, rank, truncate
        unique = deduplicate_results(accumulated)
        final_results = rank_results(unique)[:top_k]

        evaluation = self.evaluator.evaluate(
            query,
            final_results,
            confidence_threshold=threshold,
            current_iteration=iterations,
            max_iterations=max_iterations,
        )

        result = RAGResult(
            query=query,
            plan=plan,
            results=final_results,
            iterations=iterations,
            avg_confidence=avg_confidence,
            confidence_met=avg_confidence >= threshold,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
            evaluation=evaluation,
            metadata={
                "total_results": len(accumulated),
                "unique_documents": len(unique),
                "strategy": strategy.value,
                "sub_queries_executed": len(executed),
            },
        )

        self._emit(
            progress, "complete",
            f"Retrieved {len(final_results)} results in {iterations} iteration(s)", iterations,
        )
        logger.info(
            f"RAG query complete: {len(final_results)} results, iterations={iterations}, "
            f"avg_confidence={avg_confidence:.3f}, time={result.execution_time_ms:.0f}ms"
        )
        return result

    async def simple_query(
        self,
        query: str,
        k: int = 5,
        strategy: Union[str, RetrievalStrategy] = RetrievalStrategy.HYBRID,
    ) -> list[RetrievalResult]:
        """Retrieve with the raw query: no planning, no iteration."""
        if k < 1:
            raise InvalidConfigurationError(f"k must be >= 1 (got {k})")
        resolved = _resolve_strategy(strategy)
        self._require_strategy(resolved)
        return await self._execute_sub_query(
            SubQuery(query=query, reasoning="Direct search", top_k=k), resolved
        )

    # =========================================================================
    # Execution
    # =========================================================================

    def _require_strategy(self, strategy: RetrievalStrategy) -> None:
        if strategy is RetrievalStrategy.ENSEMBLE and not self.ensemble_retriever.is_initialized():
            raise NotInitializedError("Ensemble retriever not initialized. Call initialize() first.")
        if strategy is RetrievalStrategy.BM25 and not self.bm25_retriever.is_initialized():
            raise NotInitializedError("BM25 retriever not initialized. Call initialize() first.")

    async def _retrieve(self, query: str, k: int, strategy: RetrievalStrategy) -> list[RetrievalResult]:
        if strategy is RetrievalStrategy.HYBRID:
            return await self.hybrid_retriever.search(
                query,
                k=k,
                vector_weight=self.settings.hybrid_vector_weight,
                keyword_weight=self.settings.hybrid_keyword_weight,
                min_similarity=self.settings.min_similarity,
                keyword_boosting=self.settings.keyword_boosting,
                custom_stop_words=self.settings.extra_stop_words,
            )
        if strategy is RetrievalStrategy.VECTOR:
            return await self.hybrid_retriever.vector_search(query, k)
        if strategy is RetrievalStrategy.ENSEMBLE:
            return await self.ensemble_retriever.search(
                query,
                k=k,
                vector_weight=self.settings.ensemble_vector_weight,
                bm25_weight=self.settings.ensemble_bm25_weight,
            )
        return await self.bm25_retriever.search(query, k)

    async def _execute_sub_query(
        self, sub_query: SubQuery, strategy: RetrievalStrategy
    ) -> list[RetrievalResult]:
        """Run one sub-query. Failures and timeouts yield no results."""
        k = sub_query.top_k or self.settings.top_k
        timeout = self.settings.sub_query_timeout
        try:
            retrieval = self._retrieve(sub_query.query, k, strategy)
            if timeout is not None:
                results = await asyncio.wait_for(retrieval, timeout)
            else:
                results = await retrieval
        except FATAL_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Sub-query timed out after {timeout}s: '{sub_query.query[:100]}'")
            return []
        except Exception as e:
            logger.warning(f"Sub-query failed: '{sub_query.query[:100]}': {e}")
            return []

        for result in results:
            result.sub_query = sub_query.query
        return results

    async def _execute_plan(
        self, plan: QueryPlan, strategy: RetrievalStrategy
    ) -> list[RetrievalResult]:
        """Execute all sub-queries; results are concatenated in plan order."""
        if plan.strategy == "parallel":
            outcomes = await asyncio.gather(
                *(self._execute_sub_query(sq, strategy) for sq in plan.sub_queries),
                return_exceptions=True,
            )
            merged: list[RetrievalResult] = []
            for outcome in outcomes:
                # Only fatal errors and cancellation get past _execute_sub_query
                if isinstance(outcome, BaseException):
                    raise outcome
                merged.extend(outcome)
            return merged

        merged = []
        for sq in plan.sub_queries:
            merged.extend(await self._execute_sub_query(sq, strategy))
        return merged

    # =========================================================================
    # Refinement
    # =========================================================================

    async def _refine_plan(
        self,
        query: str,
        plan: QueryPlan,
        accumulated: list[RetrievalResult],
        executed: list[str],
        avg_confidence: float,
        threshold: float,
        iteration: int,
        max_iterations: int,
        topic_name: str,
        workspace_context: str,
    ) -> Optional[QueryPlan]:
        """Ask the LLM collaborators for a revised plan (None if unavailable)."""
        unique = deduplicate_results(accumulated)
        evaluation: Optional[Evaluation] = None
        if self.llm_evaluator is not None:
            evaluation = await self.llm_evaluator.evaluate(
                query, unique, plan, iteration, max_iterations, topic_name, workspace_context,
            )
        if evaluation is None:
            evaluation = self.evaluator.evaluate(
                query, unique, threshold, iteration, max_iterations
            )

        refined: Optional[QueryPlan] = None
        refine_plan = getattr(getattr(self.planner, "llm_planner", None), "refine_plan", None)
        if refine_plan is not None:
            context = RefinementContext(
                accumulated_results=accumulated,
                executed_sub_queries=executed,
                avg_confidence=avg_confidence,
                confidence_threshold=threshold,
                unique_documents=len(unique),
                gaps=list(evaluation.gaps),
            )
            try:
                refined = await refine_plan(plan, context)
            except Exception as e:
                logger.warning(f"Plan refinement failed: {e}")
                refined = None

        if refined is None and evaluation.should_retry and self.llm_evaluator is not None:
            follow_up = evaluation.suggested_query or " ".join([query, *evaluation.gaps])
            if follow_up.strip() and follow_up.strip() != query.strip():
                refined = self.planner.heuristic_plan(follow_up, self.settings.max_sub_queries)

        if refined is None:
            return None

        logger.info(f"Refined plan: {len(refined.sub_queries)} sub-queries")
        return self.planner.finalize_plan(
            refined, query, self.settings.max_sub_queries, plan.sub_queries[0].top_k or self.settings.top_k
        )

    @staticmethod
    def _emit(
        progress: Optional[asyncio.Queue], stage: str, message: str, iteration: int = 0
    ) -> None:
        if progress is None:
            return
        try:
            progress.put_nowait(ProgressEvent(stage=stage, message=message, iteration=iteration))
        except asyncio.QueueFull:
            logger.debug(f"Progress queue full, dropped event: {stage}")
