"""Agentic retrieval engine - planning, multi-strategy retrieval and iteration.

Components:
- RAGAgent: Orchestrator (plan -> execute -> merge -> iterate -> dedup -> rank)
- QueryPlanner: Heuristic query decomposition with optional LLM planner
- HybridRetriever: Vector + keyword weighted fusion
- EnsembleRetriever: Vector + BM25 reciprocal rank fusion
- BM25Retriever: Keyword-only BM25 over an in-memory corpus
- ResultEvaluator: Heuristic sufficiency check

Usage:
    from agentic_rag.engine import RAGAgent

    agent = RAGAgent(vector_store)
    result = await agent.query("Python vs JavaScript")

    # Ensemble / BM25 strategies need the corpus in memory
    await agent.initialize()
    result = await agent.query("...", retrieval_strategy="ensemble")
"""

from agentic_rag.engine.agent import (
    ProgressEvent,
    RAGAgent,
    RAGResult,
    deduplicate_results,
    rank_results,
)
from agentic_rag.engine.evaluator import (
    Evaluation,
    LLMResultEvaluator,
    ResultEvaluator,
    decode_evaluation,
)
from agentic_rag.engine.models import Chunk, RetrievalResult, RetrievalStrategy, dedup_key
from agentic_rag.engine.planner import (
    LLMQueryPlanner,
    QueryPlan,
    QueryPlanner,
    RefinementContext,
    SubQuery,
    decode_plan,
)
from agentic_rag.engine.retrieval import (
    RRF_K,
    BM25Index,
    BM25Retriever,
    EnsembleRetriever,
    HybridRetriever,
    reciprocal_rank_fusion,
)
from agentic_rag.engine.scoring import DEFAULT_STOP_WORDS, KeywordScorer, normalize_score

__all__ = [
    # Orchestration
    "RAGAgent",
    "RAGResult",
    "ProgressEvent",
    "deduplicate_results",
    "rank_results",
    # Planning
    "QueryPlanner",
    "LLMQueryPlanner",
    "QueryPlan",
    "SubQuery",
    "RefinementContext",
    "decode_plan",
    # Evaluation
    "Evaluation",
    "ResultEvaluator",
    "LLMResultEvaluator",
    "decode_evaluation",
    # Retrieval
    "HybridRetriever",
    "EnsembleRetriever",
    "BM25Retriever",
    "BM25Index",
    "reciprocal_rank_fusion",
    "RRF_K",
    # Scoring and models
    "KeywordScorer",
    "normalize_score",
    "DEFAULT_STOP_WORDS",
    "Chunk",
    "RetrievalResult",
    "RetrievalStrategy",
    "dedup_key",
]
