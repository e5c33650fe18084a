"""Result evaluation: is the retrieved evidence good enough to stop?

The heuristic evaluator is what RAGAgent attaches to every RAGResult.
LLMResultEvaluator is optional and only consulted for gap-driven
re-planning when the agent runs with use_llm.
"""

import json
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from agentic_rag.core.errors import DecodeError
from agentic_rag.engine.models import RetrievalResult
from agentic_rag.engine.planner import QueryPlan, build_context_string, extract_json_block

logger = logging.getLogger(__name__)

ImprovementStrategy = Literal["refine", "expand", "narrow", "none"]

LOW_RELEVANCE_RATIO = 0.6
TOP_RESULT_RATIO = 0.9


class Evaluation(BaseModel):
    """Verdict on a result set."""

    confidence: float = Field(ge=0.0, le=1.0)
    is_sufficient: bool = Field(alias="isSufficient")
    should_retry: bool = Field(default=False, alias="shouldRetry")
    reasoning: str = ""
    gaps: list[str] = Field(default_factory=list)
    suggested_query: Optional[str] = Field(default=None, alias="suggestedQuery")
    improvement_strategy: ImprovementStrategy = Field(default="none", alias="improvementStrategy")

    model_config = {"populate_by_name": True}


def average_score(results: list[RetrievalResult]) -> float:
    if not results:
        return 0.0
    return sum(r.score for r in results) / len(results)


def decode_evaluation(text: str) -> Evaluation:
    """Strictly decode an LLM response into an Evaluation.

    Raises:
        DecodeError: The response is not JSON or does not match the schema.
    """
    payload = extract_json_block(text)
    try:
        return Evaluation.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise DecodeError(f"Invalid evaluation: {e}") from e


class ResultEvaluator:
    """Heuristic evaluator (no LLM required).

    Sufficient when the average score meets the threshold, there are at
    least min_results results and the best one is within 90% of the
    threshold. Otherwise, unless max iterations are reached, a retry is
    recommended with one of expand / refine / narrow.
    """

    def __init__(self, min_results: int = 3):
        self.min_results = min_results

    def evaluate(
        self,
        query: str,
        results: list[RetrievalResult],
        confidence_threshold: float = 0.7,
        current_iteration: int = 1,
        max_iterations: int = 3,
    ) -> Evaluation:
        avg_confidence = average_score(results)
        max_confidence = max((r.score for r in results), default=0.0)
        has_enough_results = len(results) >= self.min_results
        at_max_iterations = current_iteration >= max_iterations

        is_sufficient = (
            avg_confidence >= confidence_threshold
            and has_enough_results
            and max_confidence >= confidence_threshold * TOP_RESULT_RATIO
        )

        should_retry = False
        strategy: ImprovementStrategy = "none"
        suggested_query = None
        gaps: list[str] = []

        if not is_sufficient and not at_max_iterations:
            should_retry = True
            if not results:
                gaps.append("No results retrieved")
                strategy = "expand"
            elif avg_confidence < confidence_threshold * LOW_RELEVANCE_RATIO:
                gaps.append("Low relevance scores")
                strategy = "refine"
            elif not has_enough_results:
                gaps.append(f"Only {len(results)} results, need at least {self.min_results}")
                strategy = "expand"
            elif max_confidence < confidence_threshold:
                gaps.append("Top result confidence below threshold")
                strategy = "narrow"
            suggested_query = query

        evaluation = Evaluation(
            confidence=min(1.0, max(0.0, avg_confidence)),
            is_sufficient=is_sufficient,
            should_retry=should_retry,
            reasoning=self._build_reasoning(
                is_sufficient, should_retry, avg_confidence, len(results),
                confidence_threshold, gaps, strategy,
            ),
            gaps=gaps,
            suggested_query=suggested_query,
            improvement_strategy=strategy,
        )

        logger.info(
            f"Heuristic evaluation: sufficient={evaluation.is_sufficient}, "
            f"confidence={evaluation.confidence:.3f}, retry={evaluation.should_retry}"
        )
        return evaluation

    @staticmethod
    def _build_reasoning(
        is_sufficient: bool,
        should_retry: bool,
        avg_confidence: float,
        result_count: int,
        threshold: float,
        gaps: list[str],
        strategy: str,
    ) -> str:
        if is_sufficient:
            return (
                f"Results are sufficient: average confidence {avg_confidence:.3f} meets "
                f"threshold {threshold:.3f}, {result_count} results retrieved."
            )

        parts = [
            f"Results are insufficient: average confidence {avg_confidence:.3f} below "
            f"threshold {threshold:.3f}, {result_count} results retrieved."
        ]
        if gaps:
            parts.append(f"Identified gaps: {'; '.join(gaps)}.")
        if should_retry:
            parts.append(f"Recommend retry with {strategy} strategy.")
        else:
            parts.append("Max iterations reached, stopping retry.")
        return " ".join(parts)


EVALUATE_PROMPT = """You are a result evaluation assistant for a RAG (Retrieval-Augmented Generation) system.
Your task is to evaluate retrieval results and determine if they are sufficient to answer the user's query.

{context}

Original Query: "{query}"

Query Plan:
- Complexity: {complexity}
- Strategy: {strategy}
- Sub-queries executed: {sub_query_count}
- Current iteration: {iteration} / {max_iterations}

Retrieval Results Summary:
{summary}

Guidelines:
- If results are highly relevant and cover the query well, mark isSufficient=true
- If results are missing key information, suggest shouldRetry=true with a refined query
- Don't retry indefinitely if we're near max iterations

Response Format: Provide a JSON object with this exact structure:
{{
  "isSufficient": true | false,
  "confidence": 0.0-1.0,
  "shouldRetry": true | false,
  "reasoning": "explanation of your evaluation",
  "gaps": ["gap1", "gap2"],
  "suggestedQuery": "refined query if retry needed",
  "improvementStrategy": "refine" | "expand" | "narrow" | "none"
}}

Provide your evaluation as valid JSON:"""


def summarize_results(results: list[RetrievalResult], limit: int = 5) -> str:
    if not results:
        return "No results retrieved."

    lines = [
        f"Total results: {len(results)}",
        f"Average score: {average_score(results):.3f}",
        "",
        f"Top {min(limit, len(results))} results:",
    ]
    for i, r in enumerate(results[:limit], 1):
        preview = r.text[:200].replace("\n", " ")
        lines.append(f"{i}. (score {r.score:.3f}) {preview}")
    return "\n".join(lines)


class LLMResultEvaluator:
    """LLM-backed evaluator. Returns None (never raises) on any failure."""

    def __init__(self, llm_service: Any):
        self.llm_service = llm_service

    async def evaluate(
        self,
        query: str,
        results: list[RetrievalResult],
        plan: QueryPlan,
        iteration: int = 1,
        max_iterations: int = 3,
        topic_name: str = "",
        workspace_context: str = "",
    ) -> Optional[Evaluation]:
        prompt = EVALUATE_PROMPT.format(
            context=build_context_string(topic_name, workspace_context),
            query=query,
            complexity=plan.complexity,
            strategy=plan.strategy,
            sub_query_count=len(plan.sub_queries),
            iteration=iteration,
            max_iterations=max_iterations,
            summary=summarize_results(results),
        )
        try:
            response = await self.llm_service.acomplete(prompt)
            evaluation = decode_evaluation(response)
        except Exception as e:
            logger.warning(f"LLM evaluation unavailable: {e}")
            return None

        logger.info(
            f"LLM evaluation: sufficient={evaluation.is_sufficient}, "
            f"confidence={evaluation.confidence:.3f}, retry={evaluation.should_retry}"
        )
        return evaluation
