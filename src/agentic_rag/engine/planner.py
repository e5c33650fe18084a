"""Query planning: complexity classification and sub-query decomposition.

Planning never fails. The heuristic planner is deterministic and always
available; an LLM planner can be plugged in and is tried first when
use_llm is enabled, but any call, parse or validation failure drops back
to the heuristics.

Heuristic decision order:
    1. Comparison markers (vs, versus, compare, difference, between,
       better, worse)  -> complex / parallel, one sub-query per side
    2. Two or more "?" or more than two and/or-separated parts
                        -> moderate / parallel, split on sentences and "and"
    3. More than 15 words -> moderate / sequential, the full query
    4. Otherwise         -> simple / parallel, the full query

Every plan leaving QueryPlanner.plan satisfies:
    - at least one sub-query (the original query if nothing else)
    - every sub-query has top_k set (default_top_k when missing)
    - at most max_sub_queries sub-queries
    - dependencies only point at earlier sub-queries, and any dependency
      forces the sequential strategy
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from agentic_rag.core.errors import DecodeError

logger = logging.getLogger(__name__)

Complexity = Literal["simple", "moderate", "complex"]
ExecutionStrategy = Literal["sequential", "parallel"]
Priority = Literal["high", "medium", "low"]

COMPARISON_PATTERN = re.compile(r"\b(?:vs|versus|compare|difference|between|better|worse)\b", re.IGNORECASE)
CONCEPT_SPLIT_PATTERN = re.compile(r"\band\b|\bor\b", re.IGNORECASE)
SENTENCE_SPLIT_PATTERN = re.compile(r"[.!?;]\s+|\band\b", re.IGNORECASE)
FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n\s*```")

MIN_COMPARISON_PART_LENGTH = 4
MIN_CONCEPT_PART_LENGTH = 6
LONG_QUERY_WORDS = 15


class SubQuery(BaseModel):
    """One atomic retrieval request derived from the user query."""

    query: str
    reasoning: str = ""
    top_k: Optional[int] = Field(default=None, ge=1, alias="topK")
    priority: Optional[Priority] = None
    dependencies: list[int] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class QueryPlan(BaseModel):
    """Decomposition of a user query plus how to execute it."""

    original_query: str = Field(alias="originalQuery")
    complexity: Complexity
    sub_queries: list[SubQuery] = Field(alias="subQueries")
    strategy: ExecutionStrategy
    explanation: str = ""

    model_config = {"populate_by_name": True}


@dataclass
class RefinementContext:
    """What the orchestrator knows after an iteration that fell short."""

    accumulated_results: list[Any]
    executed_sub_queries: list[str]
    avg_confidence: float
    confidence_threshold: float
    unique_documents: int = 0
    gaps: list[str] = field(default_factory=list)


@runtime_checkable
class PlanningStrategy(Protocol):
    """Pluggable planner (e.g. LLM-backed). Returns None when unavailable."""

    async def plan(self, query: str, context: dict) -> Optional[QueryPlan]: ...


def extract_json_block(text: str) -> str:
    """Return the JSON payload of an LLM response (fenced block or raw text)."""
    match = FENCED_JSON_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return text[start:end + 1]
    return text.strip()


def decode_plan(text: str) -> QueryPlan:
    """Strictly decode an LLM response into a QueryPlan.

    Raises:
        DecodeError: The response is not JSON or does not match the schema.
    """
    payload = extract_json_block(text)
    try:
        return QueryPlan.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise DecodeError(f"Invalid query plan: {e}") from e


class QueryPlanner:
    """Creates query plans, heuristically or through a pluggable LLM planner.

    Example:
        planner = QueryPlanner()
        plan = await planner.plan("Python vs JavaScript")
        # plan.complexity == "complex", two parallel sub-queries

        planner = QueryPlanner(llm_planner=LLMQueryPlanner(LLMService()))
        plan = await planner.plan("...", use_llm=True)
    """

    def __init__(self, llm_planner: Optional[PlanningStrategy] = None):
        self.llm_planner = llm_planner
        logger.info(f"QueryPlanner initialized: llm_planner={'yes' if llm_planner else 'no'}")

    async def plan(
        self,
        query: str,
        max_sub_queries: int = 3,
        default_top_k: int = 5,
        use_llm: bool = False,
        topic_name: str = "",
        workspace_context: str = "",
    ) -> QueryPlan:
        """Create a query plan. Never raises.

        Args:
            query: User query.
            max_sub_queries: Cap on the number of sub-queries.
            default_top_k: top_k for sub-queries that do not set one.
            use_llm: Try the LLM planner first (if one is configured).
            topic_name: Optional topic passed to the LLM prompt.
            workspace_context: Optional context passed to the LLM prompt.
        """
        logger.info(f"Creating query plan: query='{query[:100]}', use_llm={use_llm}")

        try:
            plan = None
            if use_llm and self.llm_planner is not None:
                plan = await self._llm_plan(
                    query,
                    {
                        "topic_name": topic_name,
                        "workspace_context": workspace_context,
                        "max_sub_queries": max_sub_queries,
                        "default_top_k": default_top_k,
                    },
                )
            if plan is None:
                plan = self.heuristic_plan(query, max_sub_queries)
            return self.finalize_plan(plan, query, max_sub_queries, default_top_k)

        except Exception as e:
            logger.error(f"Failed to create query plan, using single-query plan: {e}")
            return self.simple_plan(query, default_top_k)

    async def _llm_plan(self, query: str, context: dict) -> Optional[QueryPlan]:
        try:
            return await self.llm_planner.plan(query, context)
        except Exception as e:
            logger.warning(f"LLM planning failed, will use heuristics: {e}")
            return None

    def heuristic_plan(self, query: str, max_sub_queries: int = 3) -> QueryPlan:
        """Create a plan using heuristic rules (no LLM required)."""
        has_comparison = COMPARISON_PATTERN.search(query) is not None
        has_multiple_questions = query.count("?") >= 2
        has_multiple_concepts = len(CONCEPT_SPLIT_PATTERN.split(query)) > 2
        is_long_query = len(query.split()) > LONG_QUERY_WORDS

        if has_comparison:
            parts = [p.strip() for p in COMPARISON_PATTERN.split(query)]
            sub_queries = [
                SubQuery(
                    query=part,
                    reasoning=f"Search for information about {part}",
                    priority="high",
                )
                for part in parts
                if len(part) >= MIN_COMPARISON_PART_LENGTH
            ]
            complexity, strategy = "complex", "parallel"
            explanation = "Comparison query broken into parallel searches for each concept"

        elif has_multiple_questions or has_multiple_concepts:
            parts = [p.strip() for p in SENTENCE_SPLIT_PATTERN.split(query)]
            sub_queries = [
                SubQuery(query=part, reasoning=f"Search for {part}", priority="medium")
                for part in parts
                if len(part) >= MIN_CONCEPT_PART_LENGTH
            ][:max_sub_queries]
            complexity, strategy = "moderate", "parallel"
            explanation = "Multi-concept query split into parallel searches"

        elif is_long_query:
            sub_queries = [
                SubQuery(query=query, reasoning="Full query for comprehensive search", priority="high")
            ]
            complexity, strategy = "moderate", "sequential"
            explanation = "Long query searched as-is with follow-up capability"

        else:
            sub_queries = [
                SubQuery(query=query, reasoning="Direct search for the query", priority="high")
            ]
            complexity, strategy = "simple", "parallel"
            explanation = "Simple, focused query requires single search"

        plan = QueryPlan(
            original_query=query,
            complexity=complexity,
            sub_queries=sub_queries,
            strategy=strategy,
            explanation=explanation,
        )

        logger.info(
            f"Heuristic query plan created: complexity={plan.complexity}, "
            f"sub_queries={len(plan.sub_queries)}, strategy={plan.strategy}"
        )
        return plan

    def simple_plan(self, query: str, default_top_k: int = 5) -> QueryPlan:
        """Single-sub-query fallback plan."""
        return QueryPlan(
            original_query=query,
            complexity="simple",
            sub_queries=[
                SubQuery(query=query, reasoning="Direct search", top_k=default_top_k, priority="high")
            ],
            strategy="parallel",
            explanation="Simple single-query search",
        )

    def finalize_plan(
        self,
        plan: QueryPlan,
        query: str,
        max_sub_queries: int,
        default_top_k: int,
    ) -> QueryPlan:
        """Enforce plan post-conditions on heuristic and LLM plans alike."""
        sub_queries = [sq.model_copy() for sq in plan.sub_queries if sq.query.strip()]

        if not sub_queries:
            sub_queries = [
                SubQuery(query=query, reasoning="Fallback to full query search", priority="high")
            ]

        sub_queries = sub_queries[:max(1, max_sub_queries)]

        strategy = plan.strategy
        for index, sq in enumerate(sub_queries):
            if sq.top_k is None:
                sq.top_k = default_top_k
            # Only earlier sub-queries can be depended on
            sq.dependencies = sorted({d for d in sq.dependencies if 0 <= d < index})
            if sq.dependencies:
                strategy = "sequential"

        return plan.model_copy(
            update={"original_query": plan.original_query or query,
                    "sub_queries": sub_queries,
                    "strategy": strategy}
        )

    def validate_plan(self, plan: QueryPlan) -> bool:
        """Check a plan has a query and non-blank sub-queries."""
        if not plan.original_query.strip():
            logger.warning("Invalid plan: empty original query")
            return False
        if not plan.sub_queries:
            logger.warning("Invalid plan: no sub-queries")
            return False
        if any(not sq.query.strip() for sq in plan.sub_queries):
            logger.warning("Invalid plan: empty sub-query")
            return False
        return True


PLAN_PROMPT = """You are a query planning assistant for a RAG (Retrieval-Augmented Generation) system.
Your task is to analyze user queries and create an optimal search strategy.

{context}

User Query: "{query}"

Guidelines:
1. Simple queries (single concept): Use ONE sub-query
2. Moderate queries (2-3 concepts): Break into 2-3 focused sub-queries
3. Complex queries (comparisons, multi-part): Break into multiple specific sub-queries
Use at most {max_sub_queries} sub-queries.

Strategies:
- sequential: When results of one query inform the next
- parallel: When sub-queries are independent

Response Format: Provide a JSON object with this exact structure:
{{
  "originalQuery": "the original query",
  "complexity": "simple" | "moderate" | "complex",
  "subQueries": [
    {{"query": "sub-query text", "reasoning": "why it is needed", "topK": 5, "priority": "high" | "medium" | "low"}}
  ],
  "strategy": "sequential" | "parallel",
  "explanation": "brief explanation of the strategy"
}}

Provide your analysis as valid JSON:"""


REFINE_PROMPT = """You are refining a search plan for a RAG system. The previous searches did not
find good enough results (average relevance {avg_confidence:.2f}, target {threshold:.2f}).

Original query: "{query}"
Already executed sub-queries:
{executed}

Known gaps: {gaps}

Propose NEW sub-queries that cover the gaps. Do not repeat executed sub-queries.
Respond with the same JSON structure as before:
{{"originalQuery": "...", "complexity": "...", "subQueries": [{{"query": "...", "reasoning": "..."}}],
  "strategy": "sequential" | "parallel", "explanation": "..."}}"""


def build_context_string(topic_name: str = "", workspace_context: str = "") -> str:
    parts = []
    if topic_name:
        parts.append(f"Topic: {topic_name}")
    if workspace_context:
        parts.append(f"Workspace Context: {workspace_context}")
    return "\n".join(parts) if parts else "No additional context provided."


class LLMQueryPlanner:
    """LLM-backed planning strategy.

    Returns None (never raises) when the LLM call fails or its answer does
    not decode into a valid plan, so QueryPlanner can fall back.
    """

    def __init__(self, llm_service: Any):
        """Initialize with anything exposing `async acomplete(prompt) -> str`."""
        self.llm_service = llm_service

    async def plan(self, query: str, context: dict) -> Optional[QueryPlan]:
        prompt = PLAN_PROMPT.format(
            context=build_context_string(
                context.get("topic_name", ""), context.get("workspace_context", "")
            ),
            query=query,
            max_sub_queries=context.get("max_sub_queries", 3),
        )
        try:
            response = await self.llm_service.acomplete(prompt)
            plan = decode_plan(response)
        except Exception as e:
            logger.warning(f"LLM planning unavailable: {e}")
            return None

        logger.info(
            f"LLM query plan created: complexity={plan.complexity}, "
            f"sub_queries={len(plan.sub_queries)}, strategy={plan.strategy}"
        )
        return plan

    async def refine_plan(
        self, plan: QueryPlan, context: RefinementContext
    ) -> Optional[QueryPlan]:
        """Propose a revised plan covering the gaps of the previous rounds."""
        prompt = REFINE_PROMPT.format(
            avg_confidence=context.avg_confidence,
            threshold=context.confidence_threshold,
            query=plan.original_query,
            executed="\n".join(f"- {q}" for q in context.executed_sub_queries) or "- (none)",
            gaps=", ".join(context.gaps) or "unknown",
        )
        try:
            response = await self.llm_service.acomplete(prompt)
            refined = decode_plan(response)
        except Exception as e:
            logger.warning(f"LLM plan refinement unavailable: {e}")
            return None

        executed = {q.strip().lower() for q in context.executed_sub_queries}
        fresh = [sq for sq in refined.sub_queries if sq.query.strip().lower() not in executed]
        if not fresh:
            logger.info("LLM refinement proposed no new sub-queries")
            return None
        return refined.model_copy(update={"sub_queries": fresh})
