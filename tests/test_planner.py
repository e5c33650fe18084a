"""Query planner tests: heuristics, post-conditions and the LLM strategy."""

import json

import pytest

from agentic_rag.core.errors import DecodeError
from agentic_rag.engine.planner import (
    LLMQueryPlanner,
    QueryPlan,
    QueryPlanner,
    RefinementContext,
    SubQuery,
    decode_plan,
)

from conftest import FakeLLM


def plan_json(sub_queries, complexity="complex", strategy="parallel", fenced=True):
    payload = json.dumps({
        "originalQuery": "original",
        "complexity": complexity,
        "subQueries": sub_queries,
        "strategy": strategy,
        "explanation": "llm plan",
    })
    return f"Here is the plan:\n```json\n{payload}\n```" if fenced else payload


class TestHeuristicPlanning:
    """Heuristic decision order"""

    @pytest.mark.asyncio
    async def test_comparison_query(self):
        plan = await QueryPlanner().plan("Python vs JavaScript")

        assert plan.complexity == "complex"
        assert plan.strategy == "parallel"
        assert len(plan.sub_queries) >= 2
        for sq in plan.sub_queries:
            assert "vs" not in sq.query.lower().split()
        assert [sq.query for sq in plan.sub_queries] == ["Python", "JavaScript"]

    @pytest.mark.asyncio
    async def test_simple_query(self):
        plan = await QueryPlanner().plan("What is Python?")

        assert plan.complexity == "simple"
        assert plan.strategy == "parallel"
        assert len(plan.sub_queries) == 1
        assert plan.sub_queries[0].query == "What is Python?"
        assert plan.sub_queries[0].top_k == 5

    @pytest.mark.asyncio
    async def test_multiple_questions(self):
        query = "What is Rust? How does Go schedule goroutines? Why is Haskell lazy?"

        plan = await QueryPlanner().plan(query)

        assert plan.complexity == "moderate"
        assert plan.strategy == "parallel"
        assert [sq.query for sq in plan.sub_queries] == [
            "What is Rust",
            "How does Go schedule goroutines",
            "Why is Haskell lazy?",
        ]

    @pytest.mark.asyncio
    async def test_multiple_concepts_capped(self):
        query = "What is Rust? How does Go schedule goroutines? Why is Haskell lazy?"

        plan = await QueryPlanner().plan(query, max_sub_queries=2)

        assert len(plan.sub_queries) == 2

    @pytest.mark.asyncio
    async def test_and_or_concepts(self):
        plan = await QueryPlanner().plan("python and rust or go")

        assert plan.complexity == "moderate"
        assert [sq.query for sq in plan.sub_queries] == ["python", "rust or go"]

    @pytest.mark.asyncio
    async def test_long_query_is_sequential(self):
        query = (
            "Explain in detail how the garbage collector in the CPython interpreter "
            "reclaims memory from reference cycles over time"
        )

        plan = await QueryPlanner().plan(query)

        assert plan.complexity == "moderate"
        assert plan.strategy == "sequential"
        assert [sq.query for sq in plan.sub_queries] == [query]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   ", "vs", "and or and", "?!?"])
    async def test_never_empty(self, query):
        plan = await QueryPlanner().plan(query)
        assert len(plan.sub_queries) >= 1
        assert all(sq.top_k is not None for sq in plan.sub_queries)

    @pytest.mark.asyncio
    async def test_default_top_k(self):
        plan = await QueryPlanner().plan("Python vs JavaScript", default_top_k=8)
        assert all(sq.top_k == 8 for sq in plan.sub_queries)


class TestPlanPostConditions:
    """finalize_plan and validate_plan"""

    def test_forward_dependencies_dropped(self):
        plan = QueryPlan(
            original_query="q",
            complexity="moderate",
            sub_queries=[
                SubQuery(query="first", dependencies=[1]),
                SubQuery(query="second", dependencies=[0, 1, 7]),
            ],
            strategy="parallel",
        )

        final = QueryPlanner().finalize_plan(plan, "q", max_sub_queries=3, default_top_k=5)

        assert final.sub_queries[0].dependencies == []
        assert final.sub_queries[1].dependencies == [0]
        assert final.strategy == "sequential"

    def test_no_dependencies_keeps_strategy(self):
        plan = QueryPlan(
            original_query="q",
            complexity="moderate",
            sub_queries=[SubQuery(query="a", dependencies=[0])],
            strategy="parallel",
        )

        final = QueryPlanner().finalize_plan(plan, "q", max_sub_queries=3, default_top_k=5)

        assert final.strategy == "parallel"

    def test_blank_sub_queries_replaced(self):
        plan = QueryPlan(
            original_query="q", complexity="simple", sub_queries=[SubQuery(query="  ")], strategy="parallel"
        )

        final = QueryPlanner().finalize_plan(plan, "q", max_sub_queries=3, default_top_k=4)

        assert [(sq.query, sq.top_k) for sq in final.sub_queries] == [("q", 4)]

    def test_finalize_does_not_mutate_input(self):
        plan = QueryPlan(
            original_query="q", complexity="simple", sub_queries=[SubQuery(query="a")], strategy="parallel"
        )
        QueryPlanner().finalize_plan(plan, "q", max_sub_queries=3, default_top_k=5)
        assert plan.sub_queries[0].top_k is None

    def test_validate_plan(self):
        planner = QueryPlanner()
        good = planner.simple_plan("What is Python?")
        empty = QueryPlan(original_query="q", complexity="simple", sub_queries=[], strategy="parallel")
        blank = QueryPlan(
            original_query="q", complexity="simple", sub_queries=[SubQuery(query=" ")], strategy="parallel"
        )

        assert planner.validate_plan(good)
        assert not planner.validate_plan(empty)
        assert not planner.validate_plan(blank)


class TestDecodePlan:
    """Strict LLM response decoding"""

    def test_fenced_json(self):
        plan = decode_plan(plan_json([{"query": "a", "reasoning": "r", "topK": 3, "priority": "high"}]))

        assert plan.complexity == "complex"
        assert plan.sub_queries[0].top_k == 3
        assert plan.sub_queries[0].priority == "high"

    def test_raw_json(self):
        plan = decode_plan(plan_json([{"query": "a"}], fenced=False))
        assert plan.sub_queries[0].query == "a"

    @pytest.mark.parametrize("text", [
        "not json at all",
        "{}",
        '{"originalQuery": "q", "complexity": "extreme", "subQueries": [], "strategy": "parallel"}',
        '{"originalQuery": "q", "complexity": "simple", "subQueries": [{"query": "a", "topK": 0}], "strategy": "parallel"}',
    ])
    def test_invalid_responses(self, text):
        with pytest.raises(DecodeError):
            decode_plan(text)


class TestLLMPlanning:
    """LLM planning strategy with heuristic fallback"""

    @pytest.mark.asyncio
    async def test_garbage_falls_back_to_heuristics(self):
        planner = QueryPlanner(llm_planner=LLMQueryPlanner(FakeLLM("I cannot help with that")))

        plan = await planner.plan("What is Python?", use_llm=True)

        assert plan.complexity == "simple"
        assert plan.sub_queries[0].query == "What is Python?"

    @pytest.mark.asyncio
    async def test_llm_error_falls_back_to_heuristics(self):
        planner = QueryPlanner(llm_planner=LLMQueryPlanner(FakeLLM(RuntimeError("connection refused"))))

        plan = await planner.plan("Python vs JavaScript", use_llm=True)

        assert plan.complexity == "complex"

    @pytest.mark.asyncio
    async def test_valid_plan_is_capped_and_filled(self):
        sub_queries = [{"query": f"part {i}", "reasoning": "r"} for i in range(5)]
        sub_queries[0]["topK"] = 2
        planner = QueryPlanner(llm_planner=LLMQueryPlanner(FakeLLM(plan_json(sub_queries))))

        plan = await planner.plan("anything", max_sub_queries=3, default_top_k=5, use_llm=True)

        assert plan.explanation == "llm plan"
        assert [sq.query for sq in plan.sub_queries] == ["part 0", "part 1", "part 2"]
        assert [sq.top_k for sq in plan.sub_queries] == [2, 5, 5]

    @pytest.mark.asyncio
    async def test_llm_not_called_without_use_llm(self):
        llm = FakeLLM(plan_json([{"query": "a"}]))
        planner = QueryPlanner(llm_planner=LLMQueryPlanner(llm))

        await planner.plan("What is Python?")

        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_context_in_prompt(self):
        llm = FakeLLM(plan_json([{"query": "a"}]))
        planner = QueryPlanner(llm_planner=LLMQueryPlanner(llm))

        await planner.plan("q", use_llm=True, topic_name="Languages", workspace_context="PL notes")

        assert "Topic: Languages" in llm.prompts[0]
        assert "Workspace Context: PL notes" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_refine_plan_drops_executed_sub_queries(self):
        llm = FakeLLM(plan_json([{"query": "What is Python?"}, {"query": "Python memory model"}]))
        base = QueryPlanner().simple_plan("What is Python?")
        context = RefinementContext(
            accumulated_results=[],
            executed_sub_queries=["What is Python?"],
            avg_confidence=0.3,
            confidence_threshold=0.7,
            gaps=["Low relevance scores"],
        )

        refined = await LLMQueryPlanner(llm).refine_plan(base, context)

        assert [sq.query for sq in refined.sub_queries] == ["Python memory model"]
        assert "Low relevance scores" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_refine_plan_unavailable(self):
        base = QueryPlanner().simple_plan("What is Python?")
        context = RefinementContext([], ["What is Python?"], 0.3, 0.7)

        assert await LLMQueryPlanner(FakeLLM("nope")).refine_plan(base, context) is None
        repeated = FakeLLM(plan_json([{"query": "what is python?"}]))
        assert await LLMQueryPlanner(repeated).refine_plan(base, context) is None
