"""Result evaluator tests."""

import json

import pytest

from agentic_rag.core.errors import DecodeError
from agentic_rag.engine.evaluator import LLMResultEvaluator, ResultEvaluator, decode_evaluation
from agentic_rag.engine.models import RetrievalResult, RetrievalStrategy
from agentic_rag.engine.planner import QueryPlanner

from conftest import FakeLLM, make_chunk


def results_with(*scores):
    return [
        RetrievalResult(
            chunk=make_chunk(f"r{i}", f"result {i}"),
            score=score,
            source_strategy=RetrievalStrategy.HYBRID,
        )
        for i, score in enumerate(scores)
    ]


class TestResultEvaluator:
    """Heuristic sufficiency and gap detection"""

    def test_sufficient(self):
        evaluation = ResultEvaluator().evaluate("q", results_with(0.9, 0.8, 0.85))

        assert evaluation.is_sufficient
        assert not evaluation.should_retry
        assert evaluation.improvement_strategy == "none"
        assert evaluation.confidence == pytest.approx(0.85)
        assert evaluation.reasoning.startswith("Results are sufficient")

    def test_no_results(self):
        evaluation = ResultEvaluator().evaluate("q", [])

        assert not evaluation.is_sufficient
        assert evaluation.should_retry
        assert evaluation.confidence == 0.0
        assert evaluation.gaps == ["No results retrieved"]
        assert evaluation.improvement_strategy == "expand"
        assert evaluation.suggested_query == "q"

    def test_low_relevance(self):
        evaluation = ResultEvaluator().evaluate("q", results_with(0.1, 0.2, 0.3))

        assert evaluation.gaps == ["Low relevance scores"]
        assert evaluation.improvement_strategy == "refine"

    def test_too_few_results(self):
        evaluation = ResultEvaluator().evaluate("q", results_with(0.6, 0.65))

        assert evaluation.gaps == ["Only 2 results, need at least 3"]
        assert evaluation.improvement_strategy == "expand"

    def test_top_result_below_threshold(self):
        evaluation = ResultEvaluator().evaluate("q", results_with(0.66, 0.66, 0.66))

        assert evaluation.gaps == ["Top result confidence below threshold"]
        assert evaluation.improvement_strategy == "narrow"

    def test_max_iterations_stops_retry(self):
        evaluation = ResultEvaluator().evaluate("q", [], current_iteration=3, max_iterations=3)

        assert not evaluation.should_retry
        assert evaluation.gaps == []
        assert "Max iterations reached" in evaluation.reasoning

    def test_min_results_configurable(self):
        evaluation = ResultEvaluator(min_results=1).evaluate("q", results_with(0.9))
        assert evaluation.is_sufficient


class TestDecodeEvaluation:
    """Strict LLM evaluation decoding"""

    def test_valid(self):
        evaluation = decode_evaluation(json.dumps({
            "isSufficient": False,
            "confidence": 0.4,
            "shouldRetry": True,
            "reasoning": "missing details",
            "gaps": ["memory model"],
            "suggestedQuery": "python memory model",
            "improvementStrategy": "refine",
        }))

        assert evaluation.should_retry
        assert evaluation.suggested_query == "python memory model"

    @pytest.mark.parametrize("text", [
        "no json here",
        '{"isSufficient": true, "confidence": 1.5}',
        '{"confidence": 0.5}',
    ])
    def test_invalid(self, text):
        with pytest.raises(DecodeError):
            decode_evaluation(text)


class TestLLMResultEvaluator:
    """LLM evaluation collaborator"""

    @pytest.mark.asyncio
    async def test_unavailable_on_garbage(self):
        plan = QueryPlanner().simple_plan("q")
        evaluator = LLMResultEvaluator(FakeLLM("definitely not json"))

        assert await evaluator.evaluate("q", results_with(0.5), plan) is None

    @pytest.mark.asyncio
    async def test_decodes_response(self):
        llm = FakeLLM('```json\n{"isSufficient": true, "confidence": 0.9, "reasoning": "ok"}\n```')
        plan = QueryPlanner().simple_plan("q")

        evaluation = await LLMResultEvaluator(llm).evaluate("q", results_with(0.9, 0.8), plan)

        assert evaluation.is_sufficient
        assert "Average score: 0.850" in llm.prompts[0]
