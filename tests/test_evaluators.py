"""Tests for the evaluator implementations and their selection."""

import json
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import Settings
from app.schemas import TranscriptMessage
from services.evaluators import (
    EvaluatorConfigError,
    HeuristicEvaluator,
    OpenAIEvaluator,
    build_evaluator,
    render_transcript,
)


def _transcript(n):
    return [
        TranscriptMessage(role="user" if i % 2 == 0 else "agent", time_in_call_secs=i, message=f"line {i}")
        for i in range(n)
    ]


def _openai_client(content):
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")]
    )
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


class TestHeuristicEvaluator:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("messages", [0, 1, 5, 40])
    async def test_score_is_within_range(self, messages):
        result = await HeuristicEvaluator().evaluate(_transcript(messages), {"call_successful": "success", "duration": 75})
        assert 0 <= result.score <= 100
        assert result.sentiment in {"positive", "neutral", "negative"}

    @pytest.mark.asyncio
    async def test_is_deterministic(self):
        evaluator = HeuristicEvaluator()
        meta = {"call_successful": "unknown", "duration": 30}
        first = await evaluator.evaluate(_transcript(6), meta)
        second = await evaluator.evaluate(_transcript(6), meta)
        assert first == second

    @pytest.mark.asyncio
    async def test_failed_call_scores_lower(self):
        evaluator = HeuristicEvaluator()
        good = await evaluator.evaluate(_transcript(8), {"call_successful": "success"})
        bad = await evaluator.evaluate(_transcript(8), {"call_successful": "failure"})
        assert bad.score < good.score
        assert any("unsuccessful" in s for s in bad.improvements)

    @pytest.mark.asyncio
    async def test_summary_mentions_counts(self):
        result = await HeuristicEvaluator().evaluate(_transcript(5), {"duration": 95})
        assert "1m 35s" in result.summary
        assert "3 from user, 2 from agent" in result.summary


class TestOpenAIEvaluator:
    @pytest.mark.asyncio
    async def test_parses_json_response(self):
        payload = {
            "score": 77,
            "summary": "Caller rescheduled a delivery.",
            "strengths": ["Clear confirmation"],
            "improvements": [],
            "sentiment": "positive",
            "key_topics": ["delivery"],
            "agent_performance": {"responsiveness": 8, "accuracy": 7, "helpfulness": 9},
        }
        client = _openai_client(json.dumps(payload))
        evaluator = OpenAIEvaluator(client=client, model="gpt-4o-mini")

        result = await evaluator.evaluate(_transcript(3), {"agent_name": "Support Agent", "duration": 40})

        assert result.score == 77
        assert result.agent_performance.helpfulness == 9
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "USER: line 0" in kwargs["messages"][1]["content"]
        assert "Support Agent" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        evaluator = OpenAIEvaluator(client=_openai_client("not json"))
        with pytest.raises(ValueError):
            await evaluator.evaluate(_transcript(2), {})

    def test_requires_api_key_without_client(self):
        with pytest.raises(EvaluatorConfigError, match="OPENAI_API_KEY"):
            OpenAIEvaluator(api_key="")


class TestBuildEvaluator:
    def test_heuristic_by_default(self):
        assert isinstance(build_evaluator(Settings()), HeuristicEvaluator)

    def test_openai(self):
        evaluator = build_evaluator(replace(Settings(), evaluator="openai", openai_api_key="sk-test"))
        assert isinstance(evaluator, OpenAIEvaluator)

    def test_unknown_name(self):
        with pytest.raises(EvaluatorConfigError, match="Unknown evaluator"):
            build_evaluator(replace(Settings(), evaluator="magic"))


def test_render_transcript():
    text = render_transcript(_transcript(2))
    assert text == "USER: line 0\nAGENT: line 1"
