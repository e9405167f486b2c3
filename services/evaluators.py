"""
Evaluators — score a finished conversation transcript.

Any object with an async ``evaluate(transcript, metadata)`` method returning an
EvaluationResult can be plugged into the EvaluationDriver. Two are provided:

  - HeuristicEvaluator  → deterministic, no network; good for local runs
  - OpenAIEvaluator     → asks an OpenAI chat model for a JSON verdict

build_evaluator() picks one from settings at startup.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from app.config import Settings
from app.schemas import AgentPerformance, EvaluationResult, TranscriptMessage

logger = logging.getLogger(__name__)


class Evaluator(Protocol):
    async def evaluate(
        self, transcript: List[TranscriptMessage], metadata: Dict[str, Any]
    ) -> EvaluationResult:
        ...


class EvaluatorConfigError(Exception):
    """Raised when the configured evaluator cannot be built."""


def render_transcript(transcript: List[TranscriptMessage]) -> str:
    return "\n".join(f"{m.role.upper()}: {m.message or ''}" for m in transcript)


# ------------------------------------------------------------------ #
#  Heuristic                                                          #
# ------------------------------------------------------------------ #

class HeuristicEvaluator:
    """Scores turn-taking, agent coverage and call outcome. No randomness."""

    async def evaluate(
        self, transcript: List[TranscriptMessage], metadata: Dict[str, Any]
    ) -> EvaluationResult:
        total = len(transcript)
        user_turns = sum(1 for m in transcript if m.role == "user")
        agent_turns = total - user_turns
        empty_turns = sum(1 for m in transcript if not (m.message or "").strip())

        # up to 50 points for a conversation that actually went back and forth
        engagement = min(total, 10) * 5
        # up to 30 points when the agent answered roughly every user turn
        ratio = agent_turns / max(user_turns, 1)
        coverage = 30 * min(ratio, 1.0)
        outcome = {"success": 20, "unknown": 10}.get(metadata.get("call_successful"), 0)
        penalty = empty_turns * 5

        score = round(max(0.0, min(100.0, engagement + coverage + outcome - penalty)))

        strengths: List[str] = []
        improvements: List[str] = []
        if ratio >= 0.8:
            strengths.append("Agent responded to the caller's turns")
        else:
            improvements.append("Agent left several caller turns unanswered")
        if total >= 6:
            strengths.append("Conversation had a full back-and-forth")
        elif total < 3:
            improvements.append("Conversation ended after very few turns")
        if empty_turns:
            improvements.append(f"{empty_turns} empty message(s) in the transcript")
        if metadata.get("call_successful") == "failure":
            improvements.append("Call was marked unsuccessful by the provider")

        duration = int(metadata.get("duration") or 0)
        return EvaluationResult(
            score=score,
            summary=(
                f"Conversation of {duration // 60}m {duration % 60}s with {total} messages: "
                f"{user_turns} from user, {agent_turns} from agent."
            ),
            strengths=strengths,
            improvements=improvements,
            sentiment="positive" if score > 70 else "neutral" if score > 40 else "negative",
            key_topics=[],
            agent_performance=AgentPerformance(
                responsiveness=min(10, round(ratio * 5)),
                accuracy=min(10, round(score / 10)),
                helpfulness=min(10, round((coverage + outcome) / 5)),
            ),
        )


# ------------------------------------------------------------------ #
#  OpenAI                                                             #
# ------------------------------------------------------------------ #

SYSTEM_PROMPT = (
    "You review phone conversations between a voice AI agent and a caller. "
    "Judge how well the agent handled the call and answer only with a JSON object."
)

USER_PROMPT = """Evaluate this conversation.

Agent: {agent_name}
Duration: {duration}s
Provider outcome: {call_successful}

Transcript:
{transcript}

Respond with JSON of this shape:
{{
  "score": <0-100 overall quality>,
  "summary": "<1-2 sentence summary>",
  "strengths": ["..."],
  "improvements": ["..."],
  "sentiment": "positive" | "neutral" | "negative",
  "key_topics": ["..."],
  "agent_performance": {{"responsiveness": <0-10>, "accuracy": <0-10>, "helpfulness": <0-10>}}
}}"""


class OpenAIEvaluator:
    """LLM-backed evaluator using the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            if not api_key:
                raise EvaluatorConfigError("OPENAI_API_KEY is required for the openai evaluator.")
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model

    async def evaluate(
        self, transcript: List[TranscriptMessage], metadata: Dict[str, Any]
    ) -> EvaluationResult:
        prompt = USER_PROMPT.format(
            agent_name=metadata.get("agent_name") or "unknown",
            duration=metadata.get("duration") or 0,
            call_successful=metadata.get("call_successful") or "unknown",
            transcript=render_transcript(transcript),
        )
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )
        content = response.choices[0].message.content or ""
        logger.debug("OpenAI evaluation for %s: %s", metadata.get("conversation_id"), content)
        return EvaluationResult.model_validate(json.loads(content))


def build_evaluator(settings: Settings) -> Evaluator:
    name = settings.evaluator
    if name == "heuristic":
        return HeuristicEvaluator()
    if name == "openai":
        return OpenAIEvaluator(api_key=settings.openai_api_key, model=settings.openai_model)
    raise EvaluatorConfigError(f"Unknown evaluator {name!r}; expected 'heuristic' or 'openai'.")
