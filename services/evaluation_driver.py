"""
EvaluationDriver — score finished conversations that have no evaluation yet.

Eligible means: status is done, a transcript is stored, no evaluation row
exists, and the conversation is neither quarantined nor waiting out a retry
backoff. Conversations are taken oldest first. A failure on one conversation
is recorded and the cycle moves on to the next; a storage error ends the cycle.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from app.models import Conversation
from app.schemas import EvaluationResult, TranscriptMessage
from services.errors import EvaluationFailure
from services.evaluation_store import EvaluationStore
from services.evaluators import Evaluator

logger = logging.getLogger(__name__)


@dataclass
class EvaluationCycleResult:
    eligible: int = 0
    evaluated: int = 0
    failed: int = 0
    skipped: int = 0


def conversation_metadata(conversation: Conversation) -> Dict[str, Any]:
    return {
        "conversation_id": conversation.conversation_id,
        "agent_id": conversation.agent_id,
        "agent_name": conversation.agent_name,
        "duration": conversation.call_duration_secs,
        "call_successful": conversation.call_successful,
        "direction": conversation.direction,
        "start_time_unix_secs": conversation.start_time_unix_secs,
    }


class EvaluationDriver:

    def __init__(
        self,
        store: EvaluationStore,
        evaluator: Evaluator,
        timeout_secs: Optional[float] = 120.0,
        clock: Callable[[], float] = time.time,
        batch_size: Optional[int] = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self.timeout_secs = timeout_secs
        self.clock = clock
        self.batch_size = batch_size

    def _now(self) -> int:
        return int(self.clock())

    async def run_cycle(self) -> EvaluationCycleResult:
        result = EvaluationCycleResult()
        candidates = self.store.eligible_conversations(self._now(), limit=self.batch_size)
        result.eligible = len(candidates)
        logger.info("[Evaluator] Found %d unevaluated conversation(s)", result.eligible)

        for conversation in candidates:
            conversation_id = conversation.conversation_id
            if not self.store.is_eligible(conversation_id, self._now()):
                result.skipped += 1
                logger.debug("[Evaluator] %s no longer eligible, skipping", conversation_id)
                continue

            try:
                evaluation = await self._evaluate(conversation)
            except EvaluationFailure as e:
                result.failed += 1
                failure = self.store.record_failure(conversation_id, str(e), self._now())
                if not failure.quarantined:
                    logger.warning(
                        "[Evaluator] Failed to evaluate %s (attempt %d, next try at %s): %s",
                        conversation_id, failure.attempts, failure.next_attempt_at, e,
                    )
                continue

            self.store.add(conversation_id, evaluation)
            result.evaluated += 1
            logger.info("[Evaluator] Evaluated %s with score %s", conversation_id, evaluation.score)

        return result

    async def _evaluate(self, conversation: Conversation) -> EvaluationResult:
        conversation_id = conversation.conversation_id
        try:
            transcript = [
                TranscriptMessage.model_validate(m)
                for m in json.loads(conversation.transcript_json)
            ]
            call = self.evaluator.evaluate(transcript, conversation_metadata(conversation))
            if self.timeout_secs:
                evaluation = await asyncio.wait_for(call, timeout=self.timeout_secs)
            else:
                evaluation = await call
            # evaluators may hand back a plain dict
            return EvaluationResult.model_validate(
                evaluation.model_dump() if isinstance(evaluation, EvaluationResult) else evaluation
            )
        except asyncio.TimeoutError as e:
            raise EvaluationFailure(conversation_id, f"timed out after {self.timeout_secs}s") from e
        except ValueError as e:
            raise EvaluationFailure(conversation_id, f"invalid evaluation: {e}") from e
        except Exception as e:
            raise EvaluationFailure(conversation_id, f"{type(e).__name__}: {e}") from e
