"""
Conversation Routes (read-only)

GET /api/conversations         — recent conversations with their current evaluation
GET /api/conversations/{id}    — one conversation with transcript and current evaluation
GET /api/stats                 — totals, average score, success rate
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.database import SessionLocal
from app.models import Conversation, Evaluation
from app.schemas import (
    ConversationDetailResponse,
    ConversationListItem,
    ConversationListResponse,
    StatsResponse,
)
from services.conversation_store import ConversationStore, load_transcript
from services.evaluation_store import EvaluationStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Conversations"])

# ------------------------------------------------------------------ #
#   Singleton stores                                                   #
# ------------------------------------------------------------------ #

_conversation_store: Optional[ConversationStore] = None
_evaluation_store: Optional[EvaluationStore] = None


def get_conversation_store() -> ConversationStore:
    global _conversation_store
    if _conversation_store is None:
        _conversation_store = ConversationStore(SessionLocal)
    return _conversation_store


def get_evaluation_store() -> EvaluationStore:
    global _evaluation_store
    if _evaluation_store is None:
        _evaluation_store = EvaluationStore(SessionLocal)
    return _evaluation_store


def _list_item(conv: Conversation, evaluation: Optional[Evaluation]) -> dict:
    return {
        "id": conv.conversation_id,
        "agentName": conv.agent_name,
        "startTime": conv.start_time_unix_secs,
        "duration": conv.call_duration_secs,
        "messageCount": conv.message_count,
        "status": conv.status,
        "callSuccessful": conv.call_successful,
        "direction": conv.direction,
        "summary": conv.transcript_summary or conv.call_summary_title,
        "evaluation": json.loads(evaluation.evaluation_json) if evaluation else None,
        "score": evaluation.score if evaluation else None,
    }


# ------------------------------------------------------------------ #
#   GET /api/conversations                                             #
# ------------------------------------------------------------------ #

@router.get(
    "/api/conversations",
    response_model=ConversationListResponse,
    summary="List recent conversations with their current evaluation",
)
def list_conversations(
    limit: int = Query(50, ge=1, le=1000),
    conversations: ConversationStore = Depends(get_conversation_store),
    evaluations: EvaluationStore = Depends(get_evaluation_store),
):
    """Newest first, by call start time."""
    try:
        rows = conversations.list_recent(limit)
        current = evaluations.current_for(c.conversation_id for c in rows)
        return {
            "conversations": [
                ConversationListItem(**_list_item(c, current.get(c.conversation_id)))
                for c in rows
            ]
        }
    except Exception as e:
        logger.error("Error fetching conversations: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")


# ------------------------------------------------------------------ #
#   GET /api/conversations/{id}                                       #
# ------------------------------------------------------------------ #

@router.get(
    "/api/conversations/{conversation_id}",
    response_model=ConversationDetailResponse,
    summary="Get a conversation with transcript and current evaluation",
)
def get_conversation(
    conversation_id: str,
    conversations: ConversationStore = Depends(get_conversation_store),
    evaluations: EvaluationStore = Depends(get_evaluation_store),
):
    try:
        conv = conversations.get(conversation_id)
        evaluation = evaluations.current(conversation_id) if conv else None
    except Exception as e:
        logger.error("Error fetching conversation %s: %s", conversation_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch conversation")

    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")

    return ConversationDetailResponse(
        **_list_item(conv, evaluation),
        agentId=conv.agent_id,
        transcriptSummary=conv.transcript_summary,
        callSummaryTitle=conv.call_summary_title,
        transcript=load_transcript(conv),
        processedAt=conv.processed_at,
    )


# ------------------------------------------------------------------ #
#   GET /api/stats                                                     #
# ------------------------------------------------------------------ #

@router.get("/api/stats", response_model=StatsResponse, summary="Aggregate statistics")
def get_stats(
    conversations: ConversationStore = Depends(get_conversation_store),
    evaluations: EvaluationStore = Depends(get_evaluation_store),
):
    """Average score uses only the current evaluation of each conversation."""
    try:
        total, successful = conversations.outcome_counts()
        scores = evaluations.current_scores()
        evaluated = evaluations.evaluated_count()
    except Exception as e:
        logger.error("Error fetching stats: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch statistics")

    average = sum(scores) / len(scores) if scores else 0.0
    return StatsResponse(
        totalConversations=total,
        evaluatedCount=evaluated,
        unevaluatedCount=max(total - evaluated, 0),
        averageScore=round(average, 1),
        successRate=round(successful / total * 100) if total else 0,
    )
