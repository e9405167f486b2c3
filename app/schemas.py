from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal

ConversationStatus = Literal["initiated", "in-progress", "processing", "done", "failed"]
CallOutcome = Literal["success", "failure", "unknown"]

STATUS_DONE = "done"
TERMINAL_STATUSES = ("done", "failed")


# ------------------------------------------------------------------ #
#  Remote payloads (ElevenLabs Conversational AI)                     #
# ------------------------------------------------------------------ #

class ConversationMetadata(BaseModel):
    """One item of the paginated conversation list."""
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    agent_id: str
    agent_name: Optional[str] = ""
    start_time_unix_secs: int
    call_duration_secs: int = 0
    message_count: int = 0
    status: ConversationStatus
    call_successful: CallOutcome = "unknown"
    direction: Optional[str] = None
    transcript_summary: Optional[str] = None
    call_summary_title: Optional[str] = None


class ConversationsPage(BaseModel):
    """Raw list response; items are validated one by one by the client."""
    conversations: List[Any] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


class TranscriptMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "agent"]
    time_in_call_secs: float = 0
    message: Optional[str] = ""


class DetailsMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    start_time_unix_secs: Optional[int] = None
    call_duration_secs: int = 0


class ConversationDetails(BaseModel):
    """Full conversation: authoritative duration plus the transcript."""
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    agent_id: Optional[str] = None
    status: ConversationStatus
    transcript: List[TranscriptMessage] = Field(default_factory=list)
    metadata: DetailsMetadata = Field(default_factory=DetailsMetadata)
    user_id: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None


# ------------------------------------------------------------------ #
#  Evaluator output                                                   #
# ------------------------------------------------------------------ #

class AgentPerformance(BaseModel):
    responsiveness: int = Field(0, ge=0, le=10)
    accuracy: int = Field(0, ge=0, le=10)
    helpfulness: int = Field(0, ge=0, le=10)


class EvaluationResult(BaseModel):
    """Structured result every evaluator must return."""
    score: float = Field(..., ge=0, le=100, description="Overall quality score, 0-100")
    summary: str = ""
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"
    key_topics: List[str] = Field(default_factory=list)
    agent_performance: AgentPerformance = Field(default_factory=AgentPerformance)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "score": 82,
                "summary": "Caller booked an appointment; agent confirmed details.",
                "strengths": ["Confirmed the booking back to the caller"],
                "improvements": ["Greeting was long"],
                "sentiment": "positive",
                "key_topics": ["booking"],
                "agent_performance": {"responsiveness": 8, "accuracy": 9, "helpfulness": 8},
            }
        }
    )


# ------------------------------------------------------------------ #
#  Read API                                                           #
# ------------------------------------------------------------------ #

class ConversationListItem(BaseModel):
    id: str
    agentName: Optional[str] = None
    startTime: int
    duration: int
    messageCount: int
    status: str
    callSuccessful: str
    direction: Optional[str] = None
    summary: Optional[str] = None
    evaluation: Optional[Dict[str, Any]] = None
    score: Optional[float] = None


class ConversationListResponse(BaseModel):
    conversations: List[ConversationListItem]


class ConversationDetailResponse(ConversationListItem):
    agentId: str
    transcriptSummary: Optional[str] = None
    callSummaryTitle: Optional[str] = None
    transcript: Optional[List[Dict[str, Any]]] = None
    processedAt: int


class StatsResponse(BaseModel):
    totalConversations: int
    evaluatedCount: int
    unevaluatedCount: int
    averageScore: float
    successRate: int
