"""Shared fixtures: a fresh SQLite database per test, stores, fakes."""

from typing import Dict, List, Optional, Set

import httpx
import pytest

from app.database import init_db, make_engine, make_session_factory
from app.schemas import ConversationDetails, ConversationMetadata
from services.conversation_store import ConversationStore
from services.evaluation_store import EvaluationStore


BASE_START = 1_700_000_000


def build_metadata(conversation_id: str = "abc123", status: str = "done", **overrides) -> ConversationMetadata:
    data = {
        "conversation_id": conversation_id,
        "agent_id": "agent-1",
        "agent_name": "Support Agent",
        "start_time_unix_secs": BASE_START,
        "call_duration_secs": 60,
        "message_count": 4,
        "status": status,
        "call_successful": "success",
        "direction": "inbound",
        "transcript_summary": "Caller asked about opening hours.",
        "call_summary_title": "Opening hours",
    }
    data.update(overrides)
    return ConversationMetadata.model_validate(data)


def build_details(
    conversation_id: str = "abc123",
    messages: int = 5,
    duration: int = 95,
    status: str = "done",
    analysis: Optional[dict] = None,
) -> ConversationDetails:
    transcript = [
        {
            "role": "user" if i % 2 == 0 else "agent",
            "time_in_call_secs": i * 10,
            "message": f"message {i}",
        }
        for i in range(messages)
    ]
    return ConversationDetails.model_validate(
        {
            "conversation_id": conversation_id,
            "agent_id": "agent-1",
            "status": status,
            "transcript": transcript,
            "analysis": analysis,
            "metadata": {"start_time_unix_secs": BASE_START, "call_duration_secs": duration},
        }
    )


class FakeClock:
    def __init__(self, now: float = BASE_START + 3600):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemoteSource:
    """In-memory stand-in for ElevenLabsService."""

    def __init__(self):
        self.items: List[ConversationMetadata] = []
        self.details: Dict[str, ConversationDetails] = {}
        self.failing_details: Set[str] = set()
        self.list_error: Optional[Exception] = None
        self.fetch_since_calls: List[Optional[int]] = []
        self.detail_calls: List[str] = []

    async def fetch_since(self, watermark: Optional[int] = None) -> List[ConversationMetadata]:
        self.fetch_since_calls.append(watermark)
        if self.list_error is not None:
            raise self.list_error
        # same lower bound the real list call applies (call_start_after_unix)
        return [
            item for item in self.items
            if watermark is None or item.start_time_unix_secs > watermark
        ]

    async def fetch_details(self, conversation_id: str) -> ConversationDetails:
        self.detail_calls.append(conversation_id)
        if conversation_id in self.failing_details:
            raise httpx.ConnectError(f"connection refused for {conversation_id}")
        if conversation_id not in self.details:
            request = httpx.Request("GET", f"https://api.test/v1/convai/conversations/{conversation_id}")
            response = httpx.Response(404, request=request)
            raise httpx.HTTPStatusError("404 Not Found", request=request, response=response)
        return self.details[conversation_id]


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def conversation_store(session_factory):
    return ConversationStore(session_factory)


@pytest.fixture
def evaluation_store(session_factory):
    return EvaluationStore(session_factory, max_attempts=3, backoff_secs=60, backoff_max_secs=600)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemoteSource()


@pytest.fixture
def make_metadata():
    return build_metadata


@pytest.fixture
def make_details():
    return build_details
