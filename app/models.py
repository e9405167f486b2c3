from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo anyway)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, unique=True, nullable=False)
    agent_id = Column(String, nullable=False, index=True)
    agent_name = Column(String, nullable=False, default="")
    start_time_unix_secs = Column(Integer, nullable=False)
    call_duration_secs = Column(Integer, nullable=False, default=0)
    message_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)                 # initiated | in-progress | processing | done | failed
    call_successful = Column(String, nullable=False, default="unknown")
    direction = Column(String, nullable=True)
    transcript_summary = Column(Text, nullable=True)
    call_summary_title = Column(Text, nullable=True)
    transcript_json = Column(Text, nullable=True)           # never cleared once set
    processed_at = Column(Integer, nullable=False)          # epoch secs of last local merge
    created_at = Column(DateTime, default=utcnow, nullable=False)


Index("idx_start_time", Conversation.start_time_unix_secs.desc())


class Evaluation(Base):
    __tablename__ = "evaluations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String, ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    evaluation_json = Column(Text, nullable=False)
    score = Column(Float, nullable=True, index=True)
    summary = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class EvaluationAttempt(Base):
    """Failed evaluation attempts for one conversation; drives retry backoff."""
    __tablename__ = "evaluation_failures"

    conversation_id = Column(
        String, ForeignKey("conversations.conversation_id"), primary_key=True
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(Integer, nullable=False)
    next_attempt_at = Column(Integer, nullable=False)
    quarantined = Column(Boolean, nullable=False, default=False)


class DetailFetchAttempt(Base):
    """Detail fetches that failed or showed no progress; drives detail backoff."""
    __tablename__ = "detail_fetch_attempts"

    conversation_id = Column(
        String, ForeignKey("conversations.conversation_id"), primary_key=True
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)                # None when the fetch worked but status had not moved
    last_attempt_at = Column(Integer, nullable=False)
    next_attempt_at = Column(Integer, nullable=False)


class SyncState(Base):
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True)                  # always 1
    last_sync_timestamp = Column(Integer, nullable=False)
