"""
ConversationStore — conversation rows plus the sync watermark.

Status is the only change signal: an item whose status matches the stored row
is left alone even when its summary text differs. Rows are written with an
insert-or-update keyed by conversation_id, so re-applying a merge is a no-op
at the storage layer, and a stored transcript is never cleared.
"""

import enum
import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import Conversation, DetailFetchAttempt, SyncState
from app.schemas import (
    STATUS_DONE,
    TERMINAL_STATUSES,
    ConversationDetails,
    ConversationMetadata,
)
from services.errors import PersistenceError

logger = logging.getLogger(__name__)

SYNC_STATE_ID = 1
CALL_OUTCOMES = ("success", "failure", "unknown")


class MergeAction(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class MergePlan:
    """What to do with one fetched item, decided against the stored row."""
    conversation_id: str
    action: MergeAction
    needs_details: bool


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"Upsert is not supported on the {dialect!r} dialect")


class ConversationStore:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        detail_backoff_secs: int = 30,
        detail_backoff_max_secs: int = 3600,
    ):
        self.session_factory = session_factory
        self.detail_backoff_secs = detail_backoff_secs
        self.detail_backoff_max_secs = detail_backoff_max_secs

    # ------------------------------------------------------------------ #
    #  Reads                                                              #
    # ------------------------------------------------------------------ #

    def get(self, conversation_id: str) -> Optional[Conversation]:
        db = self.session_factory()
        try:
            return (
                db.query(Conversation)
                .filter(Conversation.conversation_id == conversation_id)
                .first()
            )
        finally:
            db.close()

    def list_recent(self, limit: int = 50) -> List[Conversation]:
        """Newest first, by start time."""
        db = self.session_factory()
        try:
            return (
                db.query(Conversation)
                .order_by(Conversation.start_time_unix_secs.desc(), Conversation.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    def outcome_counts(self) -> Tuple[int, int]:
        """(total conversations, conversations marked call_successful=success)."""
        db = self.session_factory()
        try:
            total = db.query(func.count(Conversation.id)).scalar() or 0
            successful = (
                db.query(func.count(Conversation.id))
                .filter(Conversation.call_successful == "success")
                .scalar()
                or 0
            )
            return total, successful
        finally:
            db.close()

    def pending_transcripts(self, now: Optional[int] = None) -> List[Conversation]:
        """
        Finished conversations that still have no transcript stored.

        With `now`, rows still waiting out a detail-fetch backoff are left
        out; without it every such row is listed.
        """
        db = self.session_factory()
        try:
            query = db.query(Conversation).filter(
                Conversation.status == STATUS_DONE,
                Conversation.transcript_json.is_(None),
            )
            return (
                self._due(query, now)
                .order_by(Conversation.start_time_unix_secs.asc())
                .all()
            )
        finally:
            db.close()

    def stale_statuses(self, now: Optional[int] = None) -> List[Conversation]:
        """
        Conversations last seen in a non-terminal status.

        The list call only returns conversations that started after the
        watermark, so these are never listed again once the watermark has
        passed them; their status has to be polled through the detail
        endpoint instead.
        """
        db = self.session_factory()
        try:
            query = db.query(Conversation).filter(
                Conversation.status.notin_(TERMINAL_STATUSES)
            )
            return (
                self._due(query, now)
                .order_by(Conversation.start_time_unix_secs.asc())
                .all()
            )
        finally:
            db.close()

    @staticmethod
    def _due(query, now: Optional[int]):
        if now is None:
            return query
        return query.outerjoin(
            DetailFetchAttempt,
            DetailFetchAttempt.conversation_id == Conversation.conversation_id,
        ).filter(
            or_(
                DetailFetchAttempt.conversation_id.is_(None),
                DetailFetchAttempt.next_attempt_at <= now,
            )
        )

    # ------------------------------------------------------------------ #
    #  Merge                                                              #
    # ------------------------------------------------------------------ #

    def plan_merge(self, item: ConversationMetadata) -> MergePlan:
        existing = self.get(item.conversation_id)

        if existing is None:
            action = MergeAction.INSERT
        elif existing.status == item.status:
            action = MergeAction.UNCHANGED
        else:
            action = MergeAction.UPDATE

        has_transcript = existing is not None and existing.transcript_json is not None
        needs_details = (
            action is not MergeAction.UNCHANGED
            and item.status == STATUS_DONE
            and not has_transcript
        )
        return MergePlan(item.conversation_id, action, needs_details)

    def upsert(
        self,
        item: ConversationMetadata,
        processed_at: int,
        details: Optional[ConversationDetails] = None,
    ) -> None:
        """
        Insert the item, or update the mutable fields of an existing row.

        Identity fields (conversation_id, agent, start time, created_at) are
        only written on insert. The transcript column is coalesced so an
        upsert without details keeps whatever transcript is already stored.
        When details are given their duration replaces the list-level one.
        """
        values = {
            "conversation_id": item.conversation_id,
            "agent_id": item.agent_id,
            "agent_name": item.agent_name or "",
            "start_time_unix_secs": item.start_time_unix_secs,
            "call_duration_secs": item.call_duration_secs,
            "message_count": item.message_count,
            "status": item.status,
            "call_successful": item.call_successful,
            "direction": item.direction,
            "transcript_summary": item.transcript_summary,
            "call_summary_title": item.call_summary_title,
            "transcript_json": None,
            "processed_at": processed_at,
        }
        if details is not None:
            values["transcript_json"] = _dump_transcript(details)
            values["call_duration_secs"] = details.metadata.call_duration_secs
            values["message_count"] = len(details.transcript)

        db = self.session_factory()
        try:
            insert = _insert_for(db)
            stmt = insert(Conversation).values(**values)
            update = {
                "status": stmt.excluded.status,
                "call_successful": stmt.excluded.call_successful,
                "transcript_summary": stmt.excluded.transcript_summary,
                "call_summary_title": stmt.excluded.call_summary_title,
                "transcript_json": func.coalesce(
                    stmt.excluded.transcript_json, Conversation.__table__.c.transcript_json
                ),
                "processed_at": stmt.excluded.processed_at,
            }
            if details is not None:
                update["call_duration_secs"] = stmt.excluded.call_duration_secs
                update["message_count"] = stmt.excluded.message_count
            stmt = stmt.on_conflict_do_update(index_elements=["conversation_id"], set_=update)
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to upsert conversation {item.conversation_id}") from e
        finally:
            db.close()

    def attach_transcript(
        self,
        conversation_id: str,
        details: ConversationDetails,
        processed_at: int,
    ) -> bool:
        """
        Store a transcript on a row that has none. Status and summary fields
        are not touched. Returns False if the row already had a transcript.
        """
        db = self.session_factory()
        try:
            updated = (
                db.query(Conversation)
                .filter(
                    Conversation.conversation_id == conversation_id,
                    Conversation.transcript_json.is_(None),
                )
                .update(
                    {
                        Conversation.transcript_json: _dump_transcript(details),
                        Conversation.call_duration_secs: details.metadata.call_duration_secs,
                        Conversation.message_count: len(details.transcript),
                        Conversation.processed_at: processed_at,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated > 0
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to store transcript for {conversation_id}") from e
        finally:
            db.close()

    def refresh_from_details(
        self,
        conversation_id: str,
        details: ConversationDetails,
        processed_at: int,
    ) -> bool:
        """
        Apply a status change seen through the detail endpoint.

        Same rule as a list merge: nothing is written unless the status
        differs from the stored one. A move to done also stores the
        transcript when none is stored yet. Returns True if the row changed.
        """
        db = self.session_factory()
        try:
            conv = (
                db.query(Conversation)
                .filter(Conversation.conversation_id == conversation_id)
                .first()
            )
            if conv is None or conv.status == details.status:
                return False

            conv.status = details.status
            analysis = details.analysis or {}
            if analysis.get("call_successful") in CALL_OUTCOMES:
                conv.call_successful = analysis["call_successful"]
            for field in ("transcript_summary", "call_summary_title"):
                if analysis.get(field):
                    setattr(conv, field, analysis[field])
            if details.status == STATUS_DONE and conv.transcript_json is None:
                conv.transcript_json = _dump_transcript(details)
                conv.call_duration_secs = details.metadata.call_duration_secs
                conv.message_count = len(details.transcript)
            conv.processed_at = processed_at
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to refresh conversation {conversation_id}") from e
        finally:
            db.close()

    # ------------------------------------------------------------------ #
    #  Detail backoff                                                     #
    # ------------------------------------------------------------------ #

    def detail_backoff_for(self, attempts: int) -> int:
        delay = self.detail_backoff_secs * (2 ** max(attempts - 1, 0))
        return min(delay, self.detail_backoff_max_secs)

    def record_detail_attempt(
        self, conversation_id: str, now: int, error: Optional[str] = None
    ) -> DetailFetchAttempt:
        """
        Note a detail fetch that failed (`error` set) or that worked but
        showed no progress. Either way the next fetch for this conversation
        is pushed back exponentially.
        """
        db = self.session_factory()
        try:
            attempt = db.get(DetailFetchAttempt, conversation_id)
            if attempt is None:
                attempt = DetailFetchAttempt(conversation_id=conversation_id, attempts=0)
                db.add(attempt)
            attempt.attempts += 1
            attempt.last_error = error[:2000] if error else None
            attempt.last_attempt_at = now
            attempt.next_attempt_at = now + self.detail_backoff_for(attempt.attempts)
            db.commit()
            db.refresh(attempt)
            return attempt
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to record detail fetch for {conversation_id}") from e
        finally:
            db.close()

    def clear_detail_attempts(self, conversation_id: str) -> None:
        db = self.session_factory()
        try:
            db.query(DetailFetchAttempt).filter(
                DetailFetchAttempt.conversation_id == conversation_id
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to clear detail fetch state for {conversation_id}") from e
        finally:
            db.close()

    def detail_attempt(self, conversation_id: str) -> Optional[DetailFetchAttempt]:
        db = self.session_factory()
        try:
            return db.get(DetailFetchAttempt, conversation_id)
        finally:
            db.close()

    # ------------------------------------------------------------------ #
    #  Watermark                                                          #
    # ------------------------------------------------------------------ #

    def get_watermark(self) -> Optional[int]:
        db = self.session_factory()
        try:
            state = db.get(SyncState, SYNC_STATE_ID)
            return state.last_sync_timestamp if state else None
        finally:
            db.close()

    def advance_watermark(self, timestamp: int) -> int:
        """
        Move the watermark forward to `timestamp`. A value older than the
        stored one is ignored, so the watermark never decreases. Returns the
        stored value.
        """
        db = self.session_factory()
        try:
            state = db.get(SyncState, SYNC_STATE_ID)
            if state is None:
                state = SyncState(id=SYNC_STATE_ID, last_sync_timestamp=timestamp)
                db.add(state)
            elif timestamp > state.last_sync_timestamp:
                state.last_sync_timestamp = timestamp
            else:
                logger.debug(
                    "Watermark kept at %s (candidate %s is not newer)",
                    state.last_sync_timestamp, timestamp,
                )
            db.commit()
            return state.last_sync_timestamp
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("Failed to advance sync watermark") from e
        finally:
            db.close()


def _dump_transcript(details: ConversationDetails) -> str:
    return json.dumps([m.model_dump() for m in details.transcript])


def load_transcript(conversation: Conversation) -> Optional[list]:
    if conversation.transcript_json is None:
        return None
    return json.loads(conversation.transcript_json)
