"""Append-only evaluation results.

Several rows may exist for one conversation; the current one is the row with
the latest created_at (ties broken by row id). Failed attempts are tracked in
evaluation_failures so the retry backoff and quarantine survive a restart.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import Conversation, Evaluation, EvaluationAttempt, utcnow
from app.schemas import STATUS_DONE, EvaluationResult
from services.errors import PersistenceError

logger = logging.getLogger(__name__)


class EvaluationStore:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_attempts: int = 5,
        backoff_secs: int = 60,
        backoff_max_secs: int = 3600,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_secs = backoff_secs
        self.backoff_max_secs = backoff_max_secs

    # ------------------------------------------------------------------ #
    #  Results                                                            #
    # ------------------------------------------------------------------ #

    def add(
        self,
        conversation_id: str,
        result: EvaluationResult,
        created_at: Optional[datetime] = None,
    ) -> Evaluation:
        """Append one evaluation row and clear any recorded failures."""
        db = self.session_factory()
        try:
            row = Evaluation(
                conversation_id=conversation_id,
                evaluation_json=result.model_dump_json(),
                score=result.score,
                summary=result.summary,
                created_at=created_at or utcnow(),
            )
            db.add(row)
            db.query(EvaluationAttempt).filter(
                EvaluationAttempt.conversation_id == conversation_id
            ).delete(synchronize_session=False)
            db.commit()
            db.refresh(row)
            return row
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to store evaluation for {conversation_id}") from e
        finally:
            db.close()

    def current(self, conversation_id: str) -> Optional[Evaluation]:
        db = self.session_factory()
        try:
            return (
                db.query(Evaluation)
                .filter(Evaluation.conversation_id == conversation_id)
                .order_by(Evaluation.created_at.desc(), Evaluation.id.desc())
                .first()
            )
        finally:
            db.close()

    def history(self, conversation_id: str) -> List[Evaluation]:
        """All rows for a conversation, newest first."""
        db = self.session_factory()
        try:
            return (
                db.query(Evaluation)
                .filter(Evaluation.conversation_id == conversation_id)
                .order_by(Evaluation.created_at.desc(), Evaluation.id.desc())
                .all()
            )
        finally:
            db.close()

    def current_for(self, conversation_ids: Iterable[str]) -> Dict[str, Evaluation]:
        ids = list(conversation_ids)
        if not ids:
            return {}
        db = self.session_factory()
        try:
            rows = (
                db.query(Evaluation)
                .filter(Evaluation.conversation_id.in_(ids))
                .order_by(Evaluation.created_at.desc(), Evaluation.id.desc())
                .all()
            )
        finally:
            db.close()

        latest: Dict[str, Evaluation] = {}
        for row in rows:
            latest.setdefault(row.conversation_id, row)
        return latest

    def current_scores(self) -> List[float]:
        """Score of the current evaluation of every evaluated conversation."""
        db = self.session_factory()
        try:
            rows = (
                db.query(Evaluation.conversation_id, Evaluation.score)
                .order_by(Evaluation.created_at.desc(), Evaluation.id.desc())
                .all()
            )
        finally:
            db.close()

        seen: Dict[str, Optional[float]] = {}
        for conversation_id, score in rows:
            seen.setdefault(conversation_id, score)
        return [s for s in seen.values() if s is not None]

    def has_evaluation(self, conversation_id: str) -> bool:
        db = self.session_factory()
        try:
            return (
                db.query(Evaluation.id)
                .filter(Evaluation.conversation_id == conversation_id)
                .first()
                is not None
            )
        finally:
            db.close()

    # ------------------------------------------------------------------ #
    #  Eligibility                                                        #
    # ------------------------------------------------------------------ #

    def _eligible_query(self, db: Session, now: int):
        has_evaluation = (
            db.query(Evaluation.id)
            .filter(Evaluation.conversation_id == Conversation.conversation_id)
            .exists()
        )
        return (
            db.query(Conversation)
            .outerjoin(
                EvaluationAttempt,
                EvaluationAttempt.conversation_id == Conversation.conversation_id,
            )
            .filter(
                Conversation.status == STATUS_DONE,
                Conversation.transcript_json.isnot(None),
                ~has_evaluation,
                or_(
                    EvaluationAttempt.conversation_id.is_(None),
                    and_(
                        EvaluationAttempt.quarantined == False,  # noqa: E712
                        EvaluationAttempt.next_attempt_at <= now,
                    ),
                ),
            )
        )

    def eligible_conversations(self, now: int, limit: Optional[int] = None) -> List[Conversation]:
        """
        Conversations that are done, have a transcript, have no evaluation,
        and are not waiting out a retry backoff or quarantined. Oldest first.
        """
        db = self.session_factory()
        try:
            query = self._eligible_query(db, now).order_by(
                Conversation.start_time_unix_secs.asc(), Conversation.id.asc()
            )
            if limit:
                query = query.limit(limit)
            return query.all()
        finally:
            db.close()

    def is_eligible(self, conversation_id: str, now: int) -> bool:
        db = self.session_factory()
        try:
            return (
                self._eligible_query(db, now)
                .filter(Conversation.conversation_id == conversation_id)
                .first()
                is not None
            )
        finally:
            db.close()

    # ------------------------------------------------------------------ #
    #  Failures                                                           #
    # ------------------------------------------------------------------ #

    def backoff_for(self, attempts: int) -> int:
        """Delay before the next attempt after `attempts` consecutive failures."""
        delay = self.backoff_secs * (2 ** max(attempts - 1, 0))
        return min(delay, self.backoff_max_secs)

    def record_failure(self, conversation_id: str, error: str, now: int) -> EvaluationAttempt:
        db = self.session_factory()
        try:
            failure = db.get(EvaluationAttempt, conversation_id)
            if failure is None:
                failure = EvaluationAttempt(conversation_id=conversation_id, attempts=0)
                db.add(failure)
            failure.attempts += 1
            failure.last_error = error[:2000]
            failure.last_attempt_at = now
            failure.next_attempt_at = now + self.backoff_for(failure.attempts)
            failure.quarantined = failure.attempts >= self.max_attempts
            db.commit()
            db.refresh(failure)
            if failure.quarantined:
                logger.error(
                    "Conversation %s quarantined after %d failed evaluation(s): %s",
                    conversation_id, failure.attempts, failure.last_error,
                )
            return failure
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to record evaluation failure for {conversation_id}") from e
        finally:
            db.close()

    def get_failure(self, conversation_id: str) -> Optional[EvaluationAttempt]:
        db = self.session_factory()
        try:
            return db.get(EvaluationAttempt, conversation_id)
        finally:
            db.close()

    def quarantined(self) -> List[EvaluationAttempt]:
        db = self.session_factory()
        try:
            return (
                db.query(EvaluationAttempt)
                .filter(EvaluationAttempt.quarantined == True)  # noqa: E712
                .order_by(EvaluationAttempt.last_attempt_at.desc())
                .all()
            )
        finally:
            db.close()

    def release(self, conversation_id: str) -> bool:
        """Forget recorded failures so the conversation is retried next cycle."""
        db = self.session_factory()
        try:
            deleted = (
                db.query(EvaluationAttempt)
                .filter(EvaluationAttempt.conversation_id == conversation_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to release {conversation_id}") from e
        finally:
            db.close()

    def evaluated_count(self) -> int:
        db = self.session_factory()
        try:
            return db.query(func.count(func.distinct(Evaluation.conversation_id))).scalar() or 0
        finally:
            db.close()
