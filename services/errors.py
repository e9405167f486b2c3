"""
Error taxonomy for the sync and evaluation loops.

Only PersistenceError and TransientNetworkError fail a whole cycle; the rest
are isolated to a single conversation and logged.
"""

from typing import Optional


class ConversationSyncError(Exception):
    """Base class for every error raised by the sync/evaluation pipeline."""


class TransientNetworkError(ConversationSyncError):
    """The conversation list could not be fetched; retried next cycle."""


class DetailFetchFailure(ConversationSyncError):
    """Fetching one conversation's details (status, transcript) failed."""

    def __init__(self, conversation_id: str, message: str):
        super().__init__(f"{conversation_id}: {message}")
        self.conversation_id = conversation_id


class EvaluationFailure(ConversationSyncError):
    """The evaluator raised, timed out, or returned an invalid result."""

    def __init__(self, conversation_id: str, message: str):
        super().__init__(f"{conversation_id}: {message}")
        self.conversation_id = conversation_id


class PersistenceError(ConversationSyncError):
    """A storage write failed; the current cycle is aborted."""


class MalformedPayload(ConversationSyncError, ValueError):
    """The remote source returned something that does not match its schema."""

    def __init__(self, message: str, conversation_id: Optional[str] = None):
        super().__init__(message)
        self.conversation_id = conversation_id
