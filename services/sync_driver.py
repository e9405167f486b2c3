"""
SyncDriver — pull conversations from the remote source into the local store.

One cycle:
  1. read the watermark and fetch every conversation that started after it
  2. merge each item (insert / update on status change / leave alone)
  3. poll the detail endpoint for stored conversations still in progress,
     which the list call stops returning once the watermark passes them
  4. retry the transcript fetch for finished conversations still missing one
  5. advance the watermark to the wall-clock time the cycle completed

A failed list fetch or a storage error fails the whole cycle and leaves the
watermark where it was. Failures to fetch one transcript are logged and only
affect that conversation; repeated detail fetches for one conversation back
off exponentially.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Set

import httpx

from app.schemas import STATUS_DONE, ConversationDetails, ConversationMetadata
from services.conversation_store import ConversationStore, MergeAction
from services.errors import DetailFetchFailure, MalformedPayload, TransientNetworkError

logger = logging.getLogger(__name__)


class RemoteSource(Protocol):
    def fetch_since(self, watermark: Optional[int] = None) -> Awaitable[List[ConversationMetadata]]:
        ...

    def fetch_details(self, conversation_id: str) -> Awaitable[ConversationDetails]:
        ...


@dataclass
class SyncCycleResult:
    fetched: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    refreshed: int = 0
    transcripts_fetched: int = 0
    detail_failures: int = 0
    watermark: Optional[int] = None


class SyncDriver:

    def __init__(
        self,
        source: RemoteSource,
        store: ConversationStore,
        clock: Callable[[], float] = time.time,
        watermark_overlap_secs: int = 0,
    ):
        self.source = source
        self.store = store
        self.clock = clock
        self.watermark_overlap_secs = watermark_overlap_secs

    def _now(self) -> int:
        return int(self.clock())

    async def run_cycle(self) -> SyncCycleResult:
        result = SyncCycleResult()
        last_sync = self.store.get_watermark()

        logger.info(
            "[Sync] Fetching conversations since %s",
            time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(last_sync)) if last_sync else "beginning",
        )
        try:
            items = await self.source.fetch_since(last_sync)
        except (httpx.HTTPError, ValueError) as e:
            raise TransientNetworkError(f"Conversation list fetch failed: {e}") from e

        result.fetched = len(items)
        seen: Set[str] = set()
        attempted: Set[str] = set()

        for item in items:
            seen.add(item.conversation_id)
            plan = self.store.plan_merge(item)
            if plan.action is MergeAction.UNCHANGED:
                result.unchanged += 1
                logger.debug("[Sync] %s unchanged (status=%s)", item.conversation_id, item.status)
                continue

            details = None
            failure = None
            if plan.needs_details:
                attempted.add(item.conversation_id)
                try:
                    details = await self._fetch_details(item.conversation_id, result)
                except DetailFetchFailure as e:
                    failure = e

            # storage errors propagate and abort the cycle
            self.store.upsert(item, processed_at=self._now(), details=details)

            if failure is not None:
                self.store.record_detail_attempt(item.conversation_id, self._now(), error=str(failure))
            elif details is not None:
                result.transcripts_fetched += 1
                self.store.clear_detail_attempts(item.conversation_id)

            if plan.action is MergeAction.INSERT:
                result.new += 1
            else:
                result.updated += 1

        await self._refresh_statuses(seen, attempted, result)
        await self._backfill_transcripts(attempted, result)

        candidate = self._now() - self.watermark_overlap_secs
        result.watermark = self.store.advance_watermark(candidate)

        logger.info(
            "[Sync] Fetched %d, stored %d new, %d updated, %d unchanged, %d refreshed; "
            "%d transcript(s) fetched, %d detail fetch(es) failed; watermark=%s",
            result.fetched, result.new, result.updated, result.unchanged, result.refreshed,
            result.transcripts_fetched, result.detail_failures, result.watermark,
        )
        return result

    async def _refresh_statuses(
        self, seen: Set[str], attempted: Set[str], result: SyncCycleResult
    ) -> None:
        """
        Poll the detail endpoint for stored rows still in a non-terminal
        status that this cycle's list did not return. Rows whose status has
        not moved are backed off like failed fetches.
        """
        for conversation in self.store.stale_statuses(now=self._now()):
            conversation_id = conversation.conversation_id
            if conversation_id in seen:
                continue
            attempted.add(conversation_id)
            try:
                details = await self._fetch_details(conversation_id, result)
            except DetailFetchFailure as e:
                self.store.record_detail_attempt(conversation_id, self._now(), error=str(e))
                continue

            if self.store.refresh_from_details(conversation_id, details, processed_at=self._now()):
                result.refreshed += 1
                if details.status == STATUS_DONE:
                    result.transcripts_fetched += 1
                self.store.clear_detail_attempts(conversation_id)
                logger.info(
                    "[Sync] %s moved from %s to %s",
                    conversation_id, conversation.status, details.status,
                )
            else:
                self.store.record_detail_attempt(conversation_id, self._now())

    async def _backfill_transcripts(self, attempted: Set[str], result: SyncCycleResult) -> None:
        """
        Retry the detail fetch for finished rows that are still missing a
        transcript, whether or not they appeared in this cycle's batch.
        Rows inside their retry backoff are left for a later cycle.
        """
        for conversation in self.store.pending_transcripts(now=self._now()):
            conversation_id = conversation.conversation_id
            if conversation_id in attempted:
                continue
            attempted.add(conversation_id)
            try:
                details = await self._fetch_details(conversation_id, result)
            except DetailFetchFailure as e:
                self.store.record_detail_attempt(conversation_id, self._now(), error=str(e))
                continue

            if self.store.attach_transcript(conversation_id, details, processed_at=self._now()):
                result.transcripts_fetched += 1
            self.store.clear_detail_attempts(conversation_id)

    async def _fetch_details(self, conversation_id: str, result: SyncCycleResult) -> ConversationDetails:
        try:
            details = await self.source.fetch_details(conversation_id)
        except (httpx.HTTPError, MalformedPayload, ValueError) as e:
            failure = DetailFetchFailure(conversation_id, str(e) or type(e).__name__)
            result.detail_failures += 1
            logger.error("[Sync] Failed to fetch conversation details: %s", failure)
            raise failure from e

        logger.debug("[Sync] Fetched details for conversation %s", conversation_id)
        return details
