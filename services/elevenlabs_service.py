"""
ElevenLabsService — async client for the ElevenLabs Conversational AI API.

Responsibilities:
  - list_conversations()     → fetch one page of conversation metadata
  - fetch_since()            → follow the cursor until the source is exhausted
  - fetch_details()          → full conversation (transcript + authoritative duration)

The client keeps no local state. Transport and decode errors propagate to the
caller unmodified; retrying is the caller's job (the next sync cycle).
"""

import os
import logging
from typing import Optional, Dict, Any, List

import httpx
from pydantic import ValidationError

from app.config import DEFAULT_ELEVENLABS_BASE_URL
from app.schemas import ConversationDetails, ConversationMetadata, ConversationsPage
from services.errors import MalformedPayload

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class ElevenLabsConfigError(Exception):
    """Raised when required ElevenLabs env vars are missing."""


class ElevenLabsService:
    """
    Thin wrapper around the /convai/conversations endpoints.
    Instantiate once and share across cycles; call aclose() on shutdown.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        agent_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("ELEVENLABS_API_KEY", "")
        if not self.api_key:
            raise ElevenLabsConfigError(
                "ELEVENLABS_API_KEY is not set. Add it to your .env file."
            )
        self.base_url = base_url or os.getenv("ELEVENLABS_BASE_URL", DEFAULT_ELEVENLABS_BASE_URL)
        self.default_agent_id = agent_id
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"xi-api-key": self.api_key},
            timeout=timeout,
            transport=transport,
        )
        logger.info("ElevenLabsService initialized (base_url=%s, timeout=%ss)", self.base_url, timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------ #
    #  List                                                               #
    # ------------------------------------------------------------------ #

    async def list_conversations(
        self,
        cursor: Optional[str] = None,
        agent_id: Optional[str] = None,
        call_successful: Optional[str] = None,
        call_start_before_unix: Optional[int] = None,
        call_start_after_unix: Optional[int] = None,
        user_id: Optional[str] = None,
        page_size: int = PAGE_SIZE,
        summary_mode: str = "include",
    ) -> ConversationsPage:
        """
        Fetch a single page of conversations.

        Only filters that are set are sent. Raises httpx.HTTPStatusError on a
        non-2xx response and ValueError if the body is not a page object.
        """
        params: Dict[str, Any] = {"page_size": page_size, "summary_mode": summary_mode}
        if cursor:
            params["cursor"] = cursor
        if agent_id:
            params["agent_id"] = agent_id
        if call_successful:
            params["call_successful"] = call_successful
        if call_start_before_unix is not None:
            params["call_start_before_unix"] = call_start_before_unix
        if call_start_after_unix is not None:
            params["call_start_after_unix"] = call_start_after_unix
        if user_id:
            params["user_id"] = user_id

        response = await self.client.get("/convai/conversations", params=params)
        response.raise_for_status()
        return ConversationsPage.model_validate(response.json())

    async def fetch_since(
        self,
        watermark: Optional[int] = None,
        **filters: Any,
    ) -> List[ConversationMetadata]:
        """
        Return every conversation that started after `watermark`.

        Pages are requested until the source reports has_more=False. An item
        that fails validation is logged and skipped; the rest of the page is
        kept. Items repeated across pages are returned once.
        """
        if filters.get("agent_id") is None and self.default_agent_id:
            filters["agent_id"] = self.default_agent_id
        if watermark is not None:
            filters["call_start_after_unix"] = watermark

        collected: Dict[str, ConversationMetadata] = {}
        cursor: Optional[str] = None
        pages = 0

        while True:
            page = await self.list_conversations(cursor=cursor, **filters)
            pages += 1

            for raw in page.conversations:
                if not isinstance(raw, dict):
                    bad = MalformedPayload(f"skipping non-object conversation item: {type(raw).__name__}")
                    logger.warning("%s", bad)
                    continue
                try:
                    item = ConversationMetadata.model_validate(raw)
                except ValidationError as e:
                    bad = MalformedPayload(
                        f"skipping malformed conversation item: {e.error_count()} error(s)",
                        conversation_id=raw.get("conversation_id"),
                    )
                    logger.warning("%s (conversation_id=%s)", bad, bad.conversation_id)
                    continue
                collected[item.conversation_id] = item

            if not page.has_more:
                break
            if not page.next_cursor:
                logger.warning("Source reported has_more without a cursor after %d page(s); stopping", pages)
                break
            cursor = page.next_cursor

        logger.debug("Fetched %d conversation(s) over %d page(s)", len(collected), pages)
        return list(collected.values())

    # ------------------------------------------------------------------ #
    #  Detail                                                             #
    # ------------------------------------------------------------------ #

    async def fetch_details(self, conversation_id: str) -> ConversationDetails:
        """
        Fetch one conversation with its full transcript.

        Raises:
            httpx.HTTPError:  transport failure or non-2xx response.
            MalformedPayload: the body does not look like a conversation.
        """
        response = await self.client.get(f"/convai/conversations/{conversation_id}")
        response.raise_for_status()
        try:
            return ConversationDetails.model_validate(response.json())
        except ValidationError as e:
            raise MalformedPayload(
                f"conversation details did not validate: {e.error_count()} error(s)",
                conversation_id=conversation_id,
            ) from e
