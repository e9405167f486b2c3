"""Tests for the ElevenLabs remote source."""

import json

import httpx
import pytest

from services.elevenlabs_service import ElevenLabsConfigError, ElevenLabsService
from services.errors import MalformedPayload


def _item(i: int, **overrides) -> dict:
    item = {
        "conversation_id": f"conv-{i:03d}",
        "agent_id": "agent-1",
        "agent_name": "Support Agent",
        "start_time_unix_secs": 1_700_000_000 + i,
        "call_duration_secs": 30,
        "message_count": 4,
        "status": "done",
        "call_successful": "success",
        "direction": "inbound",
    }
    item.update(overrides)
    return item


def _service(handler) -> ElevenLabsService:
    return ElevenLabsService(api_key="test-key", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_since_follows_cursor_across_pages():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        cursor = request.url.params.get("cursor")
        if cursor is None:
            body = {"conversations": [_item(i) for i in range(100)], "has_more": True, "next_cursor": "c1"}
        elif cursor == "c1":
            body = {"conversations": [_item(i) for i in range(100, 140)], "has_more": False, "next_cursor": None}
        else:
            return httpx.Response(400, json={"detail": "bad cursor"})
        return httpx.Response(200, json=body)

    service = _service(handler)
    items = await service.fetch_since(1_700_000_000)
    await service.aclose()

    ids = [item.conversation_id for item in items]
    assert len(items) == 140
    assert len(set(ids)) == 140
    assert ids[0] == "conv-000" and ids[-1] == "conv-139"

    assert len(requests) == 2
    first, second = requests
    assert first.headers["xi-api-key"] == "test-key"
    assert first.url.path == "/v1/convai/conversations"
    assert first.url.params["page_size"] == "100"
    assert first.url.params["call_start_after_unix"] == "1700000000"
    assert "cursor" not in first.url.params
    assert second.url.params["cursor"] == "c1"
    assert second.url.params["call_start_after_unix"] == "1700000000"


@pytest.mark.asyncio
async def test_fetch_since_without_watermark_sends_no_lower_bound():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"conversations": [], "has_more": False, "next_cursor": None})

    service = _service(handler)
    assert await service.fetch_since() == []
    await service.aclose()
    assert "call_start_after_unix" not in seen[0].url.params


@pytest.mark.asyncio
async def test_fetch_since_skips_malformed_items():
    def handler(request):
        body = {
            "conversations": [_item(1), {"conversation_id": "broken", "status": "weird"}, _item(2)],
            "has_more": False,
            "next_cursor": None,
        }
        return httpx.Response(200, json=body)

    service = _service(handler)
    items = await service.fetch_since()
    await service.aclose()
    assert [i.conversation_id for i in items] == ["conv-001", "conv-002"]


@pytest.mark.asyncio
@pytest.mark.parametrize("junk", [None, "conv-x", 42, ["nested"]])
async def test_fetch_since_skips_non_object_items(junk, caplog):
    def handler(request):
        body = {"conversations": [_item(1), junk, _item(2)], "has_more": False, "next_cursor": None}
        return httpx.Response(200, json=body)

    service = _service(handler)
    items = await service.fetch_since()
    await service.aclose()

    assert [i.conversation_id for i in items] == ["conv-001", "conv-002"]
    assert "non-object conversation item" in caplog.text


@pytest.mark.asyncio
async def test_fetch_since_stops_when_has_more_has_no_cursor():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"conversations": [_item(1)], "has_more": True, "next_cursor": None})

    service = _service(handler)
    items = await service.fetch_since()
    await service.aclose()
    assert len(calls) == 1
    assert len(items) == 1


@pytest.mark.asyncio
async def test_fetch_since_passes_filters():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"conversations": [], "has_more": False, "next_cursor": None})

    service = ElevenLabsService(
        api_key="test-key", agent_id="agent-9", transport=httpx.MockTransport(handler)
    )
    await service.fetch_since(call_successful="failure", user_id="u-1")
    await service.aclose()

    params = seen[0].url.params
    assert params["agent_id"] == "agent-9"
    assert params["call_successful"] == "failure"
    assert params["user_id"] == "u-1"
    assert params["summary_mode"] == "include"


@pytest.mark.asyncio
async def test_list_error_propagates_unmodified():
    def handler(request):
        return httpx.Response(503, json={"detail": "unavailable"})

    service = _service(handler)
    with pytest.raises(httpx.HTTPStatusError):
        await service.fetch_since()
    await service.aclose()


@pytest.mark.asyncio
async def test_decode_error_propagates():
    def handler(request):
        return httpx.Response(200, content=b"<html>not json</html>")

    service = _service(handler)
    with pytest.raises(json.JSONDecodeError):
        await service.fetch_since()
    await service.aclose()


@pytest.mark.asyncio
async def test_fetch_details_parses_transcript_and_duration():
    def handler(request):
        assert request.url.path == "/v1/convai/conversations/abc123"
        return httpx.Response(
            200,
            json={
                "conversation_id": "abc123",
                "agent_id": "agent-1",
                "status": "done",
                "transcript": [
                    {"role": "agent", "time_in_call_secs": 0, "message": "Hello!"},
                    {"role": "user", "time_in_call_secs": 2, "message": "Hi", "tool_calls": []},
                ],
                "metadata": {"start_time_unix_secs": 1_700_000_000, "call_duration_secs": 42, "cost": 10},
                "has_audio": True,
            },
        )

    service = _service(handler)
    details = await service.fetch_details("abc123")
    await service.aclose()

    assert details.metadata.call_duration_secs == 42
    assert [m.role for m in details.transcript] == ["agent", "user"]
    assert details.transcript[0].message == "Hello!"


@pytest.mark.asyncio
async def test_fetch_details_rejects_malformed_payload():
    def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    service = _service(handler)
    with pytest.raises(MalformedPayload) as exc_info:
        await service.fetch_details("abc123")
    await service.aclose()
    assert exc_info.value.conversation_id == "abc123"


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("ELEVENLABS_API_KEY", raising=False)
    with pytest.raises(ElevenLabsConfigError, match="ELEVENLABS_API_KEY"):
        ElevenLabsService()
