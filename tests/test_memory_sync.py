"""
Tests for message persistence with best-effort memory sync.
"""

import json
from unittest.mock import patch

import httpx
import pytest

from evolution_ingest.bounded_store import BoundedTTLStore
from evolution_ingest.memory_sync import (
    ContextCache,
    MemoryStoreError,
    OutboundSync,
    SupermemoryClient,
    build_memory_document,
)
from evolution_ingest.models import Message
from evolution_ingest.schemas import MessageCreate


class Recorder:
    """MockTransport handler answering with a scripted list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def memory_client(handler, api_key="sm-key", **kwargs):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = SupermemoryClient(
        base_url="https://memory.test",
        api_key=api_key,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=fake_sleep,
        **kwargs,
    )
    return client, sleeps


@pytest.fixture
def conversation(make_instance, make_conversation):
    instance = make_instance()
    return make_conversation(instance, "41791234567")


def new_message(conversation, external_id="EXT1", **overrides) -> MessageCreate:
    fields = dict(
        conversation_id=conversation.id,
        instance_id=conversation.instance_id,
        external_id=external_id,
        sender_phone="41791234567",
        receiver_phone="33600000000",
        direction="incoming",
        content="hello",
        timestamp="2025-01-15T10:00:00Z",
    )
    fields.update(overrides)
    return MessageCreate(**fields)


def test_build_memory_document():
    message = MessageCreate(
        id="m-1",
        conversation_id="c-1",
        instance_id="i-1",
        external_id="EXT1",
        sender_phone="41791234567",
        receiver_phone="33600000000",
        direction="outgoing",
        content="hello",
        timestamp="2025-01-15T10:00:00Z",
    )
    doc = build_memory_document(message, "user-1", {"source": "test"})

    assert doc["content"] == "hello"
    assert doc["containerTag"] == "user_user-1"
    assert doc["customId"] == "msg_EXT1"
    assert doc["metadata"]["role"] == "assistant"
    assert doc["metadata"]["conversation_id"] == "c-1"
    assert doc["metadata"]["source"] == "test"

    message.external_id = None
    assert build_memory_document(message, "user-1")["customId"] == "msg_m-1"


class TestSupermemoryClient:
    @pytest.mark.asyncio
    async def test_store_document(self):
        handler = Recorder(httpx.Response(200, json={"id": "doc-1"}))
        client, sleeps = memory_client(handler)

        result = await client.store_document({"content": "hello"})

        assert result == {"id": "doc-1"}
        request = handler.requests[0]
        assert str(request.url) == "https://memory.test/v3/documents"
        assert request.headers["Authorization"] == "Bearer sm-key"
        assert json.loads(request.content) == {"content": "hello"}
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self):
        handler = Recorder(httpx.Response(503), httpx.Response(429), httpx.Response(201, json={}))
        client, sleeps = memory_client(handler, max_attempts=3, backoff_seconds=0.5)

        await client.store_document({"content": "hello"})

        assert len(handler.requests) == 3
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_client_errors_are_final(self):
        handler = Recorder(httpx.Response(400, text="bad document"))
        client, sleeps = memory_client(handler)

        with pytest.raises(MemoryStoreError):
            await client.store_document({"content": "hello"})
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_timeouts(self):
        handler = Recorder(httpx.ReadTimeout("slow"))
        client, sleeps = memory_client(handler, max_attempts=3, backoff_seconds=0.5)

        with pytest.raises(MemoryStoreError):
            await client.store_document({"content": "hello"})
        assert len(handler.requests) == 3
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_search_context_not_supported(self):
        client, _ = memory_client(Recorder(httpx.Response(200)))
        assert await client.search_context("c-1", "query") is None

    def test_configured(self):
        assert SupermemoryClient("https://memory.test", "key").configured
        assert not SupermemoryClient("https://memory.test", None).configured


class TestOutboundSync:
    @pytest.mark.asyncio
    async def test_stores_message_and_document(self, db, conversation):
        handler = Recorder(httpx.Response(200, json={"id": "doc-1"}))
        client, _ = memory_client(handler)
        cache = ContextCache(BoundedTTLStore(max_entries=10))
        cache.put(conversation.id, ["stale context"])
        sync = OutboundSync(client, cache)

        result = await sync.sync_message(db, new_message(conversation), user_id="user-1")

        assert result.ok
        assert result.memory_stored
        assert result.duplicate is False
        assert db.query(Message).count() == 1
        assert cache.get(conversation.id) is None
        body = json.loads(handler.requests[0].content)
        assert body["customId"] == "msg_EXT1"
        assert body["containerTag"] == "user_user-1"

    @pytest.mark.asyncio
    async def test_unconfigured_memory_is_skipped(self, db, conversation):
        client = SupermemoryClient("https://memory.test", None)
        sync = OutboundSync(client, ContextCache(BoundedTTLStore(max_entries=10)))

        result = await sync.sync_message(db, new_message(conversation), user_id="user-1")

        assert result.ok
        assert result.memory_skipped
        assert result.memory_stored is False
        assert db.query(Message).count() == 1

    @pytest.mark.asyncio
    async def test_memory_failure_does_not_fail_primary_write(self, db, conversation):
        handler = Recorder(httpx.Response(401, text="bad key"))
        client, _ = memory_client(handler)
        cache = ContextCache(BoundedTTLStore(max_entries=10))
        cache.put(conversation.id, ["context"])
        sync = OutboundSync(client, cache)

        result = await sync.sync_message(db, new_message(conversation), user_id="user-1")

        assert result.ok
        assert result.memory_error is not None
        assert result.memory_stored is False
        assert db.query(Message).count() == 1
        assert cache.get(conversation.id) == ["context"]

    @pytest.mark.asyncio
    async def test_duplicate_skips_memory(self, db, conversation):
        handler = Recorder(httpx.Response(200, json={}))
        client, _ = memory_client(handler)
        sync = OutboundSync(client, ContextCache(BoundedTTLStore(max_entries=10)))

        await sync.sync_message(db, new_message(conversation), user_id="user-1")
        result = await sync.sync_message(db, new_message(conversation), user_id="user-1")

        assert result.ok
        assert result.duplicate
        assert result.memory_skipped
        assert len(handler.requests) == 1
        assert db.query(Message).count() == 1

    @pytest.mark.asyncio
    async def test_skip_flag(self, db, conversation):
        handler = Recorder(httpx.Response(200, json={}))
        client, _ = memory_client(handler)
        sync = OutboundSync(client, ContextCache(BoundedTTLStore(max_entries=10)))

        result = await sync.sync_message(db, new_message(conversation), user_id="user-1", skip_memory=True)

        assert result.memory_skipped
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_reports_primary_write_failure(self, db, conversation):
        client = SupermemoryClient("https://memory.test", None)
        sync = OutboundSync(client, ContextCache(BoundedTTLStore(max_entries=10)))

        with patch("evolution_ingest.memory_sync.create_message", return_value=(False, False, "disk full")):
            result = await sync.sync_message(db, new_message(conversation), user_id="user-1")

        assert result.ok is False
        assert result.db_error == "disk full"
