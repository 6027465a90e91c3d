"""
Tests for the gateway event dispatcher.

Tests cover:
- Event name normalization and unknown events
- QR code and connection lifecycle updates
- Message upserts: text extraction, filtering, idempotency, identity
  resolution, reconciliation and automation hand-off
"""

import asyncio
import json

import httpx
import pytest

from evolution_ingest.automation import AutomationTrigger, BackgroundRunner
from evolution_ingest.bounded_store import BoundedTTLStore
from evolution_ingest.dispatcher import (
    EventDispatcher,
    extract_message_text,
    extract_timestamp,
    normalize_event_name,
)
from evolution_ingest.evolution_client import EvolutionClient
from evolution_ingest.identity import IdentityResolver
from evolution_ingest.memory_sync import ContextCache, OutboundSync, SupermemoryClient, SyncResult
from evolution_ingest.models import Conversation, Instance, Message
from evolution_ingest.schemas import WebhookEnvelope
from evolution_ingest.storage import SessionLocal, count_messages


def upsert(remote_jid="41791234567@s.whatsapp.net", text="Hello", message_id="MSG1", from_me=False, **extra):
    data = {
        "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": message_id},
        "pushName": "Anna",
        "message": {"conversation": text} if text is not None else {"imageMessage": {}},
        "messageType": "conversation",
        "messageTimestamp": 1736935200,
    }
    data.update(extra)
    return data


def envelope(event, data, **extra) -> WebhookEnvelope:
    return WebhookEnvelope(event=event, instance="tenant_1", data=data, **extra)


class Gateway:
    """Records contacts lookups and answers with a fixed contact list."""

    def __init__(self, contacts=None):
        self.contacts = contacts or []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return httpx.Response(200, json=self.contacts)


class SlowGateway(Gateway):
    """Answers after a short delay so overlapping deliveries interleave."""

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.05)
        return super().__call__(request)


class Automation:
    def __init__(self):
        self.payloads = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        return httpx.Response(200)


@pytest.fixture
def gateway():
    return Gateway()


@pytest.fixture
def automation():
    return Automation()


@pytest.fixture
def runner():
    return BackgroundRunner()


def make_dispatcher(gateway, automation, runner) -> EventDispatcher:
    evolution = EvolutionClient(
        base_url="https://gateway.test",
        api_key="gateway-key",
        attempts=1,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(gateway)),
    )
    trigger = AutomationTrigger(
        url="https://automation.test/auto-reply",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(automation)),
    )
    return EventDispatcher(
        resolver=IdentityResolver(evolution),
        sync=OutboundSync(SupermemoryClient("https://memory.test", None), ContextCache(BoundedTTLStore(10))),
        automation=trigger,
        runner=runner,
    )


@pytest.fixture
def dispatcher(gateway, automation, runner):
    return make_dispatcher(gateway, automation, runner)


# =============================================================================
# Pure helpers
# =============================================================================

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("MESSAGES_UPSERT", "messages.upsert"),
        ("messages.upsert", "messages.upsert"),
        ("QRCODE_UPDATED", "qrcode.updated"),
        ("CONNECTION_UPDATE", "connection.update"),
        ("connection-update", "connection.update"),
    ],
)
def test_normalize_event_name(raw, expected):
    assert normalize_event_name(raw) == expected


@pytest.mark.parametrize(
    "message, expected",
    [
        ({"conversation": "plain"}, "plain"),
        ({"extendedTextMessage": {"text": "extended"}}, "extended"),
        ({"text": {"text": "nested"}}, "nested"),
        ({"imageMessage": {"caption": "photo"}}, "photo"),
        ({"videoMessage": {"caption": "clip"}}, "clip"),
        ({"documentMessage": {"caption": "file"}}, "file"),
        ({"ephemeralMessage": {"message": {"extendedTextMessage": {"text": "vanishing"}}}}, "vanishing"),
        ({"viewOnceMessage": {"message": {"imageMessage": {"caption": "once"}}}}, "once"),
        ({"conversation": "   "}, ""),
        ({"audioMessage": {"seconds": 4}}, ""),
        ({}, ""),
    ],
)
def test_extract_message_text(message, expected):
    assert extract_message_text(message) == expected


def test_extract_timestamp():
    assert extract_timestamp({"messageTimestamp": 1736935200}) == "2025-01-15T10:00:00Z"
    assert extract_timestamp({"messageTimestamp": "1736935200"}) == "2025-01-15T10:00:00Z"
    assert extract_timestamp({"messageTimestamp": {"low": 1736935200, "high": 0}}) == "2025-01-15T10:00:00Z"
    assert extract_timestamp({}).endswith("Z")


# =============================================================================
# Instance lifecycle
# =============================================================================

class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, db, make_instance, dispatcher):
        instance = make_instance()
        result = await dispatcher.dispatch(db, envelope("presence.update", {"id": "x"}), instance)
        assert result.result == "ignored"

    @pytest.mark.asyncio
    async def test_qrcode_updated(self, db, make_instance, dispatcher):
        instance = make_instance(instance_status="connecting")

        result = await dispatcher.dispatch(
            db, envelope("QRCODE_UPDATED", {"qrcode": {"base64": "data:image/png;base64,AAA"}}), instance
        )

        assert result.result == "processed"
        assert instance.qr_code == "data:image/png;base64,AAA"
        assert instance.last_qr_update.endswith("Z")

    @pytest.mark.asyncio
    async def test_qrcode_flat_payload(self, db, make_instance, dispatcher):
        instance = make_instance()
        await dispatcher.dispatch(db, envelope("qrcode.updated", {"base64": "BBB"}), instance)
        assert instance.qr_code == "BBB"

    @pytest.mark.asyncio
    async def test_qrcode_without_payload_is_noop(self, db, make_instance, dispatcher):
        instance = make_instance(qr_code="OLD")
        result = await dispatcher.dispatch(db, envelope("qrcode.updated", {}), instance)
        assert result.result == "ignored"
        assert instance.qr_code == "OLD"

    @pytest.mark.asyncio
    async def test_connection_open_sets_owner_phone(self, db, make_instance, dispatcher):
        instance = make_instance(instance_status="connecting", phone_number=None, qr_code="QR")

        result = await dispatcher.dispatch(
            db,
            envelope("connection.update", {"state": "open", "instance": {"owner": "33612345678@s.whatsapp.net"}}),
            instance,
        )

        assert result.result == "processed"
        assert instance.instance_status == "connected"
        assert instance.phone_number == "33612345678"
        assert instance.qr_code is None

    @pytest.mark.asyncio
    async def test_connection_open_uses_wuid(self, db, make_instance, dispatcher):
        instance = make_instance(phone_number=None)
        await dispatcher.dispatch(
            db, envelope("CONNECTION_UPDATE", {"state": "open", "wuid": "33611111111@s.whatsapp.net"}), instance
        )
        assert instance.phone_number == "33611111111"

    @pytest.mark.asyncio
    async def test_connection_close_clears_phone_and_qr(self, db, make_instance, dispatcher):
        instance = make_instance(qr_code="QR")

        await dispatcher.dispatch(db, envelope("connection.update", {"state": "close"}), instance)

        assert instance.instance_status == "disconnected"
        assert instance.phone_number is None
        assert instance.qr_code is None

    @pytest.mark.asyncio
    async def test_connection_connecting(self, db, make_instance, dispatcher):
        instance = make_instance(instance_status="disconnected")
        await dispatcher.dispatch(db, envelope("connection.update", {"state": "connecting"}), instance)
        assert instance.instance_status == "connecting"

    @pytest.mark.asyncio
    async def test_unknown_connection_state_ignored(self, db, make_instance, dispatcher):
        instance = make_instance()
        result = await dispatcher.dispatch(db, envelope("connection.update", {"state": "refused"}), instance)
        assert result.result == "ignored"
        assert instance.instance_status == "connected"


# =============================================================================
# Messages
# =============================================================================

class TestMessageUpsert:
    @pytest.mark.asyncio
    async def test_incoming_message(self, db, make_instance, dispatcher, runner, automation):
        instance = make_instance()

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert()), instance)
        await runner.drain(timeout=1)

        assert result.result == "processed"
        conversation = db.get(Conversation, result.conversation_id)
        assert conversation.contact_phone == "41791234567"
        assert conversation.contact_name == "Anna"
        assert conversation.unread_count == 1
        assert conversation.last_message_text == "Hello"
        assert conversation.last_message_at == "2025-01-15T10:00:00Z"

        message = db.query(Message).one()
        assert message.external_id == "MSG1"
        assert message.direction == "incoming"
        assert message.sender_phone == "41791234567"
        assert message.receiver_phone == "33600000000"
        assert message.timestamp == "2025-01-15T10:00:00Z"

        assert automation.payloads == [
            {
                "conversation_id": conversation.id,
                "instance_id": instance.id,
                "user_id": "user-1",
                "message_text": "Hello",
                "contact_name": "Anna",
                "contact_phone": "41791234567",
            }
        ]

    @pytest.mark.asyncio
    async def test_outgoing_message(self, db, make_instance, dispatcher, runner, automation):
        instance = make_instance()

        result = await dispatcher.dispatch(
            db, envelope("messages.upsert", upsert(from_me=True, pushName="Owner")), instance
        )
        await runner.drain(timeout=1)

        message = db.query(Message).one()
        assert message.direction == "outgoing"
        assert message.sender_phone == "33600000000"
        assert message.receiver_phone == "41791234567"
        conversation = db.get(Conversation, result.conversation_id)
        assert conversation.unread_count == 0
        assert conversation.contact_name == "41791234567"
        assert automation.payloads == []

    @pytest.mark.asyncio
    async def test_no_text_is_noop(self, db, make_instance, dispatcher):
        instance = make_instance()

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert(text=None)), instance)

        assert result.result == "ignored"
        assert db.query(Conversation).count() == 0
        assert db.query(Message).count() == 0

    @pytest.mark.asyncio
    async def test_missing_key_is_noop(self, db, make_instance, dispatcher):
        instance = make_instance()
        result = await dispatcher.dispatch(db, envelope("messages.upsert", {"message": {"conversation": "x"}}), instance)
        assert result.result == "ignored"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("jid", ["120363025246125486@g.us", "status@broadcast"])
    async def test_non_direct_chats_ignored(self, db, make_instance, dispatcher, jid):
        instance = make_instance()

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert(remote_jid=jid)), instance)

        assert result.result == "ignored"
        assert db.query(Conversation).count() == 0

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, db, make_instance, dispatcher, runner, automation):
        instance = make_instance()

        first = await dispatcher.dispatch(db, envelope("messages.upsert", upsert()), instance)
        second = await dispatcher.dispatch(db, envelope("messages.upsert", upsert()), instance)
        await runner.drain(timeout=1)

        assert first.result == "processed"
        assert second.result == "duplicate"
        assert db.query(Message).count() == 1
        assert db.get(Conversation, first.conversation_id).unread_count == 1
        assert len(automation.payloads) == 1

    @pytest.mark.asyncio
    async def test_lid_resolved_through_contacts(self, db, make_instance, dispatcher, gateway):
        instance = make_instance()
        gateway.contacts = [{"remoteJid": "41798887766@s.whatsapp.net", "pushName": "Marc"}]

        result = await dispatcher.dispatch(
            db, envelope("messages.upsert", upsert(remote_jid="123456789@lid", pushName="Marc")), instance
        )

        assert result.result == "processed"
        conversation = db.get(Conversation, result.conversation_id)
        assert conversation.contact_phone == "41798887766"
        assert db.query(Message).one().sender_phone == "41798887766"
        assert gateway.requests[0] == {"where": {"remoteJid": "123456789@lid"}}

    @pytest.mark.asyncio
    async def test_unresolvable_identity_dropped(self, db, make_instance, dispatcher):
        instance = make_instance()

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert(remote_jid="1234@lid")), instance)

        assert result.result == "unresolved"
        assert db.query(Conversation).count() == 0
        assert db.query(Message).count() == 0

    @pytest.mark.asyncio
    async def test_duplicate_conversations_merged(self, db, make_instance, make_conversation, make_message, dispatcher):
        instance = make_instance()
        first = make_conversation(instance, "41791234567", unread_count=1, last_message_at="2025-01-14T09:00:00Z")
        second = make_conversation(
            instance, "41791234567@s.whatsapp.net", unread_count=1, last_message_at="2025-01-14T09:00:05Z"
        )
        make_message(first, "RACE1")
        make_message(second, "RACE2")

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert(message_id="MSG3")), instance)

        conversations = db.query(Conversation).all()
        assert len(conversations) == 1
        merged = conversations[0]
        assert merged.id == result.conversation_id
        assert merged.contact_phone == "41791234567"
        assert merged.unread_count == 3
        assert count_messages(db, merged.id) == 3

    @pytest.mark.asyncio
    async def test_automation_respects_ai_flags(self, db, make_instance, make_conversation, dispatcher, runner, automation):
        instance = make_instance()
        make_conversation(instance, "41791234567", ai_enabled=False)

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert()), instance)
        await runner.drain(timeout=1)

        assert result.result == "processed"
        assert automation.payloads == []

        other = make_instance(instance_name="tenant_2", user_id="user-2", ai_enabled=False)
        await dispatcher.dispatch(db, envelope("messages.upsert", upsert(message_id="MSG2")), other)
        await runner.drain(timeout=1)
        assert automation.payloads == []

    @pytest.mark.asyncio
    async def test_instance_phone_backfilled_from_sender(self, db, make_instance, dispatcher):
        instance = make_instance(phone_number=None)

        await dispatcher.dispatch(
            db,
            envelope("messages.upsert", upsert(), sender="33699999999@s.whatsapp.net"),
            instance,
        )

        assert instance.phone_number == "33699999999"
        assert db.query(Message).one().receiver_phone == "33699999999"

    @pytest.mark.asyncio
    async def test_overlapping_redeliveries_count_once(
        self, db, make_instance, make_conversation, make_message, automation, runner
    ):
        instance = make_instance()
        conversation = make_conversation(instance, "41798887766", contact_name="Marc", unread_count=1)
        make_message(conversation, "EARLIER")
        conversation_id = conversation.id
        gateway = SlowGateway([{"remoteJid": "41798887766@s.whatsapp.net", "pushName": "Marc"}])
        dispatcher = make_dispatcher(gateway, automation, runner)
        data = upsert(remote_jid="123456789@lid", message_id="SAME", pushName="Marc")

        first, second = SessionLocal(), SessionLocal()
        try:
            results = await asyncio.gather(
                dispatcher.dispatch(first, envelope("messages.upsert", data), first.get(Instance, instance.id)),
                dispatcher.dispatch(second, envelope("messages.upsert", data), second.get(Instance, instance.id)),
            )
        finally:
            first.close()
            second.close()
        await runner.drain(timeout=1)

        assert sorted(r.result for r in results) == ["duplicate", "processed"]
        db.expire_all()
        assert db.query(Message).count() == 2
        assert db.get(Conversation, conversation_id).unread_count == 2
        assert len(automation.payloads) == 1

    @pytest.mark.asyncio
    async def test_duplicate_insert_discards_new_conversation(self, db, make_instance, dispatcher, monkeypatch):
        instance = make_instance()

        async def already_stored(*args, **kwargs):
            return SyncResult(duplicate=True)

        monkeypatch.setattr(dispatcher.sync, "sync_message", already_stored)

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert()), instance)

        assert result.result == "duplicate"
        assert result.conversation_id is None
        assert db.query(Conversation).count() == 0

    @pytest.mark.asyncio
    async def test_failed_insert_leaves_conversation_untouched(
        self, db, make_instance, make_conversation, dispatcher, runner, automation, monkeypatch
    ):
        instance = make_instance()
        existing = make_conversation(instance, "41791234567", last_message_text="before")

        async def insert_failed(*args, **kwargs):
            return SyncResult(db_error="disk I/O error")

        monkeypatch.setattr(dispatcher.sync, "sync_message", insert_failed)

        result = await dispatcher.dispatch(db, envelope("messages.upsert", upsert()), instance)
        await runner.drain(timeout=1)

        assert result.result == "write_failed"
        assert existing.unread_count == 0
        assert existing.last_message_text == "before"
        assert automation.payloads == []

    @pytest.mark.asyncio
    async def test_outgoing_lid_never_filed_under_own_number(self, db, make_instance, dispatcher, gateway):
        instance = make_instance()
        gateway.contacts = [{"remoteJid": "33600000000@s.whatsapp.net", "pushName": "Owner Biz"}]

        result = await dispatcher.dispatch(
            db,
            envelope("messages.upsert", upsert(remote_jid="98765@lid", from_me=True, pushName="Owner Biz")),
            instance,
        )

        assert result.result == "unresolved"
        assert gateway.requests == [{"where": {"remoteJid": "98765@lid"}}]
        assert db.query(Conversation).count() == 0
        assert db.query(Message).count() == 0

    @pytest.mark.asyncio
    async def test_outgoing_lid_resolved_to_contact(self, db, make_instance, dispatcher, gateway):
        instance = make_instance()
        gateway.contacts = [
            {"remoteJid": "33600000000@s.whatsapp.net", "pushName": "Owner Biz"},
            {"remoteJid": "41798887766@s.whatsapp.net", "pushName": "Marc"},
        ]

        result = await dispatcher.dispatch(
            db,
            envelope("messages.upsert", upsert(remote_jid="123456789@lid", from_me=True, pushName="Owner Biz")),
            instance,
        )

        assert result.result == "processed"
        assert db.get(Conversation, result.conversation_id).contact_phone == "41798887766"
        message = db.query(Message).one()
        assert message.sender_phone == "33600000000"
        assert message.receiver_phone == "41798887766"
