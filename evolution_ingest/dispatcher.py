"""
Gateway event dispatcher.

Routes an authenticated event to the handler for its type:

- qrcode.updated     store the new QR payload on the instance
- connection.update  move the instance through its lifecycle
- messages.upsert    resolve sender, reconcile conversation, store message,
                     and hand incoming messages to automation

Every handler returns a DispatchResult; the webhook acknowledges all of
them with 200. Only ReconciliationError (no conversation could be created)
escapes, and the webhook turns it into a 500.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from evolution_ingest.automation import AutomationRequest, AutomationTrigger, BackgroundRunner, run_automation
from evolution_ingest.identity import IdentityResolver, ResolutionContext
from evolution_ingest.memory_sync import OutboundSync
from evolution_ingest.metrics import record_automation
from evolution_ingest.phone import is_group, normalize_phone
from evolution_ingest.reconciler import InboundMessage, apply_inbound, discard_if_empty, reconcile_conversation
from evolution_ingest.schemas import MessageCreate, WebhookEnvelope
from evolution_ingest.storage import epoch_to_iso, message_exists, update_instance, utc_now_iso

logger = logging.getLogger(__name__)

EVENT_QRCODE_UPDATED = "qrcode.updated"
EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_MESSAGES_UPSERT = "messages.upsert"

CONNECTION_STATES = {
    "open": "connected",
    "close": "disconnected",
    "connecting": "connecting",
}

# wrappers whose inner "message" holds one of the text shapes
_WRAPPERS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2")
_CAPTIONED = ("imageMessage", "videoMessage", "documentMessage")


@dataclass
class DispatchResult:
    result: str  # processed | ignored | duplicate | unresolved | write_failed
    conversation_id: Optional[str] = None


def normalize_event_name(event: str) -> str:
    """MESSAGES_UPSERT, messages-upsert and messages.upsert are the same event."""
    return event.strip().lower().replace("_", ".").replace("-", ".")


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def extract_message_text(message: Any, _depth: int = 0) -> str:
    """First populated text among the shapes the gateway uses."""
    if not isinstance(message, dict) or _depth > 3:
        return ""

    text = _text(message.get("conversation"))
    if text:
        return text

    for container in ("extendedTextMessage", "text"):
        inner = message.get(container)
        if isinstance(inner, dict):
            text = _text(inner.get("text"))
            if text:
                return text

    for media in _CAPTIONED:
        inner = message.get(media)
        if isinstance(inner, dict):
            text = _text(inner.get("caption"))
            if text:
                return text

    for wrapper in _WRAPPERS:
        inner = message.get(wrapper)
        if isinstance(inner, dict):
            text = extract_message_text(inner.get("message"), _depth + 1)
            if text:
                return text

    return ""


def extract_timestamp(data: Dict[str, Any]) -> str:
    raw = data.get("messageTimestamp")
    if isinstance(raw, dict):
        raw = raw.get("low")
    if isinstance(raw, str) and raw.isdigit():
        raw = int(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
        return epoch_to_iso(raw)
    return utc_now_iso()


class EventDispatcher:
    def __init__(
        self,
        resolver: IdentityResolver,
        sync: OutboundSync,
        automation: AutomationTrigger,
        runner: BackgroundRunner,
    ):
        self.resolver = resolver
        self.sync = sync
        self.automation = automation
        self.runner = runner
        self._handlers = {
            EVENT_QRCODE_UPDATED: self.handle_qrcode,
            EVENT_CONNECTION_UPDATE: self.handle_connection,
            EVENT_MESSAGES_UPSERT: self.handle_message,
        }

    async def dispatch(self, db: Session, envelope: WebhookEnvelope, instance: Any) -> DispatchResult:
        event = normalize_event_name(envelope.event)
        data = envelope.data if isinstance(envelope.data, dict) else {}

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring event {envelope.event} for {envelope.instance}")
            return DispatchResult("ignored")
        return await handler(db, envelope, instance, data)

    # =========================================================================
    # QR code
    # =========================================================================

    async def handle_qrcode(self, db: Session, envelope: WebhookEnvelope, instance: Any, data: Dict[str, Any]) -> DispatchResult:
        qrcode = data.get("qrcode")
        payload = _text(qrcode.get("base64")) if isinstance(qrcode, dict) else ""
        payload = payload or _text(data.get("base64"))
        if not payload:
            return DispatchResult("ignored")

        logger.info(f"Updating QR code for {instance.instance_name}")
        if not update_instance(db, instance, qr_code=payload, last_qr_update=utc_now_iso()):
            return DispatchResult("write_failed")
        return DispatchResult("processed")

    # =========================================================================
    # Connection state
    # =========================================================================

    async def handle_connection(self, db: Session, envelope: WebhookEnvelope, instance: Any, data: Dict[str, Any]) -> DispatchResult:
        state = data.get("state")
        new_status = CONNECTION_STATES.get(state) if isinstance(state, str) else None
        logger.info(f"Connection update for {instance.instance_name}: {state}")
        if new_status is None:
            return DispatchResult("ignored")

        fields: Dict[str, Any] = {"instance_status": new_status}
        if new_status == "connected":
            owner_info = data.get("instance")
            owner = owner_info.get("owner") if isinstance(owner_info, dict) else None
            phone = normalize_phone(owner or data.get("wuid"))
            if phone:
                fields["phone_number"] = phone
            fields["qr_code"] = None
        elif new_status == "disconnected":
            fields["phone_number"] = None
            fields["qr_code"] = None

        if not update_instance(db, instance, **fields):
            return DispatchResult("write_failed")
        logger.info(f"Updated status of {instance.instance_name} to {new_status}")
        return DispatchResult("processed")

    # =========================================================================
    # Messages
    # =========================================================================

    async def handle_message(self, db: Session, envelope: WebhookEnvelope, instance: Any, data: Dict[str, Any]) -> DispatchResult:
        key = data.get("key")
        message = data.get("message")
        if not isinstance(key, dict) or not isinstance(message, dict):
            logger.info("Message ignored - invalid message data")
            return DispatchResult("ignored")

        remote_jid = _text(key.get("remoteJid"))
        text = extract_message_text(message)
        if not text or not remote_jid:
            logger.info(
                f"Message ignored - no text content. "
                f"Type: {data.get('messageType', 'unknown')}, remoteJid: {remote_jid or None}"
            )
            return DispatchResult("ignored")

        if is_group(remote_jid) or remote_jid.endswith("@broadcast"):
            logger.info(f"Message ignored - not a direct chat: {remote_jid}")
            return DispatchResult("ignored")

        external_id = _text(key.get("id")) or None
        if message_exists(db, instance.id, external_id):
            logger.info(f"Duplicate delivery of message {external_id}")
            return DispatchResult("duplicate")

        from_me = bool(key.get("fromMe"))
        instance_phone = normalize_phone(instance.phone_number)
        if not instance_phone and envelope.sender:
            instance_phone = normalize_phone(envelope.sender)
            if instance_phone:
                logger.info(f"Using sender as phone number of {instance.instance_name}: {instance_phone}")
                update_instance(db, instance, phone_number=instance_phone)

        ctx = ResolutionContext.from_message(instance.instance_name, data, own_phone=instance_phone or None)
        resolution = await self.resolver.resolve(ctx)
        if not resolution.resolved:
            return DispatchResult("unresolved")

        contact_phone = resolution.phone
        own_phone = instance_phone or contact_phone

        inbound = InboundMessage(
            raw_jid=remote_jid,
            phone=contact_phone,
            text=text,
            timestamp=extract_timestamp(data),
            from_me=from_me,
            push_name=ctx.push_name,
        )
        conversation, created = reconcile_conversation(db, instance, inbound)
        conversation_id = conversation.id

        sync = await self.sync.sync_message(
            db,
            MessageCreate(
                conversation_id=conversation_id,
                instance_id=instance.id,
                external_id=external_id,
                sender_phone=own_phone if from_me else contact_phone,
                receiver_phone=contact_phone if from_me else own_phone,
                direction=inbound.direction,
                content=text,
                status="delivered",
                timestamp=inbound.timestamp,
            ),
            user_id=instance.user_id,
            metadata={"source": "evolution-webhook"},
        )
        if sync.duplicate:
            # an overlapping delivery stored it first and already counted it
            if created and discard_if_empty(db, conversation):
                conversation_id = None
            return DispatchResult("duplicate", conversation_id)
        if not sync.ok:
            return DispatchResult("write_failed", conversation_id)

        apply_inbound(db, conversation, inbound)
        logger.info(f"Message stored in conversation {conversation_id} at {inbound.timestamp}")

        if not from_me:
            self._trigger_automation(instance, conversation, inbound)

        return DispatchResult("processed", conversation_id)

    def _trigger_automation(self, instance: Any, conversation: Any, inbound: InboundMessage) -> None:
        if conversation.ai_enabled is False or instance.ai_enabled is False:
            record_automation("skipped")
            return
        if not self.automation.enabled:
            logger.debug("Automation not configured, skipping")
            record_automation("skipped")
            return

        request = AutomationRequest(
            conversation_id=conversation.id,
            instance_id=instance.id,
            user_id=instance.user_id,
            message_text=inbound.text,
            contact_name=conversation.contact_name,
            contact_phone=inbound.phone,
        )
        self.runner.submit(run_automation(self.automation, request), name=f"automation:{conversation.id}")
        record_automation("submitted")
