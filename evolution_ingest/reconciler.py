"""
Conversation reconciliation.

Maps an inbound (instance, phone) pair to exactly one conversation. Two
overlapping deliveries for a new contact can both decide that no
conversation exists and both insert one; the next event for that contact
finds several rows and merges them before anything else happens. The
per-message update (preview, unread counter) is applied only after the
message row is stored, so a redelivery never counts twice.

The merge policy lives in plan_merge(), which only reads attributes and can
be exercised on plain objects. apply_merge() is the persistence wrapper.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from evolution_ingest.metrics import record_conversation_merges
from evolution_ingest.phone import normalize_phone
from evolution_ingest.storage import (
    count_messages,
    create_conversation,
    delete_conversation,
    find_conversations,
    list_conversations,
    reassign_messages,
)

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """No conversation could be found or created for an inbound message."""
    pass


@dataclass
class InboundMessage:
    raw_jid: str
    phone: str
    text: str
    timestamp: str
    from_me: bool = False
    push_name: Optional[str] = None

    @property
    def direction(self) -> str:
        return "outgoing" if self.from_me else "incoming"


@dataclass
class MergePlan:
    primary: Any
    secondaries: List[Any]
    unread_count: int
    last_message_at: Optional[str]
    last_message_text: Optional[str]
    contact_name: Optional[str]


@dataclass
class MergeOutcome:
    moved_messages: int = 0
    deleted_conversations: int = 0
    succeeded: bool = True


@dataclass
class CompactionReport:
    merged_groups: int = 0
    moved_messages: int = 0
    deleted_conversations: int = 0
    normalized_conversations: int = 0
    normalized_messages: int = 0
    failed_groups: List[str] = field(default_factory=list)


def candidate_keys(raw_jid: str, phone: str) -> List[str]:
    """
    Stored phones that may belong to this contact: the raw JID and its
    digits (rows written before normalization was strict) plus the
    resolved phone.
    """
    keys = []
    for key in (phone, raw_jid, normalize_phone(raw_jid)):
        if key and key not in keys:
            keys.append(key)
    return keys


def _activity(conversation: Any):
    return (conversation.last_message_at or "", getattr(conversation, "created_at", None) or "")


def plan_merge(candidates: Sequence[Any], phone: str) -> MergePlan:
    """
    Decide how duplicate conversations collapse into one.

    Primary: the candidate already stored under `phone`, else the most
    recently active one. Unread counters are summed, the newest preview
    wins, and a secondary's display name is only used when the primary has
    none.
    """
    if not candidates:
        raise ValueError("plan_merge needs at least one conversation")

    ordered = sorted(candidates, key=_activity, reverse=True)
    primary = next((c for c in ordered if c.contact_phone == phone), ordered[0])
    secondaries = [c for c in ordered if c is not primary]

    unread = primary.unread_count or 0
    last_at = primary.last_message_at
    last_text = primary.last_message_text
    name = primary.contact_name

    for secondary in secondaries:
        unread += secondary.unread_count or 0
        if secondary.last_message_at and (not last_at or secondary.last_message_at > last_at):
            last_at = secondary.last_message_at
            last_text = secondary.last_message_text
        if not name and secondary.contact_name:
            name = secondary.contact_name

    return MergePlan(
        primary=primary,
        secondaries=secondaries,
        unread_count=unread,
        last_message_at=last_at,
        last_message_text=last_text,
        contact_name=name,
    )


def apply_merge(db: Session, plan: MergePlan, phone: str) -> MergeOutcome:
    """
    Persist a merge plan in one transaction.

    On failure the transaction is rolled back and logged; the primary
    conversation is still usable by the caller.
    """
    primary = plan.primary
    primary_id = primary.id
    secondary_ids = [s.id for s in plan.secondaries]

    try:
        moved = 0
        for secondary in plan.secondaries:
            moved += reassign_messages(db, secondary.id, primary_id)
            delete_conversation(db, secondary)

        primary.contact_phone = phone
        primary.unread_count = plan.unread_count
        primary.last_message_at = plan.last_message_at
        primary.last_message_text = plan.last_message_text
        primary.contact_name = plan.contact_name
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to merge conversations {secondary_ids} into {primary_id}: {e}")
        return MergeOutcome(succeeded=False)

    record_conversation_merges(len(secondary_ids))
    logger.info(
        f"Merged {len(secondary_ids)} duplicate conversation(s) into {primary_id}",
        extra={"phone": phone, "moved_messages": moved, "deleted": secondary_ids},
    )
    return MergeOutcome(moved_messages=moved, deleted_conversations=len(secondary_ids))


def apply_inbound(db: Session, conversation: Any, inbound: InboundMessage) -> None:
    """
    Apply a stored message to its conversation: preview, timestamp, unread
    counter and display name. Call only once the message row exists, so a
    redelivered message never counts twice.
    """
    from evolution_ingest.models import Conversation

    try:
        # out-of-order deliveries must not roll the preview back
        if not conversation.last_message_at or inbound.timestamp >= conversation.last_message_at:
            conversation.last_message_text = inbound.text
            conversation.last_message_at = inbound.timestamp

        if not inbound.from_me:
            # incremented in SQL so concurrent writers do not lose counts
            conversation.unread_count = func.coalesce(Conversation.unread_count, 0) + 1
            if inbound.push_name:
                conversation.contact_name = inbound.push_name

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update conversation {conversation.id}: {e}")


def reconcile_conversation(db: Session, instance: Any, inbound: InboundMessage) -> Tuple[Any, bool]:
    """
    Find, create or merge the conversation for an inbound message.

    Returns (conversation, created). A stored phone that differs from the
    resolved one is migrated in place. The message itself is applied
    separately by apply_inbound() once it has been stored.

    Raises ReconciliationError only when no conversation exists and none
    could be created.
    """
    keys = candidate_keys(inbound.raw_jid, inbound.phone)
    try:
        candidates = find_conversations(db, instance.id, keys)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error searching conversations for {keys}: {e}")
        candidates = []

    if not candidates:
        contact_name = (inbound.push_name if not inbound.from_me else None) or inbound.phone
        try:
            conversation = create_conversation(
                db,
                user_id=instance.user_id,
                instance_id=instance.id,
                contact_phone=inbound.phone,
                contact_name=contact_name,
                last_message_text=inbound.text,
                last_message_at=inbound.timestamp,
                unread_count=0,
            )
        except SQLAlchemyError as e:
            logger.error(f"Error creating conversation for {inbound.phone}: {e}")
            raise ReconciliationError(f"could not create conversation for {inbound.phone}") from e
        return conversation, True

    if len(candidates) > 1:
        logger.warning(
            f"Found {len(candidates)} conversations for {inbound.phone} on instance {instance.id}, merging"
        )
        plan = plan_merge(candidates, inbound.phone)
        apply_merge(db, plan, inbound.phone)
        conversation = plan.primary
    else:
        conversation = candidates[0]

    if conversation.contact_phone != inbound.phone:
        logger.info(
            f"Migrating contact_phone of {conversation.id} "
            f"from {conversation.contact_phone} to {inbound.phone}"
        )
        try:
            conversation.contact_phone = inbound.phone
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to migrate contact_phone of {conversation.id}: {e}")
    return conversation, False


def discard_if_empty(db: Session, conversation: Any) -> bool:
    """
    Delete a conversation that ended up holding no message, e.g. one
    created for a delivery that turned out to be a duplicate.
    """
    conversation_id = conversation.id
    try:
        if count_messages(db, conversation_id):
            return False
        delete_conversation(db, conversation)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to discard empty conversation {conversation_id}: {e}")
        return False
    logger.info(f"Discarded empty conversation {conversation_id}")
    return True


def compact_instance(db: Session, instance_id: str) -> CompactionReport:
    """
    Full reconciliation pass over one instance.

    Groups every conversation by canonical phone, merges each duplicate
    group with the same policy as the inbound path, rewrites
    non-canonical stored phones, and normalizes message sender/receiver
    phones.
    """
    from evolution_ingest.models import Message

    report = CompactionReport()
    groups: Dict[str, List[Any]] = {}
    for conversation in list_conversations(db, instance_id):
        canonical = normalize_phone(conversation.contact_phone) or conversation.contact_phone
        groups.setdefault(canonical, []).append(conversation)

    for phone, group in groups.items():
        if len(group) > 1:
            plan = plan_merge(group, phone)
            renamed = plan.primary.contact_phone != phone
            outcome = apply_merge(db, plan, phone)
            if not outcome.succeeded:
                report.failed_groups.append(phone)
                continue
            report.merged_groups += 1
            report.moved_messages += outcome.moved_messages
            report.deleted_conversations += outcome.deleted_conversations
            if renamed:
                report.normalized_conversations += 1
        elif group[0].contact_phone != phone:
            conversation = group[0]
            try:
                conversation.contact_phone = phone
                db.commit()
                report.normalized_conversations += 1
            except SQLAlchemyError as e:
                db.rollback()
                report.failed_groups.append(phone)
                logger.error(f"Failed to normalize conversation {conversation.id}: {e}")

    try:
        for message in db.query(Message).filter(Message.instance_id == instance_id):
            sender = normalize_phone(message.sender_phone) or message.sender_phone
            receiver = normalize_phone(message.receiver_phone) or message.receiver_phone
            if (sender, receiver) != (message.sender_phone, message.receiver_phone):
                message.sender_phone = sender
                message.receiver_phone = receiver
                report.normalized_messages += 1
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        report.normalized_messages = 0
        logger.error(f"Failed to normalize message phones for instance {instance_id}: {e}")

    logger.info(
        f"Compaction finished for instance {instance_id}",
        extra={
            "merged_groups": report.merged_groups,
            "moved_messages": report.moved_messages,
            "deleted_conversations": report.deleted_conversations,
            "normalized_conversations": report.normalized_conversations,
            "normalized_messages": report.normalized_messages,
        },
    )
    return report
