"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Timestamps are ISO-8601 UTC strings ("2025-01-15T10:00:00Z") so that
ordering by the column is ordering by time.
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from evolution_ingest.storage import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Instance(Base):
    """
    One gateway connection per business user.

    Table: evolution_instances
    instance_name is the name the gateway puts in every webhook event.
    """
    __tablename__ = "evolution_instances"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    instance_name = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    # creating | disconnected | connecting | connected | error
    instance_status = Column(String, nullable=False, default="creating")
    instance_token = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    qr_code = Column(Text, nullable=True)
    last_qr_update = Column(String, nullable=True)
    ai_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=True)


class Conversation(Base):
    """
    One thread between an instance and one external contact.

    No unique constraint on (instance_id, contact_phone):
    concurrent deliveries can insert duplicates, which the reconciler merges.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_instance_phone", "instance_id", "contact_phone"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    instance_id = Column(String, ForeignKey("evolution_instances.id"), nullable=False)
    contact_phone = Column(String, nullable=False)
    contact_name = Column(String, nullable=True)
    last_message_text = Column(Text, nullable=True)
    last_message_at = Column(String, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    is_pinned = Column(Boolean, nullable=False, default=False)
    pinned_at = Column(String, nullable=True)
    ai_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=True)


class Message(Base):
    """
    Append-mostly record of one sent or received text.

    (instance_id, external_id) is unique so that gateway re-deliveries of the
    same message are idempotent. external_id may be NULL for messages that
    did not come from the gateway.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("instance_id", "external_id", name="uq_messages_instance_external"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    instance_id = Column(String, ForeignKey("evolution_instances.id"), nullable=False)
    external_id = Column(String, nullable=True)
    sender_phone = Column(String, nullable=False)
    receiver_phone = Column(String, nullable=False)
    direction = Column(String, nullable=False)  # incoming | outgoing
    content = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="delivered")
    timestamp = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)
