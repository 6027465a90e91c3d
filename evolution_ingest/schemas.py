"""
Pydantic schemas for request/response validation.

This module contains:
- The gateway event envelope
- Internal write models shared by the dispatcher and the sync helper
- Response models for API responses
"""

import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr


# =============================================================================
# Gateway Event Models
# =============================================================================

class WebhookEnvelope(BaseModel):
    """
    Envelope shared by every Evolution API webhook event.

    Only `event` and `instance` are required. `data` is event specific and
    is read by the dispatcher with tolerant extractors. Extra top-level keys
    (sender, date_time, server_url, apikey...) are kept.
    """
    event: StrictStr = Field(..., min_length=1, description="Gateway event name")
    instance: StrictStr = Field(..., min_length=1, description="Gateway instance name")
    data: Any = Field(default=None, description="Event payload")

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "examples": [
                {
                    "event": "messages.upsert",
                    "instance": "tenant_1",
                    "data": {
                        "key": {
                            "remoteJid": "41791234567@s.whatsapp.net",
                            "fromMe": False,
                            "id": "3EB0C767D26A1D6F",
                        },
                        "pushName": "Anna",
                        "message": {"conversation": "Hello"},
                        "messageTimestamp": 1736935200,
                    },
                }
            ]
        },
    )

    @property
    def sender(self) -> Optional[str]:
        value = (self.model_extra or {}).get("sender")
        return value if isinstance(value, str) else None


class MessageCreate(BaseModel):
    """Row to insert into the messages table."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    instance_id: str
    external_id: Optional[str] = None
    sender_phone: str
    receiver_phone: str
    direction: Literal["incoming", "outgoing"]
    content: str
    status: str = "delivered"
    timestamp: str


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""
    success: bool = Field(default=True, description="Event accepted")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class CompactionReportResponse(BaseModel):
    """Outcome of a full reconciliation pass over one instance."""
    instance: str
    merged_groups: int = Field(..., ge=0)
    moved_messages: int = Field(..., ge=0)
    deleted_conversations: int = Field(..., ge=0)
    normalized_conversations: int = Field(..., ge=0)
    normalized_messages: int = Field(..., ge=0)
