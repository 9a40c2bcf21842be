"""
ZapFlow - Pydantic Schemas for Webhook and API Payloads

Inbound WhatsApp messages arrive either in our internal standard format or as
a Uazapi v2 webhook (``EventType`` + ``message`` object).  Only the fields we
actually use are declared; the rest are silently ignored thanks to
``model_config = ConfigDict(extra="ignore")``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from zapflow.models import AutomationEventType

JID_SUFFIXES = ("@s.whatsapp.net", "@g.us")


def strip_jid(value: Optional[str]) -> str:
    """``5591999999999@s.whatsapp.net`` -> ``5591999999999``."""
    result = value or ""
    for suffix in JID_SUFFIXES:
        result = result.replace(suffix, "")
    return result


# ---------------------------------------------------------------------------
# Inbound WhatsApp webhook
# ---------------------------------------------------------------------------

class StandardInboundPayload(BaseModel):
    """Internal standard format (other services and manual tests)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    phone: str
    message: str
    instance_key: Optional[str] = Field(None, alias="instanceKey")
    instance_id: Optional[str] = Field(None, alias="instanceId")
    contact_name: Optional[str] = Field(None, alias="contactName")
    media_url: Optional[str] = Field(None, alias="mediaUrl")
    media_type: Optional[str] = Field(None, alias="mediaType")
    message_id: Optional[str] = Field(None, alias="messageId")


class UazapiMessage(BaseModel):
    """The ``message`` object of a Uazapi v2 ``messages`` event."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    chatid: Optional[str] = None
    sender_pn: Optional[str] = None
    sender_name: Optional[str] = Field(None, alias="senderName")
    text: Optional[str] = None
    content: Optional[Any] = None
    caption: Optional[str] = None
    from_me: bool = Field(False, alias="fromMe")
    is_group: bool = Field(False, alias="isGroup")
    id: Optional[str] = None
    messageid: Optional[str] = None
    has_media: bool = Field(False, alias="hasMedia")
    media_url: Optional[str] = Field(None, alias="mediaUrl")
    media_type: Optional[str] = Field(None, alias="mediaType")

    @property
    def phone(self) -> str:
        # Outgoing messages carry the contact in chatid, incoming in sender_pn
        return strip_jid(self.chatid if self.from_me else self.sender_pn)

    @property
    def body_text(self) -> str:
        if self.text:
            return self.text
        if isinstance(self.content, dict) and self.content.get("text"):
            return str(self.content["text"])
        return self.caption or ""


class UazapiWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_type: Optional[str] = Field(None, alias="EventType")
    event: Optional[str] = None
    token: Optional[str] = None
    instance: Optional[str] = None
    message: UazapiMessage

    @property
    def event_name(self) -> Optional[str]:
        return self.event_type or self.event


class InboxWebhookResponse(BaseModel):
    success: bool = True
    conversation_id: Optional[str] = Field(None, serialization_alias="conversationId")
    message_id: Optional[str] = Field(None, serialization_alias="messageId")
    skipped: bool = False
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Buffer processor trigger
# ---------------------------------------------------------------------------

class BufferProcessorResponse(BaseModel):
    success: bool = True
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    reclaimed: int = 0
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Automation events
# ---------------------------------------------------------------------------

class AutomationEventPayload(BaseModel):
    """Inbox event forwarded to the automation worker."""

    model_config = ConfigDict(extra="ignore")

    event_type: AutomationEventType
    conversation_id: str
    message_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
