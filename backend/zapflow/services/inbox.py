"""
ZapFlow - Inbound Inbox Service

Business logic behind ``POST /webhooks/whatsapp-inbox``:
  1. Normalize the payload (standard format or Uazapi v2 envelope)
  2. Resolve the WhatsApp instance (by id or by Uazapi token)
  3. Find or create the conversation, bump unread / reopen resolved ones
  4. Persist the message in ``chat_inbox_messages`` (``fromMe`` echoes of
     messages already stored are skipped)
  5. If the AI may answer, append the text to the conversation's buffer
  6. Publish automation events for the worker (best-effort)

Delivery and read receipts take a separate path: they only move the status
of an outgoing message forward.

The AI reply itself is produced later by the buffer processor.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import TypeAdapter, ValidationError

from zapflow.api.schemas import StandardInboundPayload, UazapiWebhookPayload, strip_jid
from zapflow.config import get_settings
from zapflow.models import (
    AgentConfig,
    AutomationEventType,
    Conversation,
    WhatsAppInstance,
    utcnow,
)
from zapflow.services import rabbitmq as rmq
from zapflow.services import supabase_client as supabase_svc
from zapflow.services.buffer_store import BufferStore

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = {"messages", "message", "messages.upsert", "MESSAGES_UPSERT"}

PREVIEW_LENGTH = 100

MEDIA_PREVIEW_LABELS = {
    "image": "📷 Imagem",
    "video": "🎥 Vídeo",
    "audio": "🎵 Áudio",
    "ptt": "🎤 Áudio",
    "document": "📄 Documento",
    "sticker": "🩹 Sticker",
}

_NON_DIGITS = re.compile(r"\D")

EventPublisher = Callable[..., Awaitable[None]]

_timestamp = TypeAdapter(datetime)


class InboundPayloadError(ValueError):
    """The webhook body cannot be turned into an inbound message."""


class InstanceNotFoundError(LookupError):
    pass


class IgnoredEvent(Exception):
    """Valid webhook we deliberately do not process (status, group, ...)."""

    def __init__(self, reason: str, event: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.event = event


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

@dataclass
class InboundMessage:
    phone: str
    text: str
    contact_name: Optional[str] = None
    instance_id: Optional[str] = None
    instance_key: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    message_id: Optional[str] = None
    from_me: bool = False
    has_media: bool = False

    @property
    def preview(self) -> str:
        if self.text:
            return self.text[:PREVIEW_LENGTH]
        if self.has_media:
            return MEDIA_PREVIEW_LABELS.get(self.media_type or "", "📎 Anexo")
        return ""


def normalize_payload(body: Any) -> InboundMessage:
    """
    Turn a webhook body into an ``InboundMessage``.

    Raises ``IgnoredEvent`` for non-message events and group chats, and
    ``InboundPayloadError`` when nothing usable can be extracted.
    """
    if not isinstance(body, dict):
        raise InboundPayloadError("Could not parse message data")

    event = body.get("EventType") or body.get("event")
    if event and event not in MESSAGE_EVENTS:
        raise IgnoredEvent("non-message event", event)

    if isinstance(body.get("message"), dict):
        try:
            payload = UazapiWebhookPayload.model_validate(body)
        except ValidationError as exc:
            raise InboundPayloadError(f"Invalid Uazapi payload: {exc.error_count()} error(s)") from exc
        msg = payload.message
        if msg.is_group:
            raise IgnoredEvent("group message", event)
        phone = msg.phone
        has_media = msg.has_media or bool(msg.media_type) or bool(msg.media_url)
        return InboundMessage(
            phone=phone,
            text=msg.body_text,
            contact_name=msg.sender_name or phone,
            instance_key=payload.token or payload.instance,
            media_url=msg.media_url,
            media_type=msg.media_type,
            message_id=msg.id or msg.messageid,
            from_me=msg.from_me,
            has_media=has_media,
        )

    if body.get("phone") and body.get("message"):
        try:
            standard = StandardInboundPayload.model_validate(body)
        except ValidationError as exc:
            raise InboundPayloadError(f"Invalid payload: {exc.error_count()} error(s)") from exc
        return InboundMessage(
            phone=standard.phone,
            text=standard.message,
            contact_name=standard.contact_name or standard.phone,
            instance_id=standard.instance_id,
            instance_key=standard.instance_key,
            media_url=standard.media_url,
            media_type=standard.media_type,
            message_id=standard.message_id,
            has_media=bool(standard.media_url),
        )

    raise InboundPayloadError("Could not parse message data")


# ---------------------------------------------------------------------------
# Delivery / read receipts
# ---------------------------------------------------------------------------

STATUS_EVENTS = {
    "message_ack", "ack", "message.ack", "messages.ack", "acks", "MessageAck", "message-ack",
    "status", "message.status", "messages.status", "receipt", "read", "delivered",
    "message.update", "messages.update", "message_update", "messages_update", "MessageUpdate", "message-update",
}

ACK_STATUSES = {0: "sending", 1: "sent", 2: "delivered", 3: "read"}

STATUS_STRING_ACKS = {
    "pending": 0, "sending": 0,
    "sent": 1, "server": 1,
    "delivered": 2, "device": 2,
    "read": 3, "played": 3,
}

STATUS_ORDER = {"sending": 0, "sent": 1, "delivered": 2, "read": 3}

STATUS_SCAN_LIMIT = 100
STATUS_PHONE_SCAN_LIMIT = 10


@dataclass
class StatusUpdate:
    event: Optional[str]
    message_id: Optional[str]
    phone: Optional[str]
    status: Optional[str]


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_status_update(body: Any) -> Optional[StatusUpdate]:
    """
    Recognize a delivery/read receipt.

    Returns ``None`` when *body* is not a status event. A receipt is either a
    known status event name or any payload carrying an inline ``ack`` (top
    level, on the message or under ``data``) or a ``data.status`` string.
    """
    if not isinstance(body, dict):
        return None
    message = _dict(body.get("message"))
    data = _dict(body.get("data"))
    event = body.get("EventType") or body.get("event")

    inline_ack = (
        _is_number(body.get("ack"))
        or message.get("ack") is not None
        or data.get("ack") is not None
        or data.get("status") is not None
    )
    if event not in STATUS_EVENTS and not inline_ack:
        return None

    key = _dict(data.get("key"))
    message_id = message.get("messageid") or message.get("id") or body.get("id") or key.get("id")
    if message_id:
        message_id = _short_id(str(message_id))

    ack: Optional[int] = None
    for candidate in (body.get("ack"), message.get("ack"), data.get("ack")):
        if _is_number(candidate):
            ack = int(candidate)
            break
    else:
        if isinstance(data.get("status"), str):
            ack = STATUS_STRING_ACKS.get(data["status"].lower())

    phone: Optional[str] = None
    for jid in (message.get("chatid"), message.get("sender_pn"), key.get("remoteJid")):
        if jid:
            phone = strip_jid(str(jid))
            break
    else:
        if body.get("phone"):
            phone = _NON_DIGITS.sub("", str(body["phone"]))
        elif body.get("remoteJid"):
            phone = strip_jid(str(body["remoteJid"]))

    return StatusUpdate(
        event=event,
        message_id=message_id or None,
        phone=phone or None,
        status=ACK_STATUSES.get(ack) if ack is not None else None,
    )


async def apply_status_update(update: StatusUpdate) -> bool:
    """
    Move an outgoing message's delivery status forward.

    The message is found by its WhatsApp id; failing that, the most recent
    outgoing message to the same phone that has not reached the new status
    is updated. Statuses never move backwards. Errors are logged, never
    raised.
    """
    if not update.message_id and not update.phone:
        logger.info("Status update (%s) without message id or phone; ignoring.", update.event)
        return False
    if update.status is None:
        logger.info("Status update for %s has no usable ack; ignoring.", update.message_id or update.phone)
        return False

    try:
        if update.message_id:
            rows = await supabase_svc.get_recent_outgoing_messages(STATUS_SCAN_LIMIT)
            match = next(
                (r for r in rows if _short_id(_saved_whatsapp_id(r)) == update.message_id),
                None,
            )
            if match is not None:
                return await _advance_status(match, update.status)
            logger.info("No outgoing message with whatsapp_id %s.", update.message_id)

        if update.phone:
            conversation_ids = await supabase_svc.get_conversation_ids_for_phone(update.phone)
            if not conversation_ids:
                logger.info("No conversations for phone %s; status %s dropped.", update.phone, update.status)
                return False
            rows = await supabase_svc.get_recent_outgoing_messages(
                STATUS_PHONE_SCAN_LIMIT, conversation_ids=conversation_ids,
            )
            for row in rows:
                if _status_order(row) < STATUS_ORDER[update.status]:
                    return await _advance_status(row, update.status)
    except Exception:
        logger.exception("Status update %s for %s failed.", update.status, update.message_id or update.phone)
    return False


def _status_order(row: dict[str, Any]) -> int:
    return STATUS_ORDER.get(_dict(row.get("metadata")).get("status"), -1)


async def _advance_status(row: dict[str, Any], status: str) -> bool:
    current = _dict(row.get("metadata")).get("status")
    if STATUS_ORDER[status] <= _status_order(row):
        logger.debug("Message %s already %s; not moving back to %s.", row.get("id"), current, status)
        return False
    await supabase_svc.update_inbox_message(row["id"], {
        "metadata": {**_dict(row.get("metadata")), "status": status, "status_updated_at": utcnow().isoformat()},
        "is_read": status == "read",
    })
    logger.info("Message %s status %s -> %s.", row.get("id"), current, status)
    return True


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

ECHO_LOOKBACK_SECONDS = 60
ECHO_SCAN_LIMIT = 15
ECHO_CONTENT_WINDOW_SECONDS = 30


@dataclass
class IngestResult:
    conversation_id: str
    message_id: Optional[str] = None
    buffer_id: Optional[str] = None
    events: list[str] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None


async def resolve_instance(inbound: InboundMessage) -> WhatsAppInstance:
    if inbound.instance_id:
        row = await supabase_svc.get_instance(inbound.instance_id)
    elif inbound.instance_key:
        row = await supabase_svc.get_instance_by_key(inbound.instance_key)
    else:
        raise InboundPayloadError("instanceKey or instanceId is required")
    if not row:
        raise InstanceNotFoundError("WhatsApp instance not found")
    return WhatsAppInstance.model_validate(row)


async def ingest_message(
    inbound: InboundMessage,
    store: Optional[BufferStore] = None,
    publish: Optional[EventPublisher] = None,
) -> IngestResult:
    """Persist one inbound WhatsApp message and queue it for the AI if allowed."""
    phone = _NON_DIGITS.sub("", inbound.phone)
    if not phone:
        raise InboundPayloadError("phone is required")
    if not inbound.text and not inbound.has_media:
        raise InboundPayloadError("message or media is required")

    instance = await resolve_instance(inbound)
    now_iso = utcnow().isoformat()
    events: list[str] = []

    row = await supabase_svc.find_conversation(instance.id, phone)
    if row is None:
        row = await supabase_svc.create_conversation({
            "instance_id": instance.id,
            "user_id": instance.user_id,
            "phone": phone,
            "contact_name": inbound.contact_name or phone,
            "status": "open",
            "ai_enabled": True,
            "unread_count": 1,
            "last_message_at": now_iso,
            "last_message_preview": inbound.preview,
        })
        conversation = Conversation.model_validate(row)
        events.append(AutomationEventType.CONVERSATION_CREATED.value)
    else:
        conversation = Conversation.model_validate(row)
        updates: dict[str, Any] = {
            "last_message_at": now_iso,
            "last_message_preview": inbound.preview,
        }
        if not inbound.from_me:
            if conversation.status == "resolved":
                updates["status"] = "open"
                events.append(AutomationEventType.CONVERSATION_REOPENED.value)
            updates["unread_count"] = (conversation.unread_count or 0) + 1
            updates["contact_name"] = inbound.contact_name or conversation.contact_name
        await supabase_svc.update_conversation(conversation.id, updates)
        conversation = conversation.model_copy(update={"status": updates.get("status", conversation.status)})

    if inbound.from_me:
        echo = await _find_echo(conversation.id, inbound)
        if echo is not None:
            existing, reason = echo
            logger.info("Outgoing message already stored as %s (%s); skipping.", existing.get("id"), reason)
            return IngestResult(
                conversation_id=conversation.id,
                message_id=existing.get("id"),
                events=events,
                skipped=True,
                skip_reason=reason,
            )

    message_row = await supabase_svc.insert_inbox_message(_message_row(conversation.id, phone, inbound))
    result = IngestResult(conversation_id=conversation.id, message_id=message_row.get("id"))
    logger.info(
        "Inbound %s message stored for conversation %s (phone=%s).",
        "outgoing" if inbound.from_me else "incoming", conversation.id, phone,
    )

    if not inbound.from_me:
        events.append(AutomationEventType.MESSAGE_CREATED.value)
        if inbound.text and conversation.ai_should_respond:
            result.buffer_id = await _buffer_for_agent(instance, conversation, phone, inbound.text, store)

    result.events = events
    await _publish_events(events, conversation.id, result.message_id, publish)
    return result


def _short_id(value: str) -> str:
    return value.split(":")[-1]


def _saved_whatsapp_id(row: dict[str, Any]) -> str:
    metadata = _dict(row.get("metadata"))
    return str(metadata.get("whatsapp_id") or metadata.get("whatsapp_message_id") or "")


def _created_at(row: dict[str, Any]) -> Optional[datetime]:
    if not row.get("created_at"):
        return None
    value = _timestamp.validate_python(row["created_at"])
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _find_echo(conversation_id: str, inbound: InboundMessage) -> Optional[tuple[dict[str, Any], str]]:
    """
    Find the stored row a ``fromMe`` webhook echoes.

    Messages sent through ZapFlow are stored before the gateway reports them
    back. Match on the WhatsApp id first (full id, id without the instance
    prefix, or substring), then on identical content within a short window.
    Rows stored from earlier device echoes never match by content.
    """
    now = utcnow()
    since = now - timedelta(seconds=ECHO_LOOKBACK_SECONDS)
    rows = await supabase_svc.get_recent_outgoing_messages(
        ECHO_SCAN_LIMIT, conversation_ids=[conversation_id], since_iso=since.isoformat(),
    )
    if not rows:
        return None

    incoming = inbound.message_id or ""
    incoming_short = _short_id(incoming)
    for row in rows:
        saved = _saved_whatsapp_id(row)
        if not saved or not incoming_short:
            continue
        if saved == incoming or _short_id(saved) == incoming_short or incoming_short in saved:
            return row, "duplicate_by_whatsapp_id"

    content = inbound.text or inbound.preview
    if content:
        cutoff = now - timedelta(seconds=ECHO_CONTENT_WINDOW_SECONDS)
        for row in rows:
            if _dict(row.get("metadata")).get("source") == "device":
                continue
            created_at = _created_at(row)
            if row.get("content") == content and created_at is not None and created_at >= cutoff:
                return row, "duplicate_by_content"
    return None


def _message_row(conversation_id: str, phone: str, inbound: InboundMessage) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "phone": phone,
        "whatsapp_message_id": inbound.message_id,
        "whatsapp_id": inbound.message_id,
        "has_media": inbound.has_media,
        "original_media_type": inbound.media_type,
    }
    if inbound.from_me:
        metadata.update({"source": "device", "status": "sent", "sent_by": "Celular"})
    return {
        "conversation_id": conversation_id,
        "sender_type": "agent" if inbound.from_me else "contact",
        "sender_id": None,
        "content": inbound.text,
        "media_url": inbound.media_url,
        "media_type": inbound.media_type,
        "is_read": inbound.from_me,
        "metadata": metadata,
    }


async def _buffer_for_agent(
    instance: WhatsAppInstance,
    conversation: Conversation,
    phone: str,
    text: str,
    store: Optional[BufferStore],
) -> Optional[str]:
    agent_row = await supabase_svc.get_routed_agent(instance.id)
    if not agent_row:
        logger.info("No active agent routed to instance %s; AI will not answer.", instance.id)
        return None
    agent = AgentConfig.model_validate(agent_row)
    if not agent.can_answer_whatsapp:
        logger.info("Agent '%s' is inactive or not enabled for WhatsApp.", agent.name)
        return None

    if agent.message_buffer_enabled is False:
        window = 0
    else:
        window = agent.buffer_wait_seconds or get_settings().buffer_debounce_seconds

    buffer = await (store or BufferStore()).append(
        conversation.id,
        phone,
        instance.id,
        agent.id,
        text,
        user_id=instance.user_id,
        debounce_seconds=window,
        max_messages=agent.buffer_max_messages,
    )
    return buffer.id


async def _publish_events(
    events: list[str],
    conversation_id: str,
    message_id: Optional[str],
    publish: Optional[EventPublisher],
) -> None:
    publish = publish or rmq.publish_automation_event
    occurred_at = utcnow().isoformat()
    for event_type in events:
        # Fire-and-forget: automation must never break message ingestion
        try:
            await publish(
                event_type,
                conversation_id,
                message_id=message_id if event_type == AutomationEventType.MESSAGE_CREATED.value else None,
                occurred_at=occurred_at,
            )
        except Exception:
            logger.exception("FAILED to publish '%s' for conversation %s.", event_type, conversation_id)
