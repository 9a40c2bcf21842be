"""
ZapFlow - Inbox Actions

Concrete side effects behind the automation callbacks: every action writes
the ``conversations`` / ``chat_inbox_messages`` rows the admin panel reads,
and ``send_message`` also delivers the text to the contact via Uazapi.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from zapflow.models import Conversation, WhatsAppInstance, utcnow
from zapflow.services import supabase_client as supabase_svc
from zapflow.services import uazapi as uazapi_svc
from zapflow.services.automation import InboxCallbacks

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


async def send_message(conversation_id: str, content: str, is_private: bool) -> bool:
    """
    Post an automated message on the conversation.

    Public messages go out through Uazapi first; private notes are only
    stored for the agents.
    """
    row = await supabase_svc.get_conversation(conversation_id)
    if not row:
        logger.warning("send_message: conversation %s not found.", conversation_id)
        return False
    conversation = Conversation.model_validate(row)
    metadata: dict[str, Any] = {"source": "automation"}

    if not is_private:
        instance_row = await supabase_svc.get_instance(conversation.instance_id) if conversation.instance_id else None
        if not instance_row:
            logger.warning("send_message: instance for conversation %s not found.", conversation_id)
            return False
        instance = WhatsAppInstance.model_validate(instance_row)
        sent = await uazapi_svc.send_text(
            instance.instance_key,
            uazapi_svc.format_phone_number(conversation.phone),
            content,
        )
        metadata.update({"whatsapp_id": uazapi_svc.extract_message_id(sent), "status": "sent"})

    await supabase_svc.insert_inbox_message({
        "conversation_id": conversation_id,
        "sender_type": "agent",
        "content": content,
        "is_private": is_private,
        "metadata": metadata,
    })
    if not is_private:
        await supabase_svc.update_conversation(conversation_id, {
            "last_message_at": utcnow().isoformat(),
            "last_message_preview": content[:PREVIEW_LENGTH],
        })
    logger.info(
        "Automation %s posted on conversation %s.",
        "note" if is_private else "message", conversation_id,
    )
    return True


async def assign_label(conversation_id: str, label_id: str) -> None:
    await supabase_svc.add_conversation_label(conversation_id, label_id)


async def resolve(conversation_id: str) -> None:
    await supabase_svc.update_conversation(conversation_id, {
        "status": "resolved",
        "resolved_at": utcnow().isoformat(),
    })
    logger.info("Conversation %s resolved by automation.", conversation_id)


async def toggle_ai(conversation_id: str, enabled: bool) -> None:
    updates: dict[str, object] = {
        "ai_enabled": enabled,
        "ai_paused_at": None if enabled else utcnow().isoformat(),
    }
    # Re-enabling AI hands the conversation back from the human agent
    if enabled:
        updates["assigned_to"] = None
    await supabase_svc.update_conversation(conversation_id, updates)


async def snooze(conversation_id: str, until: datetime) -> None:
    await supabase_svc.update_conversation(conversation_id, {
        "status": "snoozed",
        "snoozed_until": until.isoformat(),
    })


async def set_priority(conversation_id: str, priority: str) -> None:
    await supabase_svc.update_conversation(conversation_id, {"priority": priority})


async def assign_agent(conversation_id: str, agent_id: str) -> None:
    await supabase_svc.update_conversation(conversation_id, {"assigned_to": agent_id})


def build_inbox_callbacks() -> InboxCallbacks:
    return InboxCallbacks(
        on_send_message=send_message,
        on_assign_label=assign_label,
        on_resolve=resolve,
        on_toggle_ai=toggle_ai,
        on_snooze=snooze,
        on_set_priority=set_priority,
        on_assign_agent=assign_agent,
    )
