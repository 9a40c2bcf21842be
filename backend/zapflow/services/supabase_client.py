"""
ZapFlow - Supabase Client Wrapper

Provides async-friendly helpers around the Supabase Python SDK.
All database access goes through the service-role key so RLS is
bypassed on the backend (the backend is a trusted service).

Read helpers log and return ``None`` / ``[]`` on failure; write helpers log
and re-raise so the caller decides whether the failure is fatal.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from supabase import Client, create_client

from zapflow.config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[Client] = None

BUFFER_TABLE = "ai_message_buffer"

OUTGOING_SENDER_TYPES = ["agent", "ai"]


def _get_client() -> Client:
    """Return a singleton Supabase client."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = create_client(settings.supabase_url, settings.supabase_service_key)
        logger.info("Supabase client initialised for %s", settings.supabase_url)
    return _client


def _first(response: Any) -> Optional[dict[str, Any]]:
    return response.data[0] if response.data else None


# ---------------------------------------------------------------------------
# WhatsApp instances
# ---------------------------------------------------------------------------

async def get_instance(instance_id: str) -> Optional[dict[str, Any]]:
    """Get a whatsapp_instances row by ID."""
    try:
        client = _get_client()
        response = (
            client.table("whatsapp_instances")
            .select("*")
            .eq("id", instance_id)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error getting instance %s.", instance_id)
        return None


async def get_instance_by_key(instance_key: str) -> Optional[dict[str, Any]]:
    """Get a whatsapp_instances row by its UAZAPI token."""
    try:
        client = _get_client()
        response = (
            client.table("whatsapp_instances")
            .select("*")
            .eq("instance_key", instance_key)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error getting instance by key.")
        return None


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

async def get_conversation(conversation_id: str) -> Optional[dict[str, Any]]:
    try:
        client = _get_client()
        response = (
            client.table("conversations")
            .select("*")
            .eq("id", conversation_id)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error getting conversation %s.", conversation_id)
        return None


async def find_conversation(instance_id: str, phone: str) -> Optional[dict[str, Any]]:
    """Find the conversation for a phone number on a given instance."""
    try:
        client = _get_client()
        response = (
            client.table("conversations")
            .select("*")
            .eq("instance_id", instance_id)
            .eq("phone", phone)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error finding conversation for instance=%s phone=%s.", instance_id, phone)
        return None


async def get_conversation_ids_for_phone(phone: str) -> list[str]:
    """Ids of every conversation with *phone*, across instances."""
    try:
        client = _get_client()
        response = client.table("conversations").select("id").eq("phone", phone).execute()
        return [row["id"] for row in response.data or []]
    except Exception:
        logger.exception("Error finding conversations for phone=%s.", phone)
        return []


async def create_conversation(data: dict[str, Any]) -> dict[str, Any]:
    try:
        client = _get_client()
        response = client.table("conversations").insert(data).execute()
        row = _first(response) or {}
        logger.info("Conversation %s created for phone %s.", row.get("id"), data.get("phone"))
        return row
    except Exception:
        logger.exception("Error creating conversation for phone %s.", data.get("phone"))
        raise


async def update_conversation(conversation_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    try:
        client = _get_client()
        response = (
            client.table("conversations")
            .update(updates)
            .eq("id", conversation_id)
            .execute()
        )
        return _first(response) or {}
    except Exception:
        logger.exception("Error updating conversation %s.", conversation_id)
        raise


async def add_conversation_label(conversation_id: str, label_id: str) -> None:
    try:
        client = _get_client()
        client.table("conversation_labels").upsert(
            {"conversation_id": conversation_id, "label_id": label_id},
            on_conflict="conversation_id,label_id",
        ).execute()
        logger.info("Label %s added to conversation %s.", label_id, conversation_id)
    except Exception:
        logger.exception("Error adding label %s to conversation %s.", label_id, conversation_id)
        raise


# ---------------------------------------------------------------------------
# Inbox messages
# ---------------------------------------------------------------------------

async def insert_inbox_message(data: dict[str, Any]) -> dict[str, Any]:
    """Insert a chat_inbox_messages row and return it."""
    try:
        client = _get_client()
        response = client.table("chat_inbox_messages").insert(data).execute()
        return _first(response) or {}
    except Exception:
        logger.exception(
            "Error saving %s message for conversation %s.",
            data.get("sender_type"), data.get("conversation_id"),
        )
        raise


async def get_inbox_message(message_id: str) -> Optional[dict[str, Any]]:
    try:
        client = _get_client()
        response = (
            client.table("chat_inbox_messages")
            .select("*")
            .eq("id", message_id)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error getting inbox message %s.", message_id)
        return None


async def update_inbox_message(message_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    try:
        client = _get_client()
        response = client.table("chat_inbox_messages").update(updates).eq("id", message_id).execute()
        return _first(response) or {}
    except Exception:
        logger.exception("Error updating inbox message %s.", message_id)
        raise


async def get_recent_outgoing_messages(
    limit: int,
    conversation_ids: Optional[list[str]] = None,
    since_iso: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Newest outgoing (``agent`` or ``ai`` sender) messages first.

    Optionally restricted to *conversation_ids* and to rows created at or
    after *since_iso*.
    """
    try:
        client = _get_client()
        query = client.table("chat_inbox_messages").select("*").in_("sender_type", OUTGOING_SENDER_TYPES)
        if conversation_ids is not None:
            query = query.in_("conversation_id", conversation_ids)
        if since_iso:
            query = query.gte("created_at", since_iso)
        response = query.order("created_at", desc=True).limit(limit).execute()
        return response.data or []
    except Exception:
        logger.exception("Error fetching recent outgoing messages (conversations=%s).", conversation_ids)
        return []


# ---------------------------------------------------------------------------
# AI agents / routing / chat history
# ---------------------------------------------------------------------------

async def get_agent(agent_id: str) -> Optional[dict[str, Any]]:
    try:
        client = _get_client()
        response = (
            client.table("ai_agents")
            .select("*")
            .eq("id", agent_id)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error getting agent %s.", agent_id)
        return None


async def get_routed_agent(instance_id: str) -> Optional[dict[str, Any]]:
    """Return the agent routed to a WhatsApp instance (active routing only)."""
    try:
        client = _get_client()
        response = (
            client.table("whatsapp_agent_routing")
            .select("*, agent:ai_agents(*)")
            .eq("instance_id", instance_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
        routing = _first(response)
        return routing.get("agent") if routing else None
    except Exception:
        logger.exception("Error getting agent routing for instance %s.", instance_id)
        return None


async def get_chat_history(session_id: str, limit: int = 20) -> list[dict[str, Any]]:
    """Most recent ai_chat_messages for a session, oldest first."""
    try:
        client = _get_client()
        response = (
            client.table("ai_chat_messages")
            .select("role, content, created_at")
            .eq("session_id", session_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return list(reversed(response.data or []))
    except Exception:
        logger.warning("Could not fetch chat history for session %s.", session_id)
        return []


async def insert_chat_message(
    agent_id: str,
    user_id: Optional[str],
    session_id: str,
    role: str,
    content: str,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    try:
        client = _get_client()
        client.table("ai_chat_messages").insert({
            "agent_id": agent_id,
            "user_id": user_id,
            "session_id": session_id,
            "role": role,
            "content": content,
            "metadata": metadata or {},
        }).execute()
    except Exception:
        logger.exception("Error saving %s chat message for session %s.", role, session_id)
        raise


# ---------------------------------------------------------------------------
# AI message buffer
# ---------------------------------------------------------------------------

async def get_active_buffer(conversation_id: str) -> Optional[dict[str, Any]]:
    """The newest buffer still in ``buffering`` for a conversation."""
    try:
        client = _get_client()
        response = (
            client.table(BUFFER_TABLE)
            .select("*")
            .eq("conversation_id", conversation_id)
            .eq("status", "buffering")
            .order("first_message_at", desc=True)
            .limit(1)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error getting active buffer for conversation %s.", conversation_id)
        raise


async def insert_buffer(row: dict[str, Any]) -> dict[str, Any]:
    try:
        client = _get_client()
        response = client.table(BUFFER_TABLE).insert(row).execute()
        return _first(response) or {}
    except Exception:
        logger.exception("Error creating buffer for conversation %s.", row.get("conversation_id"))
        raise


async def update_buffer_if_status(
    buffer_id: str,
    expected_status: str,
    updates: dict[str, Any],
) -> Optional[dict[str, Any]]:
    """
    Conditional update: ``UPDATE ... WHERE id = ? AND status = ? RETURNING *``.

    Returns the updated row, or ``None`` if the buffer was no longer in
    *expected_status* (someone else moved it first).
    """
    try:
        client = _get_client()
        response = (
            client.table(BUFFER_TABLE)
            .update(updates)
            .eq("id", buffer_id)
            .eq("status", expected_status)
            .execute()
        )
        return _first(response)
    except Exception:
        logger.exception("Error updating buffer %s (expected status=%s).", buffer_id, expected_status)
        raise


async def get_due_buffers(now_iso: str, limit: int) -> list[dict[str, Any]]:
    """Buffers in ``buffering`` whose scheduled response time has passed."""
    try:
        client = _get_client()
        response = (
            client.table(BUFFER_TABLE)
            .select("*")
            .eq("status", "buffering")
            .lte("scheduled_response_at", now_iso)
            .order("scheduled_response_at")
            .limit(limit)
            .execute()
        )
        return response.data or []
    except Exception:
        logger.exception("Error fetching due buffers.")
        raise


async def get_stale_processing_buffers(cutoff_iso: str) -> list[dict[str, Any]]:
    """Buffers claimed before *cutoff_iso* that never reached a terminal state."""
    try:
        client = _get_client()
        response = (
            client.table(BUFFER_TABLE)
            .select("*")
            .eq("status", "processing")
            .lt("claimed_at", cutoff_iso)
            .execute()
        )
        return response.data or []
    except Exception:
        logger.exception("Error fetching stale processing buffers.")
        raise


# ---------------------------------------------------------------------------
# Automation rules / macros
# ---------------------------------------------------------------------------

async def get_automation_rules(user_id: str) -> list[dict[str, Any]]:
    try:
        client = _get_client()
        response = (
            client.table("inbox_automation_rules")
            .select("*")
            .eq("user_id", user_id)
            .order("name")
            .execute()
        )
        return response.data or []
    except Exception:
        logger.exception("Error fetching automation rules for user %s.", user_id)
        return []


async def get_inbox_macros(user_id: str) -> list[dict[str, Any]]:
    """Personal macros of *user_id* plus every global macro."""
    try:
        client = _get_client()
        response = (
            client.table("inbox_macros")
            .select("*")
            .or_(f"user_id.eq.{user_id},visibility.eq.global")
            .order("name")
            .execute()
        )
        return response.data or []
    except Exception:
        logger.exception("Error fetching macros for user %s.", user_id)
        return []
