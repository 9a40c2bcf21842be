"""
ZapFlow - Agent Client

Invokes the AI agent routed to a conversation and extracts its reply.

Two kinds of agents:
  - Native (``use_native_ai``): the internal agent-chat endpoint when
    ``AGENT_CHAT_URL`` is configured, otherwise the in-process OpenAI engine.
  - Webhook: an external automation flow (n8n and friends) at ``webhook_url``.

External flows answer with free-form JSON, so the reply is taken from the
first extractor in ``REPLY_EXTRACTORS`` that yields non-empty text.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from openai import OpenAIError

from zapflow.config import get_settings
from zapflow.models import AgentConfig, Conversation, MessageBuffer
from zapflow.worker.ai_engine import run_agent_chat

logger = logging.getLogger(__name__)

SOURCE = "whatsapp-inbox"


class AgentInvocationError(Exception):
    """The agent could not be reached or answered with an error status."""


# ---------------------------------------------------------------------------
# Reply extraction
# ---------------------------------------------------------------------------

ReplyExtractor = Callable[[Any], Optional[str]]


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _bare_string(data: Any) -> Optional[str]:
    return _text(data)


def _field(name: str) -> ReplyExtractor:
    def extract(data: Any) -> Optional[str]:
        if isinstance(data, dict):
            return _text(data.get(name))
        return None

    extract.__name__ = f"field_{name}"
    return extract


def _message_field(data: Any) -> Optional[str]:
    """``message`` as a plain string or as ``{"content": ...}``."""
    if not isinstance(data, dict):
        return None
    message = data.get("message")
    if isinstance(message, dict):
        return _text(message.get("content"))
    return _text(message)


REPLY_EXTRACTORS: list[ReplyExtractor] = [
    _bare_string,
    _field("response"),
    _message_field,
    _field("output"),
    _field("text"),
    _field("reply"),
]


def extract_reply(data: Any) -> str:
    """Reply text from an agent response body; ``""`` when nothing matches."""
    for extractor in REPLY_EXTRACTORS:
        reply = extractor(data)
        if reply:
            return reply
    return ""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

NativeChat = Callable[..., Awaitable[str]]


class AgentClient:
    """Calls the agent for one merged buffer and returns the reply text."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        native_chat: Optional[NativeChat] = None,
    ) -> None:
        self._http_client = http_client
        self._native_chat: NativeChat = native_chat or run_agent_chat

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        return self._http_client

    async def invoke(self, agent: AgentConfig, buffer: MessageBuffer, conversation: Conversation) -> str:
        """
        Send the merged buffer to *agent*.

        Raises ``AgentInvocationError`` on transport errors, non-2xx answers
        or an agent with nowhere to send to.
        """
        message = buffer.combined_text()
        session_id = conversation.id

        if agent.use_native_ai:
            settings = get_settings()
            if settings.agent_chat_url:
                return await self._call_agent_chat(settings.agent_chat_url, agent, buffer, message, session_id)
            return await self._run_native(agent, buffer, message, session_id)

        if not agent.webhook_url:
            raise AgentInvocationError(f"Agent {agent.id} has neither native AI nor a webhook_url")
        return await self._call_webhook(agent, buffer, conversation, message, session_id)

    async def _call_agent_chat(
        self,
        url: str,
        agent: AgentConfig,
        buffer: MessageBuffer,
        message: str,
        session_id: str,
    ) -> str:
        settings = get_settings()
        payload = {
            "agentId": agent.id,
            "message": message,
            "sessionId": session_id,
            "source": SOURCE,
            "phone": buffer.phone,
            "metadata": _buffer_metadata(buffer),
        }
        headers = {"Authorization": f"Bearer {settings.supabase_service_key}"}
        data = await self._post(url, payload, headers)
        return extract_reply(data)

    async def _run_native(
        self,
        agent: AgentConfig,
        buffer: MessageBuffer,
        message: str,
        session_id: str,
    ) -> str:
        try:
            reply = await self._native_chat(
                agent,
                message,
                session_id,
                user_id=buffer.user_id,
                metadata=_buffer_metadata(buffer),
            )
        except OpenAIError as exc:
            raise AgentInvocationError(f"Native AI failed for agent {agent.id}: {exc}") from exc
        return (reply or "").strip()

    async def _call_webhook(
        self,
        agent: AgentConfig,
        buffer: MessageBuffer,
        conversation: Conversation,
        message: str,
        session_id: str,
    ) -> str:
        payload = {
            "message": message,
            "sessionId": session_id,
            "phone": buffer.phone,
            "source": SOURCE,
            "agentName": agent.name,
            "conversationId": conversation.id,
            "contactName": conversation.contact_name,
            "buffered_messages": len(buffer.messages),
            "individual_messages": [m.model_dump(mode="json") for m in buffer.messages],
        }
        data = await self._post(agent.webhook_url or "", payload, {})
        return extract_reply(data)

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        try:
            response = await self._client().post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            logger.error("Agent call to %s failed: %s", url, exc)
            raise AgentInvocationError(f"Agent unreachable at {url}: {exc}") from exc

        if response.is_error:
            logger.error("Agent at %s returned %d: %s", url, response.status_code, response.text[:500])
            raise AgentInvocationError(f"Agent at {url} returned status {response.status_code}")

        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()


def _buffer_metadata(buffer: MessageBuffer) -> dict[str, Any]:
    return {
        "buffered_messages": len(buffer.messages),
        "first_message_at": buffer.first_message_at.isoformat() if buffer.first_message_at else None,
        "last_message_at": buffer.last_message_at.isoformat() if buffer.last_message_at else None,
    }
