"""
ZapFlow - Native AI Engine (OpenAI ChatCompletion Wrapper)

Runs one chat turn for agents with ``use_native_ai`` enabled:
  - Loads the last turns of the session from ``ai_chat_messages``
  - Sends system prompt + history + the new user message to OpenAI
  - Persists both the user turn and the assistant reply

The session id is the conversation id, so every WhatsApp conversation keeps
its own multi-turn context.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from openai import AsyncOpenAI

from zapflow.config import get_settings
from zapflow.models import AgentConfig
from zapflow.services import supabase_client as supabase_svc

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "Voce e um assistente util e prestativo. "
    "Responda sempre em portugues brasileiro."
)

HISTORY_LIMIT = 20


# ---------------------------------------------------------------------------
# Chat context dataclass
# ---------------------------------------------------------------------------

@dataclass
class AgentChatContext:
    """Holds all the data the AI engine needs to process one turn."""

    agent_id: str
    session_id: str
    system_prompt: str
    model: str
    user_message: str
    user_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, str]] = field(default_factory=list)

    def build_messages(self) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.system_prompt}]
        for turn in self.history:
            if turn.get("role") in ("user", "assistant") and turn.get("content"):
                messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": self.user_message})
        return messages


def _get_openai_client() -> AsyncOpenAI:
    settings = get_settings()
    return AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)


# ---------------------------------------------------------------------------
# Main AI call
# ---------------------------------------------------------------------------

async def run_completion(ctx: AgentChatContext, client: Optional[AsyncOpenAI] = None) -> str:
    """Run a single ChatCompletion turn and return the assistant text."""
    client = client or _get_openai_client()
    messages = ctx.build_messages()

    logger.debug("Sending %d messages to OpenAI (%s).", len(messages), ctx.model)

    response = await client.chat.completions.create(
        model=ctx.model,
        messages=messages,  # type: ignore[arg-type]
        temperature=0.7,
        max_tokens=1000,
    )
    final_text = response.choices[0].message.content or ""
    logger.info("AI response generated (%d chars) for session %s.", len(final_text), ctx.session_id)
    return final_text


async def run_agent_chat(
    agent: AgentConfig,
    message: str,
    session_id: str,
    user_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    client: Optional[AsyncOpenAI] = None,
) -> str:
    """
    Answer *message* as *agent* within *session_id*.

    OpenAI errors propagate to the caller and nothing is saved. Both turns are
    persisted only after a reply exists; persistence failures are logged and
    do not block the reply.
    """
    settings = get_settings()
    meta = {"source": "whatsapp-inbox", **(metadata or {})}

    history = await supabase_svc.get_chat_history(session_id, limit=HISTORY_LIMIT)
    ctx = AgentChatContext(
        agent_id=agent.id,
        session_id=session_id,
        system_prompt=agent.system_prompt or DEFAULT_SYSTEM_PROMPT,
        model=agent.ai_model or settings.openai_model,
        user_message=message,
        user_id=user_id,
        metadata=meta,
        history=history,
    )

    reply = await run_completion(ctx, client=client)
    await _save_turn(ctx, "user", message, meta)
    await _save_turn(ctx, "assistant", reply, {**meta, "model": ctx.model})
    return reply


async def _save_turn(ctx: AgentChatContext, role: str, content: str, metadata: dict[str, Any]) -> None:
    try:
        await supabase_svc.insert_chat_message(
            agent_id=ctx.agent_id,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            role=role,
            content=content,
            metadata=metadata,
        )
    except Exception:
        logger.warning("Could not persist %s turn for session %s.", role, ctx.session_id)
