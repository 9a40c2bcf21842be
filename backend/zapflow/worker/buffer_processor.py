"""
ZapFlow - AI Buffer Processor

Poll-and-drain worker for ``ai_message_buffer``:
  1. Fail buffers stuck in ``processing`` past the claim timeout
  2. Fetch due ``buffering`` buffers (bounded batch, oldest schedule first)
  3. Claim each one with a conditional ``buffering -> processing`` update
  4. Merge the buffered messages and ask the routed agent for one reply
  5. Record the reply, wait like a human would, then send it via Uazapi and
     tag the stored reply with its WhatsApp id
  6. Mark the buffer ``completed`` (or ``failed`` on lookup / agent errors)

One bad buffer never aborts the run.  Triggered by the worker's cron loop and
by ``POST /webhooks/buffer-processor``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from zapflow.config import Settings, get_settings
from zapflow.models import (
    AgentConfig,
    Conversation,
    MessageBuffer,
    ProcessorRunSummary,
    WhatsAppInstance,
    utcnow,
)
from zapflow.services import supabase_client as supabase_svc
from zapflow.services import uazapi as uazapi_svc
from zapflow.services.agent_client import AgentClient, AgentInvocationError
from zapflow.services.buffer_store import BufferStore
from zapflow.services.humanizer import compute_typing_duration_ms, draw_response_delay_ms

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


class BufferLookupError(Exception):
    """A buffer points at a conversation, instance or agent that no longer exists."""


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class InboxDirectory(Protocol):
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def get_instance(self, instance_id: str) -> Optional[WhatsAppInstance]: ...

    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]: ...

    async def record_ai_reply(
        self, conversation: Conversation, agent: AgentConfig, buffer: MessageBuffer, reply: str
    ) -> dict[str, Any]: ...

    async def mark_reply_sent(self, message: dict[str, Any], whatsapp_id: Optional[str]) -> None: ...


class MessagingGateway(Protocol):
    async def send_presence(self, instance_token: Optional[str], number: str, presence: str = ...) -> bool: ...

    async def send_text(self, instance_token: Optional[str], number: str, text: str) -> Any: ...


class SupabaseInboxDirectory:
    """Conversation / instance / agent lookups backed by Supabase."""

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = await supabase_svc.get_conversation(conversation_id)
        return Conversation.model_validate(row) if row else None

    async def get_instance(self, instance_id: str) -> Optional[WhatsAppInstance]:
        row = await supabase_svc.get_instance(instance_id)
        return WhatsAppInstance.model_validate(row) if row else None

    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        row = await supabase_svc.get_agent(agent_id)
        return AgentConfig.model_validate(row) if row else None

    async def record_ai_reply(
        self, conversation: Conversation, agent: AgentConfig, buffer: MessageBuffer, reply: str
    ) -> dict[str, Any]:
        message = await supabase_svc.insert_inbox_message({
            "conversation_id": conversation.id,
            "sender_type": "ai",
            "content": reply,
            "metadata": {
                "agent_id": agent.id,
                "agent_name": agent.name,
                "buffered_messages": len(buffer.messages),
                "status": "sending",
            },
        })
        await supabase_svc.update_conversation(conversation.id, {
            "last_message_at": utcnow().isoformat(),
            "last_message_preview": reply[:PREVIEW_LENGTH],
        })
        return message

    async def mark_reply_sent(self, message: dict[str, Any], whatsapp_id: Optional[str]) -> None:
        if not message.get("id"):
            return
        metadata = {**(message.get("metadata") or {}), "status": "sent"}
        if whatsapp_id:
            metadata["whatsapp_id"] = whatsapp_id
        await supabase_svc.update_inbox_message(message["id"], {"metadata": metadata})


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class BufferProcessor:
    """Runs poll-and-drain passes over due message buffers."""

    def __init__(
        self,
        store: Optional[BufferStore] = None,
        directory: Optional[InboxDirectory] = None,
        agent_client: Optional[AgentClient] = None,
        gateway: Optional[MessagingGateway] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store or BufferStore()
        self.directory: InboxDirectory = directory or SupabaseInboxDirectory()
        self.agent_client = agent_client or AgentClient()
        self.gateway: MessagingGateway = gateway or uazapi_svc  # type: ignore[assignment]
        self._sleep = sleep
        self._rng = rng
        self._settings = settings or get_settings()

    async def run_once(self, batch_size: Optional[int] = None) -> ProcessorRunSummary:
        """Process up to *batch_size* due buffers and report what happened."""
        started = time.monotonic()
        summary = ProcessorRunSummary()
        limit = batch_size or self._settings.buffer_batch_size

        try:
            summary.reclaimed = await self.store.reclaim_stale(self._settings.buffer_processing_timeout_minutes)
        except Exception:
            logger.exception("Stale buffer reclaim failed; continuing with due buffers.")

        due = await self.store.due(limit)
        if due:
            logger.info("Processing %d due buffer(s).", len(due))

        for candidate in due:
            claimed = await self.store.claim(candidate.id)
            if claimed is None:
                logger.info("Buffer %s already claimed by another run; skipping.", candidate.id)
                summary.skipped += 1
                continue

            if await self._process_claimed(claimed):
                summary.processed += 1
            else:
                summary.errors += 1

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        if due or summary.reclaimed:
            logger.info(
                "Buffer run finished: processed=%d errors=%d skipped=%d reclaimed=%d in %dms.",
                summary.processed, summary.errors, summary.skipped,
                summary.reclaimed, summary.duration_ms,
            )
        return summary

    async def _process_claimed(self, buffer: MessageBuffer) -> bool:
        try:
            await self._handle(buffer)
            await self.store.complete(buffer.id)
            return True
        except BufferLookupError as exc:
            logger.error("Buffer %s failed: %s", buffer.id, exc)
        except AgentInvocationError as exc:
            logger.error("Agent call for buffer %s failed: %s", buffer.id, exc)
        except Exception:
            logger.exception("Unexpected error processing buffer %s.", buffer.id)

        try:
            await self.store.fail(buffer.id)
        except Exception:
            logger.exception("Could not mark buffer %s as failed.", buffer.id)
        return False

    async def _handle(self, buffer: MessageBuffer) -> None:
        conversation = await self.directory.get_conversation(buffer.conversation_id)
        if conversation is None:
            raise BufferLookupError(f"conversation {buffer.conversation_id} not found")

        instance = await self.directory.get_instance(buffer.instance_id)
        if instance is None:
            raise BufferLookupError(f"instance {buffer.instance_id} not found")

        agent = await self.directory.get_agent(buffer.agent_id) if buffer.agent_id else None
        if agent is None:
            raise BufferLookupError(f"no agent configured (agent_id={buffer.agent_id})")

        logger.info(
            "Buffer %s: sending %d merged message(s) to agent '%s'.",
            buffer.id, len(buffer.messages), agent.name,
        )
        reply = await self.agent_client.invoke(agent, buffer, conversation)
        if not reply:
            logger.info("Agent '%s' produced no reply for buffer %s.", agent.name, buffer.id)
            return

        message = await self.directory.record_ai_reply(conversation, agent, buffer, reply)
        sent = await self._deliver(instance, agent, buffer, reply)
        if sent is None:
            return
        try:
            await self.directory.mark_reply_sent(message, uazapi_svc.extract_message_id(sent))
        except Exception:
            logger.exception("Could not mark reply for buffer %s as sent.", buffer.id)

    async def _deliver(
        self, instance: WhatsAppInstance, agent: AgentConfig, buffer: MessageBuffer, reply: str
    ) -> Optional[Any]:
        """Send *reply* like a human would; the gateway response, or ``None`` on failure."""
        number = uazapi_svc.format_phone_number(buffer.phone)
        token = instance.instance_key

        delay_ms = draw_response_delay_ms(agent.response_delay_min, agent.response_delay_max, rng=self._rng)
        logger.debug("Waiting %dms before replying to %s.", delay_ms, number)
        await self._sleep(delay_ms / 1000)

        if agent.typing_simulation:
            await self.gateway.send_presence(token, number, "composing")
            typing_ms = compute_typing_duration_ms(reply)
            logger.debug("Simulating typing for %dms.", typing_ms)
            await self._sleep(typing_ms / 1000)

        try:
            sent = await self.gateway.send_text(token, number, reply)
        except httpx.HTTPError:
            logger.exception("Sending reply for buffer %s failed; buffer is still completed.", buffer.id)
            return None
        logger.info("Reply for buffer %s sent to %s.", buffer.id, number)
        return sent if sent is not None else {}


async def process_due_buffers() -> ProcessorRunSummary:
    """One pass with the default Supabase / Uazapi collaborators."""
    return await BufferProcessor().run_once()


# ---------------------------------------------------------------------------
# Cron loop
# ---------------------------------------------------------------------------

async def run_buffer_processor_cron(
    shutdown_event: asyncio.Event,
    processor: Optional[BufferProcessor] = None,
) -> None:
    """
    Background cron task that drains due buffers periodically.

    Parameters
    ----------
    shutdown_event: Set this event to stop the cron loop.
    processor: Processor to run; defaults to the Supabase-backed one.
    """
    settings: Settings = get_settings()
    interval = settings.buffer_processor_interval_seconds
    processor = processor or BufferProcessor()

    logger.info(
        "Buffer processor cron started: every %d seconds, batch=%d.",
        interval, settings.buffer_batch_size,
    )

    while not shutdown_event.is_set():
        try:
            await processor.run_once()
        except Exception:
            logger.exception("Buffer processor iteration failed.")

        # Wait for the interval or until shutdown
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            break  # shutdown_event was set
        except asyncio.TimeoutError:
            pass

    logger.info("Buffer processor cron stopped.")
