"""
ZapFlow - Worker Consumer

Long-running worker process:
  - consumes the ``automation_events`` queue and runs the inbox automation
    rules for every event (message created, conversation resolved, ...)
  - runs the AI buffer processor cron (drains due message buffers)

Run with:
    python -m zapflow.worker.consumer
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any, Optional

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractIncomingMessage
from pydantic import ValidationError

from zapflow.api.schemas import AutomationEventPayload
from zapflow.config import Settings, get_settings
from zapflow.models import Conversation, InboxMessage
from zapflow.services import redis_client as redis_svc
from zapflow.services import supabase_client as supabase_svc
from zapflow.services import uazapi as uazapi_svc
from zapflow.services.automation import AutomationEngine, SupabaseRuleRepository
from zapflow.services.inbox_actions import build_inbox_callbacks
from zapflow.worker.buffer_processor import run_buffer_processor_cron

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

settings: Settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

_shutdown_event = asyncio.Event()
_engine: Optional[AutomationEngine] = None


def _get_engine() -> AutomationEngine:
    """One engine per process so duplicate deliveries share the dedup window."""
    global _engine
    if _engine is None:
        _engine = AutomationEngine(SupabaseRuleRepository(), build_inbox_callbacks())
    return _engine


# ---------------------------------------------------------------------------
# Automation event handler
# ---------------------------------------------------------------------------

async def handle_automation_event(payload: dict[str, Any], engine: Optional[AutomationEngine] = None) -> bool:
    """
    Run the automation rules for one queued event.

    Returns ``False`` when the event was dropped (invalid or unknown conversation).
    """
    try:
        event = AutomationEventPayload.model_validate(payload)
    except ValidationError:
        logger.warning("Invalid automation event %r. Dropping.", payload)
        return False

    row = await supabase_svc.get_conversation(event.conversation_id)
    if not row:
        logger.warning("Automation event for unknown conversation %s. Dropping.", event.conversation_id)
        return False
    conversation = Conversation.model_validate(row)

    message: Optional[InboxMessage] = None
    if event.message_id:
        message_row = await supabase_svc.get_inbox_message(event.message_id)
        if message_row:
            message = InboxMessage.model_validate(message_row)

    logger.info("Automation event '%s' for conversation %s.", event.event_type.value, conversation.id)
    await (engine or _get_engine()).handle_event(
        event.event_type.value,
        conversation,
        message=message,
        occurred_at=event.occurred_at,
    )
    return True


async def _on_automation_message(message: AbstractIncomingMessage) -> None:
    """Callback for every message consumed from the automation_events queue."""
    async with message.process():
        try:
            payload: dict[str, Any] = json.loads(message.body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Could not decode automation event body. Dropping.")
            return

        try:
            await handle_automation_event(payload)
        except Exception:
            logger.exception("Automation event processing failed: %r", payload)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Connect to RabbitMQ, declare topology, start consuming and the buffer cron."""
    logger.info("Worker starting -- connecting to RabbitMQ.")

    connection = await aio_pika.connect_robust(
        settings.rabbitmq_url,
        client_properties={"connection_name": "zapflow-worker"},
    )

    async with connection:
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=10)

        exchange = await channel.declare_exchange(
            settings.rabbitmq_exchange,
            ExchangeType.TOPIC,
            durable=True,
        )

        queue = await channel.declare_queue(
            settings.rabbitmq_automation_queue,
            durable=True,
        )
        await queue.bind(exchange, routing_key=settings.rabbitmq_automation_routing_key)
        await queue.consume(_on_automation_message)
        logger.info(
            "Queue '%s' bound to exchange '%s' with key '%s'.",
            settings.rabbitmq_automation_queue,
            settings.rabbitmq_exchange,
            settings.rabbitmq_automation_routing_key,
        )

        cron_task = asyncio.create_task(run_buffer_processor_cron(_shutdown_event))
        logger.info("Buffer processor cron task started.")

        logger.info("Worker is now consuming messages. Press Ctrl+C to stop.")

        # Wait until shutdown signal
        await _shutdown_event.wait()

        cron_task.cancel()
        try:
            await cron_task
        except asyncio.CancelledError:
            pass

    # Cleanup
    await redis_svc.close()
    await uazapi_svc.close()
    logger.info("Worker shut down gracefully.")


def _handle_signal() -> None:
    """Set the shutdown event on SIGINT / SIGTERM."""
    logger.info("Shutdown signal received.")
    _shutdown_event.set()


def run() -> None:
    """Synchronous entry point that sets up the event loop and signals."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            # Windows does not support add_signal_handler for all signals
            signal.signal(sig, lambda s, f: _handle_signal())

    try:
        loop.run_until_complete(main())
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt -- shutting down.")
        _shutdown_event.set()
    finally:
        pending = asyncio.all_tasks(loop)
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


# ---------------------------------------------------------------------------
# python -m zapflow.worker.consumer
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    run()
