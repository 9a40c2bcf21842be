"""
ZapFlow - Automation API Routes

  - POST /api/automation/events  -- Queue an inbox event for the automation worker

The admin panel reports events it originates (resolve, assign, ...) here; the
worker evaluates ``inbox_automation_rules`` for them.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from zapflow.api.schemas import AutomationEventPayload
from zapflow.services import rabbitmq as rmq

logger = logging.getLogger(__name__)

automation_router = APIRouter(prefix="/api/automation", tags=["automation"])


@automation_router.post("/events", status_code=202)
async def queue_automation_event(payload: AutomationEventPayload) -> dict[str, Any]:
    """Publish the event to RabbitMQ; the worker runs the matching rules."""
    try:
        await rmq.publish_automation_event(
            payload.event_type.value,
            payload.conversation_id,
            message_id=payload.message_id,
            occurred_at=payload.occurred_at.isoformat() if payload.occurred_at else None,
        )
    except Exception:
        logger.exception("Failed to queue automation event for conversation %s.", payload.conversation_id)
        raise HTTPException(status_code=503, detail="Automation queue unavailable")
    return {"status": "queued", "event_type": payload.event_type.value}
