"""
ZapFlow - FastAPI Application

Provides:
  - GET  /health                     -- Health check
  - POST /webhooks/whatsapp-inbox    -- Uazapi / internal inbound messages
  - POST /webhooks/buffer-processor  -- Run one AI buffer drain pass
  - POST /api/automation/events      -- Queue inbox automation events

The app lifecycle manages the RabbitMQ connection so it is opened on
startup and closed gracefully on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zapflow.api.automation import automation_router
from zapflow.api.schemas import BufferProcessorResponse, InboxWebhookResponse
from zapflow.config import get_settings
from zapflow.services import rabbitmq as rmq
from zapflow.services import redis_client as redis_svc
from zapflow.services import uazapi as uazapi_svc
from zapflow.services.inbox import (
    IgnoredEvent,
    InboundPayloadError,
    InstanceNotFoundError,
    apply_status_update,
    ingest_message,
    normalize_payload,
    parse_status_update,
)
from zapflow.worker.buffer_processor import process_due_buffers

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage long-lived resources."""
    logger.info("Starting up -- initialising RabbitMQ connection.")
    try:
        await rmq.get_exchange()
    except Exception:
        logger.exception("RabbitMQ unavailable at startup; automation events will retry on publish.")
    yield
    logger.info("Shutting down -- closing RabbitMQ, Redis and HTTP clients.")
    await rmq.close()
    await redis_svc.close()
    await uazapi_svc.close()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ZapFlow API",
    version="1.0.0",
    description="WhatsApp inbox backend: AI message buffering and inbox automation.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(automation_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": exc.errors()})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, _exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s.", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Liveness check with RabbitMQ status."""
    rmq_ok = False
    try:
        exchange = await rmq.get_exchange()
        rmq_ok = exchange is not None
    except Exception:
        logger.warning("Health check: RabbitMQ unreachable.")
    return {
        "status": "ok" if rmq_ok else "degraded",
        "service": "zapflow-api",
        "rabbitmq": "connected" if rmq_ok else "disconnected",
    }


@app.post("/webhooks/whatsapp-inbox", status_code=200)
async def whatsapp_inbox_webhook(request: Request) -> dict[str, Any]:
    """
    Receive inbound WhatsApp messages.

    Accepts the internal standard format and Uazapi v2 ``messages`` events.
    Delivery / read receipts update the status of the outgoing message.
    Other events and group messages are acknowledged and ignored.
    """
    try:
        body: Any = await request.json()
    except ValueError:
        logger.warning("Failed to parse webhook JSON body.")
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    status_update = parse_status_update(body)
    if status_update is not None:
        await apply_status_update(status_update)
        return {"success": True, "event": status_update.event or "inline_ack", "type": "status_update"}

    try:
        inbound = normalize_payload(body)
    except IgnoredEvent as ignored:
        logger.debug("Webhook ignored (%s, event=%s).", ignored.reason, ignored.event)
        return {"success": True, "ignored": True, "event": ignored.event, "reason": ignored.reason}
    except InboundPayloadError as exc:
        logger.warning("Unusable webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        result = await ingest_message(inbound)
    except InboundPayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InstanceNotFoundError as exc:
        logger.warning("Webhook for unknown instance (key=%s id=%s).", inbound.instance_key, inbound.instance_id)
        raise HTTPException(status_code=404, detail=str(exc))

    return InboxWebhookResponse(
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        skipped=result.skipped,
        reason=result.skip_reason,
    ).model_dump(by_alias=True, exclude=None if result.skipped else {"skipped", "reason"})


@app.post("/webhooks/buffer-processor", status_code=200)
async def buffer_processor_webhook() -> dict[str, Any]:
    """
    Run one poll-and-drain pass over due AI message buffers.

    Can be called by an external cron in addition to the worker's own loop.
    """
    summary = await process_due_buffers()
    return BufferProcessorResponse(**summary.model_dump()).model_dump()
