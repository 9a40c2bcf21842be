"""
ZapFlow - AI Message Buffer Store

Persists per-conversation batches of inbound WhatsApp messages that are
waiting for a single AI turn (table ``ai_message_buffer``).

Debounce rules:
  - A conversation has at most one buffer in ``buffering`` / ``processing``.
  - A message for a ``buffering`` buffer is appended and pushes
    ``scheduled_response_at`` to ``now + window`` (never backwards).
  - A message that finds no ``buffering`` buffer (none yet, or the last one is
    ``processing`` / terminal) starts a fresh buffer.
  - Reaching the agent's ``buffer_max_messages`` schedules the buffer for
    immediate processing.

Every state change out of ``buffering`` is a conditional update on the
current status, so the processor's claim and an append can never both win.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, Callable, Optional, Protocol

from zapflow.config import get_settings
from zapflow.models import BufferStatus, BufferedMessage, MessageBuffer, utcnow
from zapflow.services import redis_client as redis_svc
from zapflow.services import supabase_client as supabase_svc

logger = logging.getLogger(__name__)

LockFactory = Callable[[str], AsyncContextManager[Any]]


def _serialize(buffer_fields: dict[str, Any]) -> dict[str, Any]:
    """JSON-friendly copy of buffer fields for the Supabase client."""
    out: dict[str, Any] = {}
    for key, value in buffer_fields.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, BufferStatus):
            out[key] = value.value
        elif key == "messages":
            out[key] = [m.model_dump(mode="json") for m in value]
        else:
            out[key] = value
    return out


# ---------------------------------------------------------------------------
# Repository seam
# ---------------------------------------------------------------------------

class BufferRepository(Protocol):
    async def get_active(self, conversation_id: str) -> Optional[MessageBuffer]: ...

    async def create(self, buffer: MessageBuffer) -> MessageBuffer: ...

    async def update_if_status(
        self, buffer_id: str, expected: BufferStatus, updates: dict[str, Any]
    ) -> Optional[MessageBuffer]: ...

    async def list_due(self, now: datetime, limit: int) -> list[MessageBuffer]: ...

    async def list_stale_processing(self, claimed_before: datetime) -> list[MessageBuffer]: ...


class SupabaseBufferRepository:
    """Buffer rows stored in Supabase (``ai_message_buffer``)."""

    async def get_active(self, conversation_id: str) -> Optional[MessageBuffer]:
        row = await supabase_svc.get_active_buffer(conversation_id)
        return MessageBuffer.model_validate(row) if row else None

    async def create(self, buffer: MessageBuffer) -> MessageBuffer:
        row = await supabase_svc.insert_buffer(_serialize(dict(buffer)))
        return MessageBuffer.model_validate(row) if row else buffer

    async def update_if_status(
        self, buffer_id: str, expected: BufferStatus, updates: dict[str, Any]
    ) -> Optional[MessageBuffer]:
        row = await supabase_svc.update_buffer_if_status(buffer_id, expected.value, _serialize(updates))
        return MessageBuffer.model_validate(row) if row else None

    async def list_due(self, now: datetime, limit: int) -> list[MessageBuffer]:
        rows = await supabase_svc.get_due_buffers(now.isoformat(), limit)
        return [MessageBuffer.model_validate(r) for r in rows]

    async def list_stale_processing(self, claimed_before: datetime) -> list[MessageBuffer]:
        rows = await supabase_svc.get_stale_processing_buffers(claimed_before.isoformat())
        return [MessageBuffer.model_validate(r) for r in rows]


class InMemoryBufferRepository:
    """Process-local repository used by tests and single-process runs."""

    def __init__(self) -> None:
        self._rows: dict[str, MessageBuffer] = {}
        self._mutex = asyncio.Lock()

    def all(self) -> list[MessageBuffer]:
        return [b.model_copy(deep=True) for b in self._rows.values()]

    def get(self, buffer_id: str) -> Optional[MessageBuffer]:
        row = self._rows.get(buffer_id)
        return row.model_copy(deep=True) if row else None

    async def get_active(self, conversation_id: str) -> Optional[MessageBuffer]:
        async with self._mutex:
            candidates = [
                b for b in self._rows.values()
                if b.conversation_id == conversation_id and b.status == BufferStatus.BUFFERING
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda b: b.first_message_at or utcnow())
            return newest.model_copy(deep=True)

    async def create(self, buffer: MessageBuffer) -> MessageBuffer:
        async with self._mutex:
            self._rows[buffer.id] = buffer.model_copy(deep=True)
            return buffer.model_copy(deep=True)

    async def update_if_status(
        self, buffer_id: str, expected: BufferStatus, updates: dict[str, Any]
    ) -> Optional[MessageBuffer]:
        async with self._mutex:
            current = self._rows.get(buffer_id)
            if current is None or current.status != expected:
                return None
            updated = current.model_copy(update=updates, deep=True)
            self._rows[buffer_id] = updated
            return updated.model_copy(deep=True)

    async def list_due(self, now: datetime, limit: int) -> list[MessageBuffer]:
        async with self._mutex:
            due = [
                b for b in self._rows.values()
                if b.status == BufferStatus.BUFFERING
                and b.scheduled_response_at is not None
                and b.scheduled_response_at <= now
            ]
            due.sort(key=lambda b: b.scheduled_response_at)  # type: ignore[arg-type, return-value]
            return [b.model_copy(deep=True) for b in due[:limit]]

    async def list_stale_processing(self, claimed_before: datetime) -> list[MessageBuffer]:
        async with self._mutex:
            return [
                b.model_copy(deep=True) for b in self._rows.values()
                if b.status == BufferStatus.PROCESSING
                and b.claimed_at is not None
                and b.claimed_at < claimed_before
            ]


def local_lock_factory() -> LockFactory:
    """Per-conversation ``asyncio.Lock`` for single-process use."""
    locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def factory(conversation_id: str) -> asyncio.Lock:
        return locks[conversation_id]

    return factory


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class BufferStore:
    """Debounce writer and state transitions for AI message buffers."""

    def __init__(
        self,
        repository: Optional[BufferRepository] = None,
        lock_factory: Optional[LockFactory] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository: BufferRepository = repository or SupabaseBufferRepository()
        self._lock_factory: LockFactory = lock_factory or redis_svc.conversation_lock
        self._clock = clock

    async def append(
        self,
        conversation_id: str,
        phone: str,
        instance_id: str,
        agent_id: Optional[str],
        content: str,
        *,
        user_id: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> MessageBuffer:
        """
        Append *content* to the conversation's active buffer, or start a new one.

        Returns the buffer that now holds the message.
        """
        window = get_settings().buffer_debounce_seconds if debounce_seconds is None else debounce_seconds

        async with self._lock_factory(conversation_id):
            now = self._clock()
            message = BufferedMessage(content=content, timestamp=now)
            scheduled = now + timedelta(seconds=window)

            active = await self.repository.get_active(conversation_id)
            if active is not None:
                messages = [*active.messages, message]
                if active.scheduled_response_at is not None and active.scheduled_response_at > scheduled:
                    scheduled = active.scheduled_response_at
                if max_messages and len(messages) >= max_messages:
                    scheduled = now
                updated = await self.repository.update_if_status(
                    active.id,
                    BufferStatus.BUFFERING,
                    {
                        "messages": messages,
                        "last_message_at": now,
                        "scheduled_response_at": scheduled,
                    },
                )
                if updated is not None:
                    logger.info(
                        "Buffer %s for conversation %s now has %d message(s); response at %s.",
                        updated.id, conversation_id, len(updated.messages),
                        scheduled.isoformat(),
                    )
                    return updated
                logger.info(
                    "Buffer %s was claimed before append; starting a new buffer for conversation %s.",
                    active.id, conversation_id,
                )

            if max_messages and max_messages <= 1:
                scheduled = now
            buffer = MessageBuffer(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                instance_id=instance_id,
                user_id=user_id,
                phone=phone,
                agent_id=agent_id,
                messages=[message],
                first_message_at=now,
                last_message_at=now,
                scheduled_response_at=scheduled,
                status=BufferStatus.BUFFERING,
            )
            created = await self.repository.create(buffer)
            logger.info(
                "New buffer %s for conversation %s; response at %s.",
                created.id, conversation_id, scheduled.isoformat(),
            )
            return created

    async def claim(self, buffer_id: str) -> Optional[MessageBuffer]:
        """Move a buffer from ``buffering`` to ``processing``; ``None`` if already taken."""
        return await self.repository.update_if_status(
            buffer_id,
            BufferStatus.BUFFERING,
            {"status": BufferStatus.PROCESSING, "claimed_at": self._clock()},
        )

    async def complete(self, buffer_id: str) -> bool:
        return await self._finish(buffer_id, BufferStatus.COMPLETED)

    async def fail(self, buffer_id: str) -> bool:
        return await self._finish(buffer_id, BufferStatus.FAILED)

    async def _finish(self, buffer_id: str, status: BufferStatus) -> bool:
        # Only the claimant may close a buffer; a reclaimed one stays failed.
        updated = await self.repository.update_if_status(buffer_id, BufferStatus.PROCESSING, {"status": status})
        if updated is None:
            logger.warning("Buffer %s is no longer processing; not marking it %s.", buffer_id, status.value)
            return False
        return True

    async def due(self, limit: int) -> list[MessageBuffer]:
        return await self.repository.list_due(self._clock(), limit)

    async def reclaim_stale(self, timeout_minutes: float) -> int:
        """
        Fail buffers stuck in ``processing`` longer than *timeout_minutes*.

        They are not re-queued: the reply may already have reached the contact.
        """
        cutoff = self._clock() - timedelta(minutes=timeout_minutes)
        stale = await self.repository.list_stale_processing(cutoff)
        reclaimed = 0
        for buffer in stale:
            failed = await self.repository.update_if_status(
                buffer.id, BufferStatus.PROCESSING, {"status": BufferStatus.FAILED}
            )
            if failed is not None:
                reclaimed += 1
                logger.warning(
                    "Buffer %s stuck in processing since %s; marked failed.",
                    buffer.id, buffer.claimed_at,
                )
        return reclaimed
