"""
ZapFlow - Domain Models

Pydantic models mirroring the Supabase rows the pipeline reads and writes.
Only the columns the backend actually uses are declared; everything else is
silently ignored thanks to ``extra="ignore"``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Message buffer
# ---------------------------------------------------------------------------

class BufferStatus(str, Enum):
    BUFFERING = "buffering"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BufferedMessage(BaseModel):
    """Single inbound message held in a buffer."""

    model_config = ConfigDict(extra="ignore")

    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class MessageBuffer(BaseModel):
    """A row of ``ai_message_buffer``: one batch of messages awaiting one AI turn."""

    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    instance_id: str
    user_id: Optional[str] = None
    phone: str
    agent_id: Optional[str] = None
    messages: list[BufferedMessage] = []
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    scheduled_response_at: Optional[datetime] = None
    status: BufferStatus = BufferStatus.BUFFERING
    claimed_at: Optional[datetime] = None

    @field_validator("messages", mode="before")
    @classmethod
    def _messages_default(cls, value: Any) -> Any:
        return value or []

    def combined_text(self) -> str:
        """All message contents in arrival order, newline separated."""
        return "\n".join(m.content for m in self.messages)


# ---------------------------------------------------------------------------
# Inbox entities (owned by the admin panel, read here)
# ---------------------------------------------------------------------------

class WhatsAppInstance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    instance_name: Optional[str] = None
    instance_key: Optional[str] = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    instance_id: Optional[str] = None
    user_id: Optional[str] = None
    phone: str = ""
    contact_name: Optional[str] = None
    status: str = "open"
    priority: Optional[str] = None
    ai_enabled: Optional[bool] = True
    assigned_to: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    unread_count: Optional[int] = 0
    snoozed_until: Optional[datetime] = None

    @property
    def ai_should_respond(self) -> bool:
        return bool(self.ai_enabled) and not self.assigned_to


class InboxMessage(BaseModel):
    """A row of ``chat_inbox_messages``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_type: str = "contact"
    content: Optional[str] = None
    created_at: Optional[datetime] = None


class AgentConfig(BaseModel):
    """A row of ``ai_agents`` (only the fields the pipeline consumes)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    is_active: Optional[bool] = True
    is_whatsapp_enabled: Optional[bool] = True
    use_native_ai: Optional[bool] = False
    webhook_url: Optional[str] = None
    system_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    response_delay_min: Optional[float] = None
    response_delay_max: Optional[float] = None
    typing_simulation: Optional[bool] = False
    message_buffer_enabled: Optional[bool] = True
    buffer_wait_seconds: Optional[int] = None
    buffer_max_messages: Optional[int] = None

    @property
    def can_answer_whatsapp(self) -> bool:
        return bool(self.is_active) and bool(self.is_whatsapp_enabled)


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------

class AutomationEventType(str, Enum):
    MESSAGE_CREATED = "message_created"
    KEYWORD_DETECTED = "keyword_detected"
    CONVERSATION_CREATED = "conversation_created"
    CONVERSATION_RESOLVED = "conversation_resolved"
    CONVERSATION_REOPENED = "conversation_reopened"
    CONVERSATION_ASSIGNED = "conversation_assigned"
    INACTIVITY_TIMEOUT = "inactivity_timeout"


class ActionType(str, Enum):
    SEND_MESSAGE = "send_message"
    SEND_PRIVATE_NOTE = "send_private_note"
    ADD_LABEL = "add_label"
    RESOLVE = "resolve"
    TOGGLE_AI = "toggle_ai"
    SNOOZE = "snooze"
    SET_PRIORITY = "set_priority"
    ASSIGN_AGENT = "assign_agent"
    EXECUTE_MACRO = "execute_macro"


class AutomationAction(BaseModel):
    """``{type, params}``. ``type`` stays a plain string so unknown actions load."""

    model_config = ConfigDict(extra="ignore")

    type: str
    params: dict[str, Any] = {}

    @field_validator("params", mode="before")
    @classmethod
    def _params_default(cls, value: Any) -> Any:
        return value or {}


class AutomationRule(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    event_type: str
    conditions: dict[str, Any] = {}
    actions: list[AutomationAction] = []
    is_active: bool = True

    @field_validator("conditions", mode="before")
    @classmethod
    def _conditions_default(cls, value: Any) -> Any:
        return value or {}

    @field_validator("actions", mode="before")
    @classmethod
    def _actions_default(cls, value: Any) -> Any:
        return value or []


class InboxMacro(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    actions: list[AutomationAction] = []

    @field_validator("actions", mode="before")
    @classmethod
    def _actions_default(cls, value: Any) -> Any:
        return value or []


class ProcessorRunSummary(BaseModel):
    """Result of one poll-and-drain pass of the buffer processor."""

    processed: int = 0
    errors: int = 0
    skipped: int = 0
    reclaimed: int = 0
    duration_ms: int = 0
