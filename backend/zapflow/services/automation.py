"""
ZapFlow - Inbox Automation Trigger Engine

Evaluates ``inbox_automation_rules`` against inbox events and dispatches the
matching rules' actions through injected callbacks.

Flow per event:
  1. Drop duplicates (bounded FIFO of recently seen event keys)
  2. Keep active rules of the owner with the same ``event_type`` whose
     conditions ALL hold (missing condition keys are ignored)
  3. Run each rule's actions in order; a failing action is logged and the
     remaining actions / rules still run

``execute_macro`` expands an ``inbox_macros`` entry in place.  Re-entering a
macro already being expanded raises ``MacroCycleError``.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable, Optional, Protocol
from zoneinfo import ZoneInfo

from zapflow.config import get_settings
from zapflow.models import (
    ActionType,
    AutomationAction,
    AutomationEventType,
    AutomationRule,
    Conversation,
    InboxMacro,
    InboxMessage,
    utcnow,
)
from zapflow.services import supabase_client as supabase_svc

logger = logging.getLogger(__name__)

ACTION_ALIASES = {"resolve_conversation": ActionType.RESOLVE.value}


class MacroCycleError(Exception):
    """A macro (directly or transitively) executes itself."""


# ---------------------------------------------------------------------------
# Callbacks / context
# ---------------------------------------------------------------------------

@dataclass
class InboxCallbacks:
    """Side effects the engine may trigger. Missing callbacks make the action a no-op."""

    on_send_message: Optional[Callable[[str, str, bool], Awaitable[Any]]] = None
    on_assign_label: Optional[Callable[[str, str], Awaitable[Any]]] = None
    on_resolve: Optional[Callable[[str], Awaitable[Any]]] = None
    on_toggle_ai: Optional[Callable[[str, bool], Awaitable[Any]]] = None
    on_snooze: Optional[Callable[[str, datetime], Awaitable[Any]]] = None
    on_set_priority: Optional[Callable[[str, str], Awaitable[Any]]] = None
    on_assign_agent: Optional[Callable[[str, str], Awaitable[Any]]] = None


@dataclass
class TriggerContext:
    conversation: Optional[Conversation] = None
    message: Optional[InboxMessage] = None
    previous_status: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def conversation_id(self) -> Optional[str]:
        return self.conversation.id if self.conversation else None


# ---------------------------------------------------------------------------
# Rule repositories
# ---------------------------------------------------------------------------

class RuleRepository(Protocol):
    async def rules_for(self, user_id: str) -> list[AutomationRule]: ...

    async def get_macro(self, user_id: str, macro_id: str) -> Optional[InboxMacro]: ...


class SupabaseRuleRepository:
    """Rules and macros read from Supabase on every event."""

    async def rules_for(self, user_id: str) -> list[AutomationRule]:
        rows = await supabase_svc.get_automation_rules(user_id)
        return [AutomationRule.model_validate(r) for r in rows]

    async def get_macro(self, user_id: str, macro_id: str) -> Optional[InboxMacro]:
        rows = await supabase_svc.get_inbox_macros(user_id)
        for row in rows:
            if str(row.get("id")) == macro_id:
                return InboxMacro.model_validate(row)
        return None


class InMemoryRuleRepository:
    def __init__(
        self,
        rules: Optional[list[AutomationRule]] = None,
        macros: Optional[list[InboxMacro]] = None,
    ) -> None:
        self.rules = list(rules or [])
        self.macros = {m.id: m for m in macros or []}

    async def rules_for(self, user_id: str) -> list[AutomationRule]:
        return list(self.rules)

    async def get_macro(self, user_id: str, macro_id: str) -> Optional[InboxMacro]:
        return self.macros.get(macro_id)


# ---------------------------------------------------------------------------
# De-duplication
# ---------------------------------------------------------------------------

class EventDeduplicator:
    """Remembers the last *capacity* event keys; oldest are evicted first."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        self.capacity = capacity or get_settings().automation_dedup_capacity
        self._seen: OrderedDict[tuple[Any, ...], None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: tuple[Any, ...]) -> bool:
        return key in self._seen

    def check_and_add(self, key: tuple[Any, ...]) -> bool:
        """Return ``True`` if *key* was already seen, otherwise record it."""
        if key in self._seen:
            return True
        self._seen[key] = None
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return False


def event_key(event_type: str, context: TriggerContext) -> tuple[Any, ...]:
    message_id = context.message.id if context.message else None
    return (event_type, context.conversation_id, message_id, context.occurred_at.isoformat())


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

def parse_keywords(raw: Any) -> list[str]:
    parts = raw if isinstance(raw, list) else str(raw).split(",")
    return [k.strip().lower() for k in parts if str(k).strip()]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def hour_in_range(hour: int, start: int, end: int) -> bool:
    """``start <= hour < end``; a range with ``start > end`` wraps midnight."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def check_conditions(
    rule: AutomationRule,
    context: TriggerContext,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> bool:
    """True when every condition present on *rule* holds for *context*."""
    conditions = rule.conditions
    conversation = context.conversation
    now = now or utcnow()

    if conditions.get("keywords"):
        keywords = parse_keywords(conditions["keywords"])
        content = (context.message.content or "") if context.message else ""
        if keywords:
            if not content:
                return False
            lowered = content.lower()
            if not any(k in lowered for k in keywords):
                return False

    if conditions.get("status"):
        if conversation is None or conversation.status != conditions["status"]:
            return False

    if conditions.get("priority"):
        if conversation is None or conversation.priority != conditions["priority"]:
            return False

    time_range = conditions.get("time_range")
    if time_range:
        tz = tz or ZoneInfo(get_settings().timezone)
        hour = _as_utc(now).astimezone(tz).hour
        try:
            start, end = int(time_range["start"]), int(time_range["end"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Rule '%s' has an invalid time_range %r; skipping it.", rule.name, time_range)
            return False
        if not hour_in_range(hour, start, end):
            return False

    if conditions.get("inactivity_minutes"):
        if conversation is None or conversation.last_message_at is None:
            return False
        idle = (_as_utc(now) - _as_utc(conversation.last_message_at)).total_seconds() / 60
        if idle < float(conditions["inactivity_minutes"]):
            return False

    return True


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AutomationEngine:
    def __init__(
        self,
        repository: RuleRepository,
        callbacks: Optional[InboxCallbacks] = None,
        deduplicator: Optional[EventDeduplicator] = None,
        clock: Callable[[], datetime] = utcnow,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.repository = repository
        self.callbacks = callbacks or InboxCallbacks()
        self.deduplicator = deduplicator or EventDeduplicator()
        self._clock = clock
        self._tz = tz

    async def process_event(self, event_type: str, context: TriggerContext) -> int:
        """
        Run every matching rule for *event_type*.

        Returns the number of rules whose actions were executed.
        """
        if self.deduplicator.check_and_add(event_key(event_type, context)):
            logger.debug("Duplicate %s event for conversation %s ignored.", event_type, context.conversation_id)
            return 0

        conversation = context.conversation
        if conversation is None or not conversation.user_id:
            return 0

        now = self._clock()
        rules = await self.repository.rules_for(conversation.user_id)
        matching = [
            rule for rule in rules
            if rule.is_active
            and rule.event_type == event_type
            and check_conditions(rule, context, now=now, tz=self._tz)
        ]

        for rule in matching:
            logger.info("Executing automation rule '%s' on conversation %s.", rule.name, conversation.id)
            for action in rule.actions:
                try:
                    await self.execute_action(action, context)
                except Exception:
                    logger.exception("Automation action '%s' of rule '%s' failed.", action.type, rule.name)
        return len(matching)

    async def execute_action(
        self,
        action: AutomationAction,
        context: TriggerContext,
        _expanding: frozenset[str] = frozenset(),
    ) -> None:
        conversation_id = context.conversation_id
        if not conversation_id:
            return

        cb = self.callbacks
        params = action.params
        action_type = ACTION_ALIASES.get(action.type, action.type)

        if action_type == ActionType.SEND_MESSAGE:
            if params.get("message") and cb.on_send_message:
                await cb.on_send_message(conversation_id, str(params["message"]), False)

        elif action_type == ActionType.SEND_PRIVATE_NOTE:
            if params.get("message") and cb.on_send_message:
                await cb.on_send_message(conversation_id, str(params["message"]), True)

        elif action_type == ActionType.ADD_LABEL:
            if params.get("label_id") and cb.on_assign_label:
                await cb.on_assign_label(conversation_id, str(params["label_id"]))

        elif action_type == ActionType.RESOLVE:
            if cb.on_resolve:
                await cb.on_resolve(conversation_id)

        elif action_type == ActionType.TOGGLE_AI:
            if cb.on_toggle_ai:
                await cb.on_toggle_ai(conversation_id, params.get("enabled") is not False)

        elif action_type == ActionType.SNOOZE:
            if cb.on_snooze and params.get("duration_minutes"):
                until = self._clock() + timedelta(minutes=float(params["duration_minutes"]))
                await cb.on_snooze(conversation_id, until)

        elif action_type == ActionType.SET_PRIORITY:
            if params.get("priority") and cb.on_set_priority:
                await cb.on_set_priority(conversation_id, str(params["priority"]))

        elif action_type == ActionType.ASSIGN_AGENT:
            if params.get("agent_id") and cb.on_assign_agent:
                await cb.on_assign_agent(conversation_id, str(params["agent_id"]))

        elif action_type == ActionType.EXECUTE_MACRO:
            await self._execute_macro(params.get("macro_id"), context, _expanding)

        else:
            logger.warning("Unknown automation action type '%s' ignored.", action.type)

    async def _execute_macro(
        self,
        macro_id: Any,
        context: TriggerContext,
        expanding: frozenset[str],
    ) -> None:
        if not macro_id:
            return
        macro_id = str(macro_id)
        if macro_id in expanding:
            raise MacroCycleError(f"Macro {macro_id} re-entered (chain: {sorted(expanding)})")

        owner = context.conversation.user_id if context.conversation else None
        macro = await self.repository.get_macro(owner or "", macro_id)
        if macro is None:
            logger.warning("Macro %s not found; skipping.", macro_id)
            return

        logger.info("Expanding macro '%s' (%d action(s)).", macro.name, len(macro.actions))
        chain = expanding | {macro_id}
        for macro_action in macro.actions:
            await self.execute_action(macro_action, context, chain)

    # -----------------------------------------------------------------------
    # Convenience triggers
    # -----------------------------------------------------------------------

    async def handle_event(
        self,
        event_type: str,
        conversation: Conversation,
        message: Optional[InboxMessage] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """Entry point for queued events; ``message_created`` also fires ``keyword_detected``."""
        if event_type == AutomationEventType.MESSAGE_CREATED and message is not None:
            await self.trigger_message_created(conversation, message, occurred_at)
            return
        context = TriggerContext(
            conversation=conversation,
            message=message,
            occurred_at=occurred_at or self._clock(),
        )
        await self.process_event(event_type, context)

    async def trigger_message_created(
        self,
        conversation: Conversation,
        message: InboxMessage,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        context = TriggerContext(conversation=conversation, message=message, occurred_at=occurred_at or self._clock())
        await self.process_event(AutomationEventType.MESSAGE_CREATED.value, context)
        if message.content:
            await self.process_event(AutomationEventType.KEYWORD_DETECTED.value, context)

    async def trigger_conversation_created(self, conversation: Conversation) -> None:
        await self._trigger(AutomationEventType.CONVERSATION_CREATED, conversation)

    async def trigger_conversation_resolved(self, conversation: Conversation) -> None:
        await self._trigger(AutomationEventType.CONVERSATION_RESOLVED, conversation)

    async def trigger_conversation_reopened(
        self, conversation: Conversation, previous_status: Optional[str] = None
    ) -> None:
        await self._trigger(AutomationEventType.CONVERSATION_REOPENED, conversation, previous_status)

    async def trigger_conversation_assigned(self, conversation: Conversation) -> None:
        await self._trigger(AutomationEventType.CONVERSATION_ASSIGNED, conversation)

    async def trigger_inactivity_timeout(self, conversation: Conversation) -> None:
        await self._trigger(AutomationEventType.INACTIVITY_TIMEOUT, conversation)

    async def _trigger(
        self,
        event_type: AutomationEventType,
        conversation: Conversation,
        previous_status: Optional[str] = None,
    ) -> None:
        context = TriggerContext(
            conversation=conversation,
            previous_status=previous_status,
            occurred_at=self._clock(),
        )
        await self.process_event(event_type.value, context)
