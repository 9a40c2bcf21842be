import asyncio
from datetime import timezone

from zapflow.models import AutomationAction, AutomationRule
from zapflow.services.automation import AutomationEngine, EventDeduplicator, InboxCallbacks, InMemoryRuleRepository
from zapflow.worker.consumer import handle_automation_event


def _engine(labels):
    async def on_assign_label(conversation_id, label_id):
        labels.append((conversation_id, label_id))

    rule = AutomationRule(
        id="rule-1",
        name="Tag refunds",
        event_type="keyword_detected",
        conditions={"keywords": "refund"},
        actions=[AutomationAction(type="add_label", params={"label_id": "refund"})],
    )
    return AutomationEngine(
        InMemoryRuleRepository([rule]),
        InboxCallbacks(on_assign_label=on_assign_label),
        deduplicator=EventDeduplicator(10),
        tz=timezone.utc,
    )


def _seed(inbox_db):
    inbox_db.conversations["conv-1"] = {
        "id": "conv-1", "user_id": "user-1", "instance_id": "inst-1", "phone": "5511987654321", "status": "open",
    }
    inbox_db.messages.append({"id": "msg-1", "conversation_id": "conv-1", "content": "I want a refund"})


def test_queued_message_event_runs_keyword_rules(inbox_db):
    _seed(inbox_db)
    labels = []
    payload = {
        "event_type": "message_created",
        "conversation_id": "conv-1",
        "message_id": "msg-1",
        "occurred_at": "2024-05-06T15:00:00+00:00",
    }
    engine = _engine(labels)

    async def scenario():
        first = await handle_automation_event(payload, engine=engine)
        redelivered = await handle_automation_event(payload, engine=engine)
        return first, redelivered

    first, redelivered = asyncio.run(scenario())

    assert first is True and redelivered is True
    assert labels == [("conv-1", "refund")]


def test_invalid_event_is_dropped(inbox_db):
    labels = []

    handled = asyncio.run(handle_automation_event({"event_type": "nope"}, engine=_engine(labels)))

    assert handled is False
    assert labels == []


def test_event_for_unknown_conversation_is_dropped(inbox_db):
    payload = {"event_type": "conversation_resolved", "conversation_id": "ghost"}

    assert asyncio.run(handle_automation_event(payload, engine=_engine([]))) is False
