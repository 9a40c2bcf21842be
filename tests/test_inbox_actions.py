import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from zapflow.services import inbox_actions
from zapflow.services import uazapi


@pytest.fixture
def conversation(inbox_db):
    inbox_db.conversations["conv-1"] = {
        "id": "conv-1", "instance_id": "inst-1", "phone": "11987654321", "status": "open",
    }
    return inbox_db


@pytest.fixture
def send_text(monkeypatch):
    mock = AsyncMock(return_value={"id": "wamid-1"})
    monkeypatch.setattr(uazapi, "send_text", mock)
    return mock


def test_public_message_is_delivered_and_stored(conversation, send_text):
    ok = asyncio.run(inbox_actions.send_message("conv-1", "Welcome!", False))

    assert ok is True
    send_text.assert_awaited_once_with("tok-1", "5511987654321", "Welcome!")
    row = conversation.messages[0]
    assert row["sender_type"] == "agent"
    assert row["is_private"] is False
    assert row["metadata"] == {"source": "automation", "whatsapp_id": "wamid-1", "status": "sent"}
    assert conversation.conversations["conv-1"]["last_message_preview"] == "Welcome!"


def test_private_note_is_only_stored(conversation, send_text):
    ok = asyncio.run(inbox_actions.send_message("conv-1", "VIP customer", True))

    assert ok is True
    send_text.assert_not_awaited()
    assert conversation.messages[0]["is_private"] is True
    assert conversation.messages[0]["metadata"] == {"source": "automation"}
    assert "last_message_preview" not in conversation.conversations["conv-1"]


def test_message_for_unknown_conversation_is_skipped(inbox_db, send_text):
    assert asyncio.run(inbox_actions.send_message("missing", "hi", False)) is False
    assert inbox_db.messages == []


def test_toggle_ai_back_on_unassigns_human(conversation):
    asyncio.run(inbox_actions.toggle_ai("conv-1", True))
    asyncio.run(inbox_actions.toggle_ai("conv-1", False))

    enabled, disabled = [u for _, u in conversation.updates]
    assert enabled == {"ai_enabled": True, "ai_paused_at": None, "assigned_to": None}
    assert disabled["ai_enabled"] is False
    assert disabled["ai_paused_at"] is not None
    assert "assigned_to" not in disabled


def test_status_actions(conversation):
    until = datetime(2024, 5, 6, 18, 0, tzinfo=timezone.utc)

    async def scenario():
        await inbox_actions.snooze("conv-1", until)
        await inbox_actions.set_priority("conv-1", "urgent")
        await inbox_actions.assign_agent("conv-1", "human-7")
        await inbox_actions.assign_label("conv-1", "lbl-1")
        await inbox_actions.resolve("conv-1")

    asyncio.run(scenario())

    row = conversation.conversations["conv-1"]
    assert row["snoozed_until"] == until.isoformat()
    assert row["priority"] == "urgent"
    assert row["assigned_to"] == "human-7"
    assert row["status"] == "resolved"
    assert "resolved_at" in row
    assert conversation.labels == [("conv-1", "lbl-1")]


def test_callbacks_are_wired():
    callbacks = inbox_actions.build_inbox_callbacks()

    assert callbacks.on_send_message is inbox_actions.send_message
    assert callbacks.on_snooze is inbox_actions.snooze
    assert callbacks.on_assign_agent is inbox_actions.assign_agent
