import asyncio
import json
from unittest.mock import AsyncMock

import aio_pika
import pytest

from zapflow.services import rabbitmq as rmq


class FakeExchange:
    name = "inbox_events"

    def __init__(self, error=None):
        self.published = []
        self.error = error

    async def publish(self, message, routing_key):
        if self.error is not None:
            raise self.error
        self.published.append((message, routing_key))


def test_automation_event_is_published_as_persistent_json(monkeypatch):
    exchange = FakeExchange()
    monkeypatch.setattr(rmq, "get_exchange", AsyncMock(return_value=exchange))

    asyncio.run(rmq.publish_automation_event(
        "message_created", "conv-1", message_id="msg-1", occurred_at="2024-05-06T15:00:00+00:00",
    ))

    message, routing_key = exchange.published[0]
    assert routing_key == "automation"
    assert message.content_type == "application/json"
    assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
    assert json.loads(message.body) == {
        "event_type": "message_created",
        "conversation_id": "conv-1",
        "message_id": "msg-1",
        "occurred_at": "2024-05-06T15:00:00+00:00",
    }


def test_publish_failure_is_raised(monkeypatch):
    monkeypatch.setattr(rmq, "get_exchange", AsyncMock(return_value=FakeExchange(ConnectionError("closed"))))

    with pytest.raises(ConnectionError):
        asyncio.run(rmq.publish_message("automation", {"event_type": "conversation_resolved"}))
