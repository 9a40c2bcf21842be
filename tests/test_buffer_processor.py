"""Poll-and-drain behaviour of the AI buffer processor."""

import asyncio
import json
import random

import httpx

from zapflow.models import AgentConfig, BufferStatus, Conversation, WhatsAppInstance
from zapflow.services.agent_client import AgentClient, AgentInvocationError
from zapflow.worker.buffer_processor import BufferProcessor, SupabaseInboxDirectory, run_buffer_processor_cron


class FakeDirectory:
    def __init__(self, conversations=None, instances=None, agents=None, fail_record=False):
        self.conversations = conversations if conversations is not None else {
            "conv-1": Conversation(id="conv-1", instance_id="inst-1", phone="5511987654321", contact_name="Ana"),
        }
        self.instances = instances if instances is not None else {
            "inst-1": WhatsAppInstance(id="inst-1", instance_key="tok-1"),
        }
        self.agents = agents if agents is not None else {
            "agent-1": AgentConfig(
                id="agent-1",
                name="Sofia",
                webhook_url="https://flows.example.com/hook",
                typing_simulation=True,
            ),
        }
        self.fail_record = fail_record
        self.replies = []
        self.marked = []

    async def get_conversation(self, conversation_id):
        return self.conversations.get(conversation_id)

    async def get_instance(self, instance_id):
        return self.instances.get(instance_id)

    async def get_agent(self, agent_id):
        return self.agents.get(agent_id)

    async def record_ai_reply(self, conversation, agent, buffer, reply):
        if self.fail_record:
            raise RuntimeError("insert failed")
        self.replies.append((conversation.id, agent.id, len(buffer.messages), reply))
        return {"id": f"msg-{len(self.replies)}", "metadata": {"status": "sending"}}

    async def mark_reply_sent(self, message, whatsapp_id):
        self.marked.append((message["id"], whatsapp_id))


class FakeGateway:
    def __init__(self, send_error=None):
        self.presence = []
        self.sent = []
        self.send_error = send_error

    async def send_presence(self, instance_token, number, presence="composing"):
        self.presence.append((instance_token, number, presence))
        return True

    async def send_text(self, instance_token, number, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((instance_token, number, text))
        return {"id": "wamid-1"}


class FakeAgentClient:
    def __init__(self, reply="Sure!", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def invoke(self, agent, buffer, conversation):
        self.calls.append((agent.id, buffer.combined_text(), conversation.id))
        if self.error is not None:
            raise self.error
        return self.reply


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _processor(store, directory=None, agent_client=None, gateway=None, sleep=None):
    return BufferProcessor(
        store=store,
        directory=directory or FakeDirectory(),
        agent_client=agent_client or FakeAgentClient(),
        gateway=gateway or FakeGateway(),
        sleep=sleep or SleepRecorder(),
        rng=random.Random(3),
    )


async def _buffer(store, content, conversation_id="conv-1", agent_id="agent-1"):
    return await store.append(
        conversation_id, "5511987654321", "inst-1", agent_id, content, debounce_seconds=30,
    )


def test_merged_burst_gets_single_humanized_reply(buffer_store, buffer_repo, clock):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"output": "Yes, we're open 9-6!"})

    agent_client = AgentClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    directory = FakeDirectory()
    gateway = FakeGateway()
    sleep = SleepRecorder()
    processor = _processor(buffer_store, directory, agent_client, gateway, sleep)

    async def scenario():
        buffer = await _buffer(buffer_store, "Hi")
        clock.advance(seconds=2)
        await _buffer(buffer_store, "Are you open?")
        clock.advance(seconds=10)
        too_early = await processor.run_once()
        clock.advance(seconds=25)
        return buffer, too_early, await processor.run_once()

    buffer, too_early, summary = asyncio.run(scenario())

    assert too_early.processed == 0
    assert summary.processed == 1
    assert summary.errors == 0
    assert seen["url"] == "https://flows.example.com/hook"
    assert seen["body"]["message"] == "Hi\nAre you open?"
    assert seen["body"]["buffered_messages"] == 2
    assert seen["body"]["sessionId"] == "conv-1"
    assert seen["body"]["source"] == "whatsapp-inbox"
    assert [m["content"] for m in seen["body"]["individual_messages"]] == ["Hi", "Are you open?"]

    assert directory.replies == [("conv-1", "agent-1", 2, "Yes, we're open 9-6!")]
    assert gateway.presence == [("tok-1", "5511987654321", "composing")]
    assert gateway.sent == [("tok-1", "5511987654321", "Yes, we're open 9-6!")]
    assert directory.marked == [("msg-1", "wamid-1")]

    delay, typing = sleep.calls
    assert 2 <= delay <= 5
    assert 1 <= typing <= 8
    assert buffer_repo.get(buffer.id).status == BufferStatus.COMPLETED


def test_without_typing_simulation_only_the_delay_is_slept(buffer_store, clock):
    directory = FakeDirectory(agents={
        "agent-1": AgentConfig(id="agent-1", webhook_url="https://x", response_delay_min=1, response_delay_max=1),
    })
    gateway = FakeGateway()
    sleep = SleepRecorder()
    processor = _processor(buffer_store, directory, gateway=gateway, sleep=sleep)

    async def scenario():
        await _buffer(buffer_store, "Hi")
        clock.advance(seconds=31)
        return await processor.run_once()

    summary = asyncio.run(scenario())

    assert summary.processed == 1
    assert sleep.calls == [1.0]
    assert gateway.presence == []
    assert len(gateway.sent) == 1


def test_missing_conversation_fails_buffer_and_run_continues(buffer_store, buffer_repo, clock):
    directory = FakeDirectory()
    directory.conversations["conv-2"] = Conversation(id="conv-2", instance_id="inst-1")
    gateway = FakeGateway()
    processor = _processor(buffer_store, directory, gateway=gateway)

    async def scenario():
        orphan = await _buffer(buffer_store, "hello", conversation_id="conv-gone")
        clock.advance(seconds=1)
        ok = await _buffer(buffer_store, "hello", conversation_id="conv-2")
        clock.advance(seconds=31)
        return orphan, ok, await processor.run_once()

    orphan, ok, summary = asyncio.run(scenario())

    assert summary.processed == 1
    assert summary.errors == 1
    assert buffer_repo.get(orphan.id).status == BufferStatus.FAILED
    assert buffer_repo.get(ok.id).status == BufferStatus.COMPLETED
    assert len(gateway.sent) == 1


def test_missing_agent_fails_buffer(buffer_store, buffer_repo, clock):
    gateway = FakeGateway()
    processor = _processor(buffer_store, FakeDirectory(agents={}), gateway=gateway)

    async def scenario():
        buffer = await _buffer(buffer_store, "hello")
        clock.advance(seconds=31)
        return buffer, await processor.run_once()

    buffer, summary = asyncio.run(scenario())

    assert summary.errors == 1
    assert buffer_repo.get(buffer.id).status == BufferStatus.FAILED
    assert gateway.sent == []


def test_buffer_without_agent_id_fails(buffer_store, buffer_repo, clock):
    processor = _processor(buffer_store)

    async def scenario():
        buffer = await _buffer(buffer_store, "hello", agent_id=None)
        clock.advance(seconds=31)
        return buffer, await processor.run_once()

    buffer, summary = asyncio.run(scenario())

    assert summary.errors == 1
    assert buffer_repo.get(buffer.id).status == BufferStatus.FAILED


def test_agent_error_fails_buffer(buffer_store, buffer_repo, clock):
    agent_client = FakeAgentClient(error=AgentInvocationError("status 502"))
    gateway = FakeGateway()
    processor = _processor(buffer_store, agent_client=agent_client, gateway=gateway)

    async def scenario():
        buffer = await _buffer(buffer_store, "hello")
        clock.advance(seconds=31)
        return buffer, await processor.run_once()

    buffer, summary = asyncio.run(scenario())

    assert summary.errors == 1
    assert buffer_repo.get(buffer.id).status == BufferStatus.FAILED
    assert gateway.sent == []


def test_empty_reply_completes_without_sending(buffer_store, buffer_repo, clock):
    directory = FakeDirectory()
    gateway = FakeGateway()
    processor = _processor(buffer_store, directory, FakeAgentClient(reply=""), gateway)

    async def scenario():
        buffer = await _buffer(buffer_store, "ok")
        clock.advance(seconds=31)
        return buffer, await processor.run_once()

    buffer, summary = asyncio.run(scenario())

    assert summary.processed == 1
    assert buffer_repo.get(buffer.id).status == BufferStatus.COMPLETED
    assert directory.replies == []
    assert gateway.sent == []


def test_unexpected_error_is_isolated_per_buffer(buffer_store, buffer_repo, clock):
    directory = FakeDirectory(fail_record=True)
    directory.conversations["conv-2"] = Conversation(id="conv-2", instance_id="inst-1")
    processor = _processor(buffer_store, directory)

    async def scenario():
        first = await _buffer(buffer_store, "a")
        second = await _buffer(buffer_store, "b", conversation_id="conv-2")
        clock.advance(seconds=31)
        return first, second, await processor.run_once()

    first, second, summary = asyncio.run(scenario())

    assert summary.errors == 2
    assert buffer_repo.get(first.id).status == BufferStatus.FAILED
    assert buffer_repo.get(second.id).status == BufferStatus.FAILED


def test_send_failure_still_completes_buffer(buffer_store, buffer_repo, clock):
    gateway = FakeGateway(send_error=httpx.ConnectError("gateway down"))
    directory = FakeDirectory()
    processor = _processor(buffer_store, directory, gateway=gateway)

    async def scenario():
        buffer = await _buffer(buffer_store, "hello")
        clock.advance(seconds=31)
        return buffer, await processor.run_once()

    buffer, summary = asyncio.run(scenario())

    assert summary.processed == 1
    assert summary.errors == 0
    assert buffer_repo.get(buffer.id).status == BufferStatus.COMPLETED
    assert len(directory.replies) == 1
    assert directory.marked == []


def test_buffer_claimed_elsewhere_is_skipped(buffer_store, clock, monkeypatch):
    agent_client = FakeAgentClient()
    processor = _processor(buffer_store, agent_client=agent_client)

    async def scenario():
        await _buffer(buffer_store, "hello")
        clock.advance(seconds=31)
        snapshot = await buffer_store.due(5)
        await buffer_store.claim(snapshot[0].id)

        async def stale_due(limit):
            return snapshot

        monkeypatch.setattr(buffer_store, "due", stale_due)
        return await processor.run_once()

    summary = asyncio.run(scenario())

    assert summary.skipped == 1
    assert summary.processed == 0
    assert agent_client.calls == []


def test_parallel_runs_reply_once(buffer_store, clock):
    gateway = FakeGateway()
    first = _processor(buffer_store, gateway=gateway)
    second = _processor(buffer_store, gateway=gateway)

    async def scenario():
        await _buffer(buffer_store, "hello")
        clock.advance(seconds=31)
        return await asyncio.gather(first.run_once(), second.run_once())

    summaries = asyncio.run(scenario())

    assert sum(s.processed for s in summaries) == 1
    assert len(gateway.sent) == 1


def test_stale_processing_buffers_are_reclaimed(buffer_store, buffer_repo, clock):
    processor = _processor(buffer_store)

    async def scenario():
        buffer = await _buffer(buffer_store, "hello")
        clock.advance(seconds=31)
        await buffer_store.claim(buffer.id)
        clock.advance(minutes=15)
        return buffer, await processor.run_once()

    buffer, summary = asyncio.run(scenario())

    assert summary.reclaimed == 1
    assert buffer_repo.get(buffer.id).status == BufferStatus.FAILED


def test_batch_size_bounds_a_run(buffer_store, clock):
    processor = _processor(buffer_store)

    async def scenario():
        for n in range(3):
            await _buffer(buffer_store, "hi", conversation_id=f"conv-{n}")
        clock.advance(seconds=31)
        return await processor.run_once(batch_size=2)

    summary = asyncio.run(scenario())

    assert summary.processed + summary.errors == 2


def test_cron_stops_on_shutdown():
    shutdown = asyncio.Event()
    runs = []

    class OneShot:
        async def run_once(self):
            runs.append(1)
            shutdown.set()

    asyncio.run(run_buffer_processor_cron(shutdown, processor=OneShot()))

    assert runs == [1]


def test_stored_reply_is_tagged_with_whatsapp_id(inbox_db, buffer_store):
    directory = SupabaseInboxDirectory()
    conversation = Conversation(id="conv-1", instance_id="inst-1", phone="5511987654321")
    agent = AgentConfig(id="agent-1", name="Sofia")

    async def scenario():
        buffer = await _buffer(buffer_store, "Hi")
        message = await directory.record_ai_reply(conversation, agent, buffer, "Sure!")
        await directory.mark_reply_sent(message, "3EB0R1")

    asyncio.run(scenario())

    row = inbox_db.messages[0]
    assert row["sender_type"] == "ai"
    assert row["metadata"]["whatsapp_id"] == "3EB0R1"
    assert row["metadata"]["status"] == "sent"
    assert row["metadata"]["agent_name"] == "Sofia"
    assert inbox_db.conversations["conv-1"]["last_message_preview"] == "Sure!"
