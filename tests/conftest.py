import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SUPABASE_URL", "https://project.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service-role-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

import pytest

from zapflow.config import get_settings
from zapflow.services.buffer_store import BufferStore, InMemoryBufferRepository, local_lock_factory


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Manually advanced clock shared by the store and the processor."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def buffer_repo():
    return InMemoryBufferRepository()


@pytest.fixture
def buffer_store(buffer_repo, clock):
    return BufferStore(buffer_repo, lock_factory=local_lock_factory(), clock=clock)


class FakeInboxDB:
    """Dict-backed stand-in for the Supabase helper functions the inbox uses."""

    def __init__(self) -> None:
        self.instances = {
            "inst-1": {"id": "inst-1", "user_id": "user-1", "instance_name": "loja", "instance_key": "tok-1"},
        }
        self.agents = {
            "agent-1": {
                "id": "agent-1",
                "name": "Sofia",
                "is_active": True,
                "is_whatsapp_enabled": True,
                "webhook_url": "https://flows.example.com/hook",
                "buffer_wait_seconds": 20,
            },
        }
        self.routes = {"inst-1": "agent-1"}
        self.conversations: dict[str, dict] = {}
        self.messages: list[dict] = []
        self.labels: list[tuple[str, str]] = []
        self.updates: list[tuple[str, dict]] = []

    def install(self, monkeypatch) -> None:
        from zapflow.services import supabase_client as supabase_svc

        for name in (
            "get_instance",
            "get_instance_by_key",
            "get_conversation",
            "find_conversation",
            "create_conversation",
            "update_conversation",
            "add_conversation_label",
            "get_conversation_ids_for_phone",
            "insert_inbox_message",
            "get_inbox_message",
            "update_inbox_message",
            "get_recent_outgoing_messages",
            "get_agent",
            "get_routed_agent",
        ):
            monkeypatch.setattr(supabase_svc, name, getattr(self, name))

    async def get_instance(self, instance_id):
        return self.instances.get(instance_id)

    async def get_instance_by_key(self, instance_key):
        for row in self.instances.values():
            if row.get("instance_key") == instance_key or row.get("instance_name") == instance_key:
                return row
        return None

    async def get_conversation(self, conversation_id):
        return self.conversations.get(conversation_id)

    async def find_conversation(self, instance_id, phone):
        for row in self.conversations.values():
            if row["instance_id"] == instance_id and row["phone"] == phone:
                return row
        return None

    async def create_conversation(self, data):
        row = {"id": f"conv-{len(self.conversations) + 1}", **data}
        self.conversations[row["id"]] = row
        return row

    async def update_conversation(self, conversation_id, updates):
        self.updates.append((conversation_id, updates))
        self.conversations.setdefault(conversation_id, {"id": conversation_id}).update(updates)
        return self.conversations[conversation_id]

    async def add_conversation_label(self, conversation_id, label_id):
        self.labels.append((conversation_id, label_id))

    async def insert_inbox_message(self, data):
        row = {"id": f"msg-{len(self.messages) + 1}", "created_at": datetime.now(timezone.utc).isoformat(), **data}
        self.messages.append(row)
        return row

    async def get_inbox_message(self, message_id):
        for row in self.messages:
            if row["id"] == message_id:
                return row
        return None

    async def update_inbox_message(self, message_id, updates):
        row = await self.get_inbox_message(message_id)
        row.update(updates)
        return row

    async def get_recent_outgoing_messages(self, limit, conversation_ids=None, since_iso=None):
        rows = [
            row for row in self.messages
            if row.get("sender_type") in ("agent", "ai")
            and (conversation_ids is None or row.get("conversation_id") in conversation_ids)
            and (since_iso is None or row.get("created_at", "") >= since_iso)
        ]
        return list(reversed(rows))[:limit]

    async def get_conversation_ids_for_phone(self, phone):
        return [row["id"] for row in self.conversations.values() if row.get("phone") == phone]

    async def get_agent(self, agent_id):
        return self.agents.get(agent_id)

    async def get_routed_agent(self, instance_id):
        agent_id = self.routes.get(instance_id)
        return self.agents.get(agent_id) if agent_id else None


@pytest.fixture
def inbox_db(monkeypatch):
    db = FakeInboxDB()
    db.install(monkeypatch)
    return db
