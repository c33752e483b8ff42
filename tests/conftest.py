"""Shared fixtures: in-memory store fakes and an API client over ASGITransport."""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient

from letstalk.core.config import Settings
from letstalk.core.errors import ConversationConflict, ConversationNotFound
from letstalk.main import create_app
from letstalk.models.conversation import Conversation
from letstalk.repositories.conversation_repository import decode_cursor, encode_cursor
from letstalk.services.chat_service import ChatService
from letstalk.services.conversation_service import ConversationService
from letstalk.utils.dependencies import get_conversation_repository, get_message_repository
from letstalk.utils.locks import KeyedLock
from letstalk.utils.typing_registry import TypingRegistry


class FakeClock:

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryConversationStore:
    """Keeps documents the way MongoDB would: copies in, copies out."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.saves = 0

    async def load(self, conversation_id: str) -> Conversation:
        await asyncio.sleep(0)
        doc = self.docs.get(conversation_id)
        if doc is None:
            raise ConversationNotFound(conversation_id)
        return Conversation.from_document(copy.deepcopy(doc))

    async def save(self, conversation: Conversation) -> Conversation:
        await asyncio.sleep(0)
        existing = self.docs.get(conversation.id)
        current_version = existing["version"] if existing else 0
        if conversation.version != current_version:
            raise ConversationConflict(conversation.id)
        doc = dict(conversation.to_document())
        doc["version"] = conversation.version + 1
        for key in ("created_at", "updated_at"):
            # BSON dates keep millisecond precision
            doc[key] = doc[key].replace(microsecond=doc[key].microsecond // 1000 * 1000)
        self.docs[conversation.id] = copy.deepcopy(doc)
        conversation.version += 1
        self.saves += 1
        return conversation

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        for doc in self.docs.values():
            if not doc["is_group"] and sorted(doc["participants"]) == sorted([user_a, user_b]):
                return Conversation.from_document(copy.deepcopy(doc))
        return None

    async def query_by_participant(
        self,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
        include_archived: bool = True,
    ) -> Tuple[List[Conversation], Optional[str]]:
        docs = [d for d in self.docs.values() if user_id in d["participants"]]
        if not include_archived:
            docs = [d for d in docs if not d["archived_by"].get(user_id)]
        docs.sort(key=lambda d: (d["updated_at"], d["_id"]), reverse=True)
        if cursor:
            decoded = decode_cursor(cursor)
            if decoded:
                ts, oid = decoded
                docs = [d for d in docs if (d["updated_at"], d["_id"]) < (ts, oid)]
        items = [Conversation.from_document(copy.deepcopy(d)) for d in docs[:limit]]
        next_cursor = encode_cursor(items[-1]) if len(items) == limit else None
        return items, next_cursor

    async def delete(self, conversation_id: str) -> None:
        self.docs.pop(conversation_id, None)


class InMemoryMessageRepository:

    def __init__(self) -> None:
        self.messages: Dict[str, Dict[str, Any]] = {}

    def add(self, conversation_id: str, sender_id: str = "u1", content: str = "hi") -> str:
        message_id = str(ObjectId())
        self.messages[message_id] = {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "timestamp": datetime.now(timezone.utc),
            "seen_by": [],
            "is_deleted": False,
            "client_message_id": None,
        }
        return message_id

    async def save_message(self, conversation_id, sender_id, content, client_message_id=None):
        message_id = self.add(conversation_id, sender_id, content)
        self.messages[message_id]["client_message_id"] = client_message_id
        return dict(self.messages[message_id])

    async def get_conversation_id(self, message_id: str) -> Optional[str]:
        doc = self.messages.get(message_id)
        if doc is None or doc["is_deleted"]:
            return None
        return doc["conversation_id"]

    async def get_messages_by_conversation(self, conversation_id, limit=50, cursor=None):
        items = [m for m in self.messages.values() if m["conversation_id"] == conversation_id and not m["is_deleted"]]
        return [dict(m) for m in items[-limit:]], None

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        modified = 0
        for m in self.messages.values():
            if m["conversation_id"] == conversation_id and m["sender_id"] != reader_id and reader_id not in m["seen_by"]:
                m["seen_by"].append(reader_id)
                modified += 1
        return modified

    async def soft_delete_message(self, message_id: str) -> bool:
        doc = self.messages.get(message_id)
        if doc is None or doc["is_deleted"]:
            return False
        doc["is_deleted"] = True
        return True

    async def soft_delete_for_conversation(self, conversation_id: str) -> int:
        modified = 0
        for m in self.messages.values():
            if m["conversation_id"] == conversation_id and not m["is_deleted"]:
                m["is_deleted"] = True
                modified += 1
        return modified


class RecordingFanout:

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, user_ids, event, *, exclude=None) -> None:
        for user_id in user_ids:
            if user_id != exclude:
                self.sent.append((user_id, event))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def messages() -> InMemoryMessageRepository:
    return InMemoryMessageRepository()


@pytest.fixture
def typing_registry(clock: FakeClock) -> TypingRegistry:
    return TypingRegistry(ttl_seconds=5.0, clock=clock)


@pytest.fixture
def service(store, messages, typing_registry) -> ConversationService:
    return ConversationService(store, messages, typing_registry, KeyedLock())


@pytest.fixture
def fanout() -> RecordingFanout:
    return RecordingFanout()


@pytest.fixture
def chat(messages, service, fanout) -> ChatService:
    return ChatService(messages, service, fanout)


@pytest.fixture
def app(store, messages, typing_registry, fanout):
    application = create_app(Settings(environment="test", log_level="warning"))
    application.state.typing = typing_registry
    application.state.fanout = fanout
    application.dependency_overrides[get_conversation_repository] = lambda: store
    application.dependency_overrides[get_message_repository] = lambda: messages
    return application


@pytest.fixture(name="async_client")
async def fixture_async_client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
