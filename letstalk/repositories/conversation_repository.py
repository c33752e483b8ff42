from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from letstalk.core.errors import ConversationConflict, ConversationNotFound, StoreUnavailable
from letstalk.core.logging import get_logger
from letstalk.models.conversation import Conversation


logger = get_logger("letstalk.repositories.conversations")


@contextmanager
def store_errors(conversation_id: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.warning("store.unavailable", extra={"conversation_id": conversation_id, "error": str(exc)})
        raise StoreUnavailable(f"Conversation store unavailable: {exc}", conversation_id=conversation_id) from exc


def encode_cursor(conversation: Conversation) -> str:
    # Cursor format: timestamp_ms:object_id_hex
    return f"{int(conversation.updated_at.timestamp() * 1000)}:{conversation.id}"


def decode_cursor(cursor: str) -> Optional[Tuple[datetime, ObjectId]]:
    try:
        ts_str, oid_hex = cursor.split(":", 1)
        ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
        return ts, ObjectId(oid_hex)
    except (ValueError, InvalidId, OverflowError):
        return None


class ConversationRepository:
    """MongoDB-backed conversation store.

    Saves replace the whole document guarded by ``version`` so a reader never
    sees half of a mutation and a lost update surfaces as a conflict.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        with store_errors():
            await self.collection.create_index([("participants", ASCENDING)])
            await self.collection.create_index([("updated_at", DESCENDING), ("_id", DESCENDING)])

    async def load(self, conversation_id: str) -> Conversation:
        if not ObjectId.is_valid(conversation_id):
            raise ConversationNotFound(conversation_id)
        with store_errors(conversation_id):
            doc = await self.collection.find_one({"_id": ObjectId(conversation_id)})
        if not doc:
            raise ConversationNotFound(conversation_id)
        return Conversation.from_document(doc)

    async def save(self, conversation: Conversation) -> Conversation:
        doc: Dict[str, Any] = dict(conversation.to_document())
        doc["version"] = conversation.version + 1
        with store_errors(conversation.id):
            if conversation.version == 0:
                try:
                    await self.collection.insert_one(doc)
                except DuplicateKeyError as exc:
                    raise ConversationConflict(conversation.id) from exc
            else:
                result = await self.collection.replace_one(
                    {"_id": doc["_id"], "version": conversation.version},
                    doc,
                )
                if not result.matched_count:
                    raise ConversationConflict(conversation.id)
        conversation.version += 1
        return conversation

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        with store_errors():
            doc = await self.collection.find_one(
                {"is_group": False, "participants": {"$all": [user_a, user_b], "$size": 2}}
            )
        return Conversation.from_document(doc) if doc else None

    async def query_by_participant(
        self,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
        include_archived: bool = True,
    ) -> Tuple[List[Conversation], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        if not include_archived:
            query[f"archived_by.{user_id}"] = {"$ne": True}
        if cursor:
            decoded = decode_cursor(cursor)
            if decoded:
                ts, oid = decoded
                query["$or"] = [
                    {"updated_at": {"$lt": ts}},
                    {"updated_at": ts, "_id": {"$lt": oid}},
                ]
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        with store_errors():
            items = await self.collection.find(query).sort(sort).limit(limit).to_list(length=limit)
        conversations = [Conversation.from_document(it) for it in items]
        next_cursor = encode_cursor(conversations[-1]) if len(conversations) == limit else None
        return conversations, next_cursor

    async def delete(self, conversation_id: str) -> None:
        if not ObjectId.is_valid(conversation_id):
            raise ConversationNotFound(conversation_id)
        with store_errors(conversation_id):
            await self.collection.delete_one({"_id": ObjectId(conversation_id)})
