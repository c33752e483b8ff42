from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from letstalk.models.message import MessageDocument
from letstalk.repositories.conversation_repository import store_errors


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        with store_errors():
            await self.collection.create_index([("conversation_id", ASCENDING), ("timestamp", DESCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "timestamp": datetime.now(timezone.utc),
            "seen_by": [],
            "is_deleted": False,
            "client_message_id": client_message_id,
        }
        with store_errors(conversation_id):
            result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_conversation_id(self, message_id: str) -> Optional[str]:
        """Owning conversation of a message, or None when it does not exist."""
        if not ObjectId.is_valid(message_id):
            return None
        with store_errors():
            doc = await self.collection.find_one(
                {"_id": ObjectId(message_id), "is_deleted": {"$ne": True}},
                {"conversation_id": 1},
            )
        return doc["conversation_id"] if doc else None

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": conversation_id, "is_deleted": {"$ne": True}}
        sort = [("timestamp", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: ts_ms:oid
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
                query["$or"] = [
                    {"timestamp": {"$lt": ts}},
                    {"timestamp": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId):
                pass
        with store_errors(conversation_id):
            items = await self.collection.find(query).sort(sort).limit(limit).to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_ts = int(last["timestamp"].replace(tzinfo=timezone.utc).timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        # ascending chronological order for the UI
        return list(reversed(items)), next_cursor

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        with store_errors(conversation_id):
            result = await self.collection.update_many(
                {"conversation_id": conversation_id, "sender_id": {"$ne": reader_id}, "seen_by": {"$ne": reader_id}},
                {"$addToSet": {"seen_by": reader_id}},
            )
        return result.modified_count or 0

    async def soft_delete_message(self, message_id: str) -> bool:
        if not ObjectId.is_valid(message_id):
            return False
        with store_errors():
            result = await self.collection.update_one(
                {"_id": ObjectId(message_id), "is_deleted": {"$ne": True}},
                {"$set": {"is_deleted": True, "deleted_at": datetime.now(timezone.utc)}},
            )
        return bool(result.modified_count)

    async def soft_delete_for_conversation(self, conversation_id: str) -> int:
        with store_errors(conversation_id):
            result = await self.collection.update_many(
                {"conversation_id": conversation_id, "is_deleted": {"$ne": True}},
                {"$set": {"is_deleted": True, "deleted_at": datetime.now(timezone.utc)}},
            )
        return result.modified_count or 0
