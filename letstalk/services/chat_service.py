from typing import Any, Dict, List, Optional, Tuple

from letstalk.core.errors import ConversationNotFound, NotParticipant
from letstalk.core.logging import get_logger
from letstalk.repositories.message_repository import MessageRepository
from letstalk.services.conversation_service import ConversationService
from letstalk.utils.realtime_bus import EventFanout


logger = get_logger("letstalk.services.chat")


class ChatService:
    """Message delivery on top of the conversation state.

    Every stored message is recorded on its conversation exactly once;
    a failure after the message is stored is reported, never retried here.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_service: ConversationService,
        fanout: Optional[EventFanout] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversations = conversation_service
        self._fanout = fanout

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not isinstance(content, str):
            raise ValueError("Message content must be text")
        if not content.strip():
            raise ValueError("Message content cannot be empty")
        await self._conversations.get_conversation(conversation_id, viewer_id=sender_id)
        saved = await self._message_repo.save_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content.strip(),
            client_message_id=client_message_id,
        )
        try:
            conversation = await self._conversations.record_incoming_message(conversation_id, sender_id, saved["_id"])
        except (NotParticipant, ConversationNotFound):
            # sender left or the conversation went away between the check and the record
            await self._message_repo.soft_delete_message(saved["_id"])
            logger.info("message.withdrawn", extra={"conversation_id": conversation_id, "message_id": saved["_id"]})
            raise
        await self._conversations.stop_typing(conversation_id, sender_id)
        ack = {"message_id": saved["_id"], "conversation_id": conversation_id, "client_message_id": client_message_id}
        if self._fanout is not None:
            await self._fanout.send(
                conversation.participants,
                {
                    "type": "message",
                    "from": sender_id,
                    "content": saved["content"],
                    "timestamp": saved["timestamp"],
                    "ack": ack,
                },
                exclude=sender_id,
            )
        logger.info("message.sent", extra={"conversation_id": conversation_id, "message_id": saved["_id"]})
        return {"ack": ack}

    async def get_history(
        self,
        conversation_id: str,
        viewer_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        await self._conversations.get_conversation(conversation_id, viewer_id=viewer_id)
        return await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, cursor=cursor)

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        conversation = await self._conversations.mark_read(conversation_id, reader_id)
        modified = await self._message_repo.mark_read(conversation_id, reader_id)
        if self._fanout is not None and modified:
            await self._fanout.send(
                conversation.participants,
                {"type": "seen", "conversation_id": conversation_id, "from": reader_id},
                exclude=reader_id,
            )
        return modified
