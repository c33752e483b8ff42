from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from starlette.requests import HTTPConnection

from letstalk.database.connection import mongo_db_dependency
from letstalk.repositories.conversation_repository import ConversationRepository
from letstalk.repositories.message_repository import MessageRepository
from letstalk.services.chat_service import ChatService
from letstalk.services.conversation_service import ConversationService


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    """Acting user as asserted by the upstream identity provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return x_user_id.strip()


def get_conversation_repository(db=Depends(mongo_db_dependency)) -> ConversationRepository:
    return ConversationRepository(db)


def get_message_repository(db=Depends(mongo_db_dependency)) -> MessageRepository:
    return MessageRepository(db)


def get_conversation_service(
    connection: HTTPConnection,
    store=Depends(get_conversation_repository),
    messages=Depends(get_message_repository),
) -> ConversationService:
    state = connection.app.state
    return ConversationService(store, messages, state.typing, state.locks)


def get_chat_service(
    connection: HTTPConnection,
    messages=Depends(get_message_repository),
    conversations: ConversationService = Depends(get_conversation_service),
) -> ChatService:
    return ChatService(messages, conversations, connection.app.state.fanout)
