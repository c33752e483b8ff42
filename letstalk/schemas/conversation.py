from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from letstalk.models.conversation import Conversation


class ConversationCreate(BaseModel):

    participants: List[str] = Field(min_length=1)
    is_group: bool = False
    group_name: Optional[str] = Field(default=None, max_length=100)
    group_avatar: Optional[str] = None


class GroupUpdate(BaseModel):

    group_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    group_avatar: Optional[str] = None


class AppearanceUpdate(BaseModel):

    theme: Optional[str] = Field(default=None, min_length=1, max_length=50)
    emoji: Optional[str] = Field(default=None, min_length=1, max_length=16)


class FlagUpdate(BaseModel):

    value: bool = True


class ParticipantAdd(BaseModel):

    user_id: str = Field(min_length=1)


class PinCreate(BaseModel):

    message_id: str = Field(min_length=1)


class MessageCreate(BaseModel):

    content: str = Field(min_length=1, max_length=5000)
    client_message_id: Optional[str] = None


class ConversationPublic(BaseModel):
    """Conversation as seen by one participant."""

    id: str
    participants: List[str]
    participant_count: int
    is_group: bool
    group_name: Optional[str] = None
    group_avatar: Optional[str] = None
    admin_id: Optional[str] = None
    last_message_id: Optional[str] = None
    unread_count: int = 0
    is_archived: bool = False
    is_muted: bool = False
    typing_users: List[str] = []
    pinned_message_ids: List[str] = []
    theme: str
    emoji: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def for_viewer(cls, conversation: Conversation, viewer_id: str) -> "ConversationPublic":
        return cls(
            id=conversation.id,
            participants=list(conversation.participants),
            participant_count=conversation.participant_count,
            is_group=conversation.is_group,
            group_name=conversation.group_name,
            group_avatar=conversation.group_avatar,
            admin_id=conversation.admin_id,
            last_message_id=conversation.last_message_id,
            unread_count=conversation.unread_count_for(viewer_id),
            is_archived=conversation.is_archived_for(viewer_id),
            is_muted=conversation.is_muted_for(viewer_id),
            typing_users=sorted(conversation.typing_users),
            pinned_message_ids=list(conversation.pinned_message_ids),
            theme=conversation.theme,
            emoji=conversation.emoji,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ConversationPage(BaseModel):

    items: List[ConversationPublic]
    next_cursor: Optional[str] = None
