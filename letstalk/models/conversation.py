from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, TypedDict

from bson import ObjectId

from letstalk.core.errors import (
    ConversationNotFound,
    InvalidParticipants,
    MessageNotInConversation,
    NotGroupConversation,
    NotParticipant,
)


DEFAULT_THEME = "default"
DEFAULT_EMOJI = "❤️"


class ConversationDocument(TypedDict, total=False):
    _id: ObjectId
    participants: List[str]
    is_group: bool
    group_name: Optional[str]
    group_avatar: Optional[str]
    admin_id: Optional[str]
    last_message_id: Optional[str]
    # per-user state (user_id -> value), keys always a subset of participants
    unread_count: Dict[str, int]
    archived_by: Dict[str, bool]
    muted_by: Dict[str, bool]
    pinned_message_ids: List[str]
    theme: str
    emoji: str
    created_at: datetime
    updated_at: datetime
    version: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    """A chat thread between two users (direct) or a group.

    Mutating methods keep the per-user maps keyed by current participants
    only and refresh ``updated_at``. ``typing_users`` is transient and never
    written to the document.
    """

    id: str
    participants: List[str]
    is_group: bool = False
    group_name: Optional[str] = None
    group_avatar: Optional[str] = None
    admin_id: Optional[str] = None
    last_message_id: Optional[str] = None
    unread_count: Dict[str, int] = field(default_factory=dict)
    archived_by: Dict[str, bool] = field(default_factory=dict)
    muted_by: Dict[str, bool] = field(default_factory=dict)
    typing_users: Set[str] = field(default_factory=set)
    pinned_message_ids: List[str] = field(default_factory=list)
    theme: str = DEFAULT_THEME
    emoji: str = DEFAULT_EMOJI
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    version: int = 0
    deleted: bool = False

    @classmethod
    def create(
        cls,
        participant_ids,
        is_group: bool,
        group_name: Optional[str] = None,
        admin_id: Optional[str] = None,
        group_avatar: Optional[str] = None,
    ) -> "Conversation":
        participants = list(dict.fromkeys(participant_ids))
        if len(participants) < 2:
            raise InvalidParticipants("A conversation must have at least 2 participants")
        if not is_group:
            if len(participants) != 2:
                raise InvalidParticipants("A direct conversation must have exactly 2 participants")
            if group_name is not None or admin_id is not None or group_avatar is not None:
                raise InvalidParticipants("A direct conversation cannot carry group settings")
        elif admin_id is not None and admin_id not in participants:
            raise InvalidParticipants("The group admin must be a participant")

        now = _now()
        return cls(
            id=str(ObjectId()),
            participants=participants,
            is_group=is_group,
            group_name=group_name,
            group_avatar=group_avatar,
            admin_id=admin_id,
            created_at=now,
            updated_at=now,
        )

    # -- queries ---------------------------------------------------------

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def unread_count_for(self, user_id: str) -> int:
        return self.unread_count.get(user_id, 0)

    def is_archived_for(self, user_id: str) -> bool:
        return self.archived_by.get(user_id, False)

    def is_muted_for(self, user_id: str) -> bool:
        return self.muted_by.get(user_id, False)

    def ensure_active(self) -> None:
        if self.deleted:
            raise ConversationNotFound(self.id)

    def require_participant(self, user_id: str) -> None:
        self.ensure_active()
        if not self.has_participant(user_id):
            raise NotParticipant(self.id, user_id)

    def require_group(self) -> None:
        self.ensure_active()
        if not self.is_group:
            raise NotGroupConversation(self.id)

    # -- mutations -------------------------------------------------------

    def touch(self) -> None:
        self.updated_at = _now()

    def record_incoming_message(self, sender_id: str, message_id: str) -> None:
        self.require_participant(sender_id)
        for participant in self.participants:
            if participant != sender_id:
                self.unread_count[participant] = self.unread_count_for(participant) + 1
        self.last_message_id = message_id
        self.touch()

    def mark_read(self, user_id: str) -> None:
        self.require_participant(user_id)
        self.unread_count[user_id] = 0
        self.touch()

    def set_archived(self, user_id: str, archived: bool) -> None:
        self.require_participant(user_id)
        self.archived_by[user_id] = bool(archived)
        self.touch()

    def set_muted(self, user_id: str, muted: bool) -> None:
        self.require_participant(user_id)
        self.muted_by[user_id] = bool(muted)
        self.touch()

    def start_typing(self, user_id: str) -> None:
        self.require_participant(user_id)
        self.typing_users.add(user_id)

    def stop_typing(self, user_id: str) -> None:
        self.ensure_active()
        self.typing_users.discard(user_id)

    def add_participant(self, user_id: str) -> bool:
        """Add a member to a group. Returns False when already a member."""
        self.require_group()
        if self.has_participant(user_id):
            return False
        self.participants.append(user_id)
        self.touch()
        return True

    def remove_participant(self, user_id: str) -> None:
        """Drop a member and every piece of per-user state it owns.

        Removing the last member marks the conversation deleted.
        """
        self.require_group()
        if not self.has_participant(user_id):
            raise NotParticipant(self.id, user_id)
        self.participants.remove(user_id)
        self.unread_count.pop(user_id, None)
        self.archived_by.pop(user_id, None)
        self.muted_by.pop(user_id, None)
        self.typing_users.discard(user_id)
        if self.admin_id == user_id:
            self.admin_id = None
        self.touch()
        if not self.participants:
            self.deleted = True

    def pin(self, message_id: str, owner_conversation_id: Optional[str]) -> bool:
        """Pin a message confirmed to belong here. Returns False if already pinned."""
        self.ensure_active()
        if owner_conversation_id != self.id:
            raise MessageNotInConversation(self.id, message_id)
        if message_id in self.pinned_message_ids:
            return False
        self.pinned_message_ids.append(message_id)
        self.touch()
        return True

    def unpin(self, message_id: str) -> bool:
        self.ensure_active()
        if message_id not in self.pinned_message_ids:
            return False
        self.pinned_message_ids.remove(message_id)
        self.touch()
        return True

    def update_group(self, group_name: Optional[str] = None, group_avatar: Optional[str] = None) -> None:
        self.require_group()
        if group_name:
            self.group_name = group_name
        if group_avatar:
            self.group_avatar = group_avatar
        self.touch()

    def update_appearance(self, theme: Optional[str] = None, emoji: Optional[str] = None) -> None:
        self.ensure_active()
        if theme:
            self.theme = theme
        if emoji:
            self.emoji = emoji
        self.touch()

    def mark_deleted(self) -> None:
        self.ensure_active()
        self.deleted = True
        self.typing_users.clear()

    # -- document mapping ------------------------------------------------

    def to_document(self) -> ConversationDocument:
        return {
            "_id": ObjectId(self.id),
            "participants": list(self.participants),
            "is_group": self.is_group,
            "group_name": self.group_name,
            "group_avatar": self.group_avatar,
            "admin_id": self.admin_id,
            "last_message_id": self.last_message_id,
            "unread_count": dict(self.unread_count),
            "archived_by": dict(self.archived_by),
            "muted_by": dict(self.muted_by),
            "pinned_message_ids": list(self.pinned_message_ids),
            "theme": self.theme,
            "emoji": self.emoji,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        participants = list(doc.get("participants") or [])
        members = set(participants)
        admin_id = doc.get("admin_id")
        return cls(
            id=str(doc["_id"]),
            participants=participants,
            is_group=bool(doc.get("is_group", False)),
            group_name=doc.get("group_name"),
            group_avatar=doc.get("group_avatar"),
            admin_id=admin_id if admin_id in members else None,
            last_message_id=doc.get("last_message_id"),
            unread_count={k: int(v) for k, v in (doc.get("unread_count") or {}).items() if k in members},
            archived_by={k: bool(v) for k, v in (doc.get("archived_by") or {}).items() if k in members},
            muted_by={k: bool(v) for k, v in (doc.get("muted_by") or {}).items() if k in members},
            pinned_message_ids=list(doc.get("pinned_message_ids") or []),
            theme=doc.get("theme") or DEFAULT_THEME,
            emoji=doc.get("emoji") or DEFAULT_EMOJI,
            created_at=_as_utc(doc.get("created_at")),
            updated_at=_as_utc(doc.get("updated_at")),
            version=int(doc.get("version", 0)),
        )


def _as_utc(value: Optional[datetime]) -> datetime:
    # pymongo returns naive UTC datetimes unless the client is tz_aware
    if value is None:
        return _now()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
