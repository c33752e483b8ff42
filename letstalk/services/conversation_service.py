from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from letstalk.core.errors import NotGroupAdmin
from letstalk.core.logging import get_logger, log_event
from letstalk.models.conversation import Conversation
from letstalk.utils.locks import KeyedLock
from letstalk.utils.typing_registry import TypingRegistry


logger = get_logger("letstalk.services.conversations")


class ConversationStore(Protocol):

    async def load(self, conversation_id: str) -> Conversation: ...

    async def save(self, conversation: Conversation) -> Conversation: ...

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]: ...

    async def query_by_participant(
        self,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
        include_archived: bool = True,
    ) -> Tuple[List[Conversation], Optional[str]]: ...

    async def delete(self, conversation_id: str) -> None: ...


class MessageLookup(Protocol):

    async def get_conversation_id(self, message_id: str) -> Optional[str]: ...

    async def soft_delete_for_conversation(self, conversation_id: str) -> int: ...


class ConversationService:
    """Applies conversation operations by id.

    Mutations on one conversation id run one at a time (load, mutate, save
    under a per-id lock); different ids proceed in parallel. Typing
    indicators are kept in memory only.
    """

    def __init__(
        self,
        store: ConversationStore,
        messages: MessageLookup,
        typing: TypingRegistry,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self._store = store
        self._messages = messages
        self._typing = typing
        self._locks = locks or KeyedLock()

    # -- creation & reads ------------------------------------------------

    async def create(
        self,
        participant_ids: Iterable[str],
        is_group: bool,
        group_name: Optional[str] = None,
        admin_id: Optional[str] = None,
        group_avatar: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation.create(
            participant_ids,
            is_group,
            group_name=group_name,
            admin_id=admin_id,
            group_avatar=group_avatar,
        )
        await self._store.save(conversation)
        log_event(
            logger,
            "conversation.created",
            conversation_id=conversation.id,
            is_group=conversation.is_group,
            participant_count=conversation.participant_count,
        )
        return conversation

    async def get_or_create_direct(self, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
        """Return the direct conversation of a pair, creating it if needed.

        The flag is True when a new conversation was created.
        """
        pair_key = "direct:" + ":".join(sorted([user_a, user_b]))
        async with self._locks.hold(pair_key):
            existing = await self._store.find_direct(user_a, user_b)
            if existing is not None:
                return self._with_typing(existing), False
            return await self.create([user_a, user_b], is_group=False), True

    async def get_conversation(self, conversation_id: str, viewer_id: Optional[str] = None) -> Conversation:
        conversation = await self._store.load(conversation_id)
        if viewer_id is not None:
            conversation.require_participant(viewer_id)
        return self._with_typing(conversation)

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
        include_archived: bool = True,
    ) -> Tuple[List[Conversation], Optional[str]]:
        items, next_cursor = await self._store.query_by_participant(
            user_id, limit=limit, cursor=cursor, include_archived=include_archived
        )
        return [self._with_typing(it) for it in items], next_cursor

    # -- per-user state --------------------------------------------------

    async def record_incoming_message(self, conversation_id: str, sender_id: str, message_id: str) -> Conversation:
        conversation = await self._mutate(
            conversation_id, lambda c: c.record_incoming_message(sender_id, message_id)
        )
        logger.debug(
            "conversation.message_recorded",
            extra={"conversation_id": conversation_id, "message_id": message_id},
        )
        return conversation

    async def mark_read(self, conversation_id: str, user_id: str) -> Conversation:
        return await self._mutate(conversation_id, lambda c: c.mark_read(user_id))

    async def set_archived(self, conversation_id: str, user_id: str, archived: bool) -> Conversation:
        return await self._mutate(conversation_id, lambda c: c.set_archived(user_id, archived))

    async def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> Conversation:
        return await self._mutate(conversation_id, lambda c: c.set_muted(user_id, muted))

    async def start_typing(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self._store.load(conversation_id)
        conversation.start_typing(user_id)
        self._typing.start(conversation_id, user_id)
        return self._with_typing(conversation)

    async def stop_typing(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self._store.load(conversation_id)
        conversation.stop_typing(user_id)
        self._typing.stop(conversation_id, user_id)
        return self._with_typing(conversation)

    # -- membership ------------------------------------------------------

    async def add_participant(self, conversation_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Conversation:
        def apply(conversation: Conversation) -> bool:
            if actor_id is not None:
                conversation.require_participant(actor_id)
            return conversation.add_participant(user_id)

        conversation = await self._mutate(conversation_id, apply)
        log_event(logger, "conversation.participant_added", conversation_id=conversation_id, user_id=user_id)
        return conversation

    async def remove_participant(self, conversation_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Conversation:
        """Remove a member. The returned conversation has ``deleted`` set when it was the last one."""

        def apply(conversation: Conversation) -> None:
            if actor_id is not None and actor_id != user_id:
                conversation.require_participant(actor_id)
                if conversation.admin_id != actor_id:
                    raise NotGroupAdmin(conversation.id)
            conversation.remove_participant(user_id)

        conversation = await self._mutate(conversation_id, apply)
        self._typing.stop(conversation_id, user_id)
        log_event(
            logger,
            "conversation.participant_removed",
            conversation_id=conversation_id,
            user_id=user_id,
            deleted=conversation.deleted,
        )
        return conversation

    # -- pins ------------------------------------------------------------

    async def pin(self, conversation_id: str, message_id: str, *, actor_id: Optional[str] = None) -> Conversation:
        owner_id = await self._messages.get_conversation_id(message_id)

        def apply(conversation: Conversation) -> bool:
            if actor_id is not None:
                conversation.require_participant(actor_id)
            return conversation.pin(message_id, owner_id)

        return await self._mutate(conversation_id, apply)

    async def unpin(self, conversation_id: str, message_id: str, *, actor_id: Optional[str] = None) -> Conversation:
        def apply(conversation: Conversation) -> bool:
            if actor_id is not None:
                conversation.require_participant(actor_id)
            return conversation.unpin(message_id)

        return await self._mutate(conversation_id, apply)

    # -- settings & deletion ---------------------------------------------

    async def update_group(
        self,
        conversation_id: str,
        user_id: str,
        group_name: Optional[str] = None,
        group_avatar: Optional[str] = None,
    ) -> Conversation:
        def apply(conversation: Conversation) -> None:
            conversation.require_participant(user_id)
            conversation.require_group()
            if conversation.admin_id and conversation.admin_id != user_id:
                raise NotGroupAdmin(conversation.id)
            conversation.update_group(group_name=group_name, group_avatar=group_avatar)

        return await self._mutate(conversation_id, apply)

    async def update_appearance(
        self,
        conversation_id: str,
        user_id: str,
        theme: Optional[str] = None,
        emoji: Optional[str] = None,
    ) -> Conversation:
        def apply(conversation: Conversation) -> None:
            conversation.require_participant(user_id)
            conversation.update_appearance(theme=theme, emoji=emoji)

        return await self._mutate(conversation_id, apply)

    async def delete(self, conversation_id: str, user_id: Optional[str] = None) -> Conversation:
        def apply(conversation: Conversation) -> None:
            if user_id is not None:
                conversation.require_participant(user_id)
                if conversation.is_group and conversation.admin_id and conversation.admin_id != user_id:
                    raise NotGroupAdmin(conversation.id)
            conversation.mark_deleted()

        return await self._mutate(conversation_id, apply)

    # -- internals -------------------------------------------------------

    async def _mutate(self, conversation_id: str, apply: Callable[[Conversation], Optional[bool]]) -> Conversation:
        async with self._locks.hold(conversation_id):
            conversation = await self._store.load(conversation_id)
            changed = apply(conversation)
            if conversation.deleted:
                removed = await self._messages.soft_delete_for_conversation(conversation_id)
                await self._store.delete(conversation_id)
                self._typing.clear(conversation_id)
                log_event(logger, "conversation.deleted", conversation_id=conversation_id, messages_removed=removed)
                return conversation
            if changed is not False:
                await self._store.save(conversation)
        return self._with_typing(conversation)

    def _with_typing(self, conversation: Conversation) -> Conversation:
        members = set(conversation.participants)
        conversation.typing_users = {u for u in self._typing.active(conversation.id) if u in members}
        return conversation
