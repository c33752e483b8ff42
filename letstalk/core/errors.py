from __future__ import annotations


class ConversationError(Exception):
    """Base exception for conversation operations."""

    status_code = 400

    def __init__(self, message: str, *, conversation_id: str | None = None) -> None:
        super().__init__(message)
        self.conversation_id = conversation_id

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConversationNotFound(ConversationError):
    status_code = 404

    def __init__(self, conversation_id: str | None) -> None:
        super().__init__("Conversation not found", conversation_id=conversation_id)


class InvalidParticipants(ConversationError):
    status_code = 400


class NotParticipant(ConversationError):
    status_code = 403

    def __init__(self, conversation_id: str | None, user_id: str) -> None:
        super().__init__(
            f"User {user_id} is not a participant in this conversation",
            conversation_id=conversation_id,
        )
        self.user_id = user_id


class NotGroupConversation(ConversationError):
    status_code = 400

    def __init__(self, conversation_id: str | None) -> None:
        super().__init__("Operation requires a group conversation", conversation_id=conversation_id)


class NotGroupAdmin(ConversationError):
    status_code = 403

    def __init__(self, conversation_id: str | None) -> None:
        super().__init__("Only the group admin can do this", conversation_id=conversation_id)


class MessageNotInConversation(ConversationError):
    status_code = 400

    def __init__(self, conversation_id: str | None, message_id: str) -> None:
        super().__init__(
            f"Message {message_id} does not belong to this conversation",
            conversation_id=conversation_id,
        )
        self.message_id = message_id


class ConversationConflict(ConversationError):
    status_code = 409

    def __init__(self, conversation_id: str | None) -> None:
        super().__init__("Conversation was modified concurrently", conversation_id=conversation_id)


class StoreUnavailable(ConversationError):
    status_code = 503
