from datetime import datetime
from typing import List, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    timestamp: datetime
    # readers other than the sender
    seen_by: List[str]
    is_deleted: bool
    deleted_at: Optional[datetime]
    # client ack
    client_message_id: Optional[str]
