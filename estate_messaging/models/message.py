from datetime import datetime
from typing import List, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    # public URLs of uploaded files, in upload order
    attachments: List[str]
    created_at: datetime
    read: bool
