from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Identity(BaseModel):

    id: str
    email: EmailStr
    is_admin: bool = False


class AttachmentFile(BaseModel):

    filename: str
    content_type: str = "application/octet-stream"
    content: bytes


class Message(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    content: str = ""
    attachments: List[str] = Field(default_factory=list)
    created_at: datetime
    read: bool = False

    @classmethod
    def from_document(cls, doc: dict) -> "Message":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            receiver_id=doc.get("receiver_id"),
            content=doc.get("content") or "",
            attachments=list(doc.get("attachments") or []),
            created_at=doc["created_at"],
            read=bool(doc.get("read", False)),
        )


class Conversation(BaseModel):

    id: str
    participants: List[str]
    property_id: Optional[str] = None
    subject: Optional[str] = None
    created_at: datetime
    last_message_at: datetime
    # scoped to the user the conversation was read for
    unread_count: int = 0

    @classmethod
    def from_document(cls, doc: dict, viewer_id: Optional[str] = None) -> "Conversation":
        unread = 0
        if viewer_id is not None:
            unread = max(0, int((doc.get("unread_counters") or {}).get(viewer_id, 0)))
        return cls(
            id=str(doc["_id"]),
            participants=list(doc["participants"]),
            property_id=doc.get("property_id"),
            subject=doc.get("subject"),
            created_at=doc.get("created_at") or doc["last_message_at"],
            last_message_at=doc["last_message_at"],
            unread_count=unread,
        )

    def other_participant(self, user_id: str) -> str:
        for participant in self.participants:
            if participant != user_id:
                return participant
        raise ValueError(f"{user_id} is not in a two-party conversation")


class MessagingSnapshot(BaseModel):

    conversations: List[Conversation] = Field(default_factory=list)
    current_conversation: Optional[Conversation] = None
    messages: List[Message] = Field(default_factory=list)
    loading: bool = False
    deleting: bool = False


class StartConversation(BaseModel):

    other_user_id: str
    subject: Optional[str] = Field(default=None, max_length=200)
    initial_message: Optional[str] = None
    property_id: Optional[str] = None
