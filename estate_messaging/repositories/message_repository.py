from datetime import datetime, timezone
from typing import List, Optional, Sequence

import structlog

from estate_messaging.database.base import ASCENDING, MESSAGES, StoreGateway
from estate_messaging.errors import InvalidMessage
from estate_messaging.models.message import MessageDocument
from estate_messaging.repositories.conversation_repository import ConversationRepository
from estate_messaging.schemas.messaging import Message
from estate_messaging.services.read_state import ReadStateTracker

logger = structlog.get_logger()


class MessageRepository:

    def __init__(
        self,
        gateway: StoreGateway,
        conversations: ConversationRepository,
        tracker: ReadStateTracker,
    ) -> None:
        self._gateway = gateway
        self._conversations = conversations
        self._tracker = tracker

    async def list_for_conversation(self, conversation_id: str) -> List[Message]:
        docs = await self._gateway.find(
            MESSAGES,
            {"conversation_id": conversation_id},
            sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
        )
        return [Message.from_document(doc) for doc in docs]

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        attachment_urls: Optional[Sequence[str]] = None,
    ) -> Message:
        text = (content or "").strip()
        urls = list(attachment_urls or [])
        if not text and not urls:
            raise InvalidMessage("Message needs content or at least one attachment")
        convo = await self._conversations.ensure_participant(conversation_id, sender_id)
        receiver_id = next(p for p in convo["participants"] if p != sender_id)
        # never older than the newest message already in the thread
        created_at = max(datetime.now(timezone.utc), convo["last_message_at"])
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": text,
            "attachments": urls,
            "created_at": created_at,
            "read": False,
        }
        saved = await self._gateway.insert_one(MESSAGES, doc)
        logger.info(
            "message_appended",
            conversation_id=conversation_id,
            message_id=saved["_id"],
            attachments=len(urls),
        )
        return Message.from_document(saved)

    async def remove(self, message_id: str) -> bool:
        removed = await self._gateway.delete_one(MESSAGES, {"_id": message_id})
        return bool(removed)

    async def mark_read(self, conversation_id: str, user_id: str, as_of: Optional[datetime] = None) -> int:
        """Mark the other participant's messages up to ``as_of`` as read.

        Returns how many unread messages the read mark cleared. Messages
        created after ``as_of`` stay unread and keep their share of the
        counter. The ``read`` flags are set after the mark moved; a failure
        there leaves them behind until the next call sets them.
        """
        await self._conversations.ensure_participant(conversation_id, user_id)
        as_of = as_of or datetime.now(timezone.utc)
        cleared = await self._tracker.acknowledge(conversation_id, user_id, as_of)
        await self._gateway.update_many(
            MESSAGES,
            {
                "conversation_id": conversation_id,
                "sender_id": {"$ne": user_id},
                "read": False,
                "created_at": {"$lte": as_of},
            },
            {"$set": {"read": True}},
        )
        return cleared
