"""Unread counters and read marks.

The stored ``unread_counters`` value is a cache. It must always equal the
number of messages authored by the other participant whose ``created_at`` is
after the user's ``last_read_at`` mark; :meth:`ReadStateTracker.recompute`
derives that number straight from the messages.

Resets are expressed as "read as of T": the counter drops by the number of
messages between the old mark and T, in the same write that moves the mark, so
an increment landing after the reset is kept. The per-message ``read`` flags
follow afterwards and are never used for counting.
"""

from datetime import datetime
from typing import Iterable, Optional

import structlog

from estate_messaging.database.base import MESSAGES, StoreGateway
from estate_messaging.errors import StoreUnavailable
from estate_messaging.repositories.conversation_repository import ConversationRepository
from estate_messaging.schemas.messaging import Message

logger = structlog.get_logger()

# conditional read-mark writes before giving up to a busier reader
_ACKNOWLEDGE_ATTEMPTS = 5


def derive_unread(messages: Iterable[Message], user_id: str, last_read_at: Optional[datetime]) -> int:
    return sum(
        1
        for m in messages
        if m.sender_id != user_id and (last_read_at is None or m.created_at > last_read_at)
    )


class ReadStateTracker:

    def __init__(self, gateway: StoreGateway, conversations: ConversationRepository) -> None:
        self._gateway = gateway
        self._conversations = conversations

    async def record_new_message(self, message: Message) -> None:
        """Increment rule: everyone but the sender gets one more unread."""
        doc = await self._conversations.get_document(message.conversation_id)
        for participant in doc["participants"]:
            if participant == message.sender_id:
                continue
            await self._conversations.touch_on_new_message(message.conversation_id, message.created_at, participant)

    async def acknowledge(self, conversation_id: str, user_id: str, as_of: datetime) -> int:
        """Reset rule: count what ``as_of`` clears and move the mark in one write.

        Returns how many unread messages the mark cleared. Nothing is written
        when the window is empty.
        """
        for _ in range(_ACKNOWLEDGE_ATTEMPTS):
            doc = await self._conversations.get_document(conversation_id)
            previous = (doc.get("last_read_at") or {}).get(user_id)
            if previous is not None and previous >= as_of:
                return 0
            window = {"$lte": as_of}
            if previous is not None:
                window["$gt"] = previous
            cleared = await self._gateway.count(
                MESSAGES,
                {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}, "created_at": window},
            )
            if not cleared:
                return 0
            if await self._conversations.apply_read(conversation_id, user_id, previous, as_of, cleared):
                logger.info("conversation_read", conversation_id=conversation_id, user_id=user_id, cleared=cleared)
                return cleared
            logger.info("read_mark_moved", conversation_id=conversation_id, user_id=user_id)
        raise StoreUnavailable(f"Read mark of {user_id} on {conversation_id} kept moving")

    async def stored(self, conversation_id: str, user_id: str) -> int:
        doc = await self._conversations.get_document(conversation_id)
        return int((doc.get("unread_counters") or {}).get(user_id, 0))

    async def recompute(self, conversation_id: str, user_id: str) -> int:
        doc = await self._conversations.get_document(conversation_id)
        last_read = (doc.get("last_read_at") or {}).get(user_id)
        query = {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}}
        if last_read is not None:
            query["created_at"] = {"$gt": last_read}
        return await self._gateway.count(MESSAGES, query)

    async def verify(self, conversation_id: str, user_id: str) -> bool:
        stored = await self.stored(conversation_id, user_id)
        derived = await self.recompute(conversation_id, user_id)
        if stored != derived:
            logger.warning(
                "unread_counter_drift",
                conversation_id=conversation_id,
                user_id=user_id,
                stored=stored,
                derived=derived,
            )
        return stored == derived
