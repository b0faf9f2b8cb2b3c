from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from pymongo.errors import DuplicateKeyError

from estate_messaging.database.base import CONVERSATIONS, DESCENDING, MESSAGES, StoreGateway
from estate_messaging.errors import DuplicateConversation, NotAuthorized, NotFound, StoreUnavailable
from estate_messaging.models.conversation import ConversationDocument
from estate_messaging.schemas.messaging import Conversation

logger = structlog.get_logger()

# insert attempts before giving up on a conversation that keeps vanishing
_CREATE_ATTEMPTS = 3


def pair_key_for(user_a: str, user_b: str) -> str:
    return "|".join(sorted([user_a, user_b]))


class ConversationRepository:

    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        docs = await self._gateway.find(
            CONVERSATIONS,
            {"participants": user_id},
            sort=[("last_message_at", DESCENDING), ("_id", DESCENDING)],
        )
        return [Conversation.from_document(doc, viewer_id=user_id) for doc in docs]

    async def get_document(self, conversation_id: str) -> ConversationDocument:
        doc = await self._gateway.find_one(CONVERSATIONS, {"_id": conversation_id})
        if doc is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return doc

    async def get(self, conversation_id: str, viewer_id: Optional[str] = None) -> Conversation:
        doc = await self.get_document(conversation_id)
        return Conversation.from_document(doc, viewer_id=viewer_id)

    async def ensure_participant(self, conversation_id: str, user_id: str) -> ConversationDocument:
        doc = await self.get_document(conversation_id)
        if user_id not in doc["participants"]:
            logger.warning("conversation_access_denied", conversation_id=conversation_id, user_id=user_id)
            raise NotAuthorized(f"{user_id} is not a participant of {conversation_id}")
        return doc

    async def create_or_get(
        self,
        user_a: str,
        user_b: str,
        property_id: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Conversation:
        """Return the conversation for the pair and property, creating it once.

        The store's unique index on ``(pair_key, property_id)`` decides the
        winner when two clients create the same conversation concurrently; the
        loser re-reads and returns the winner's row.
        """
        if user_a == user_b:
            raise ValueError("A conversation needs two distinct participants")
        key = {"pair_key": pair_key_for(user_a, user_b), "property_id": property_id}

        for _ in range(_CREATE_ATTEMPTS):
            existing = await self._gateway.find_one(CONVERSATIONS, key)
            if existing:
                return Conversation.from_document(existing, viewer_id=user_a)
            try:
                created = await self._insert(user_a, user_b, property_id, subject)
            except DuplicateConversation as race:
                logger.info("conversation_create_race", pair_key=race.pair_key, property_id=race.property_id)
                continue
            return Conversation.from_document(created, viewer_id=user_a)
        raise NotFound(f"Conversation for {key['pair_key']} could not be created or read back")

    async def _insert(
        self,
        user_a: str,
        user_b: str,
        property_id: Optional[str],
        subject: Optional[str],
    ) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        participants = sorted([user_a, user_b])
        doc: ConversationDocument = {
            "participants": participants,
            "pair_key": pair_key_for(user_a, user_b),
            "property_id": property_id,
            "subject": subject or None,
            "created_at": now,
            "last_message_at": now,
            "unread_counters": {user_a: 0, user_b: 0},
            "last_read_at": {},
        }
        try:
            created = await self._gateway.insert_one(CONVERSATIONS, doc)
        except DuplicateKeyError as exc:
            raise DuplicateConversation(doc["pair_key"], property_id) from exc
        logger.info("conversation_created", conversation_id=created["_id"], property_id=property_id)
        return created

    async def delete(self, conversation_id: str, requester_id: str) -> None:
        await self.ensure_participant(conversation_id, requester_id)
        # the row goes first; messages without it are unreachable
        await self._gateway.delete_one(CONVERSATIONS, {"_id": conversation_id})
        logger.info("conversation_deleted", conversation_id=conversation_id)
        await self.purge_messages(conversation_id)

    async def purge_messages(self, conversation_id: str) -> int:
        """Remove the messages of a deleted conversation.

        Runs after the conversation row is gone. A failure is logged and not
        raised; calling this again for the same id finishes the cascade.
        """
        try:
            removed = await self._gateway.delete_many(MESSAGES, {"conversation_id": conversation_id})
        except StoreUnavailable as exc:
            logger.error("message_cascade_failed", conversation_id=conversation_id, error=str(exc))
            return 0
        logger.info("conversation_messages_removed", conversation_id=conversation_id, messages_removed=removed)
        return removed

    async def touch_on_new_message(
        self,
        conversation_id: str,
        new_last_message_at: datetime,
        recipient_id: str,
    ) -> None:
        modified = await self._gateway.update_one(
            CONVERSATIONS,
            {"_id": conversation_id},
            {
                # $max keeps last_message_at from moving backwards on late touches
                "$max": {"last_message_at": new_last_message_at},
                "$inc": {f"unread_counters.{recipient_id}": 1},
            },
        )
        if not modified:
            raise NotFound(f"Conversation {conversation_id} not found")

    async def apply_read(
        self,
        conversation_id: str,
        user_id: str,
        previous: Optional[datetime],
        as_of: datetime,
        cleared: int,
    ) -> bool:
        """Move the read mark from ``previous`` to ``as_of`` and drop the counter.

        Both changes land in one write, and only if the mark still equals
        ``previous``. Returns False when another reader moved it first.
        """
        update: Dict[str, Any] = {"$set": {f"last_read_at.{user_id}": as_of}}
        if cleared:
            update["$inc"] = {f"unread_counters.{user_id}": -cleared}
        modified = await self._gateway.update_one(
            CONVERSATIONS,
            {"_id": conversation_id, f"last_read_at.{user_id}": previous},
            update,
        )
        return bool(modified)
